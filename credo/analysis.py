"""Deal synthesis: extract company name, description and founding team."""
from __future__ import annotations

import logging
from collections.abc import Sequence

from credo.llm import LLMCallError, LLMClient
from credo.schemas import UNKNOWN, DealAnalysis, FoundingMember

log = logging.getLogger(__name__)


class PipelineValidationError(ValueError):
    """The pipeline was asked to analyse a deal with no documents and no text."""


SYNTHESIS_SYSTEM_PROMPT = """\
You are a venture capital analyst. Read the attached documents and extract or \
infer details about the company, deal, and founding team. If information is not \
available, use 'Unknown' for that field.\
"""

_BASE_USER_PROMPT = "Please analyze the uploaded documents for a potential investment deal."


def build_synthesis_prompt(free_text: str | None) -> str:
    free_text = (free_text or "").strip()
    if not free_text:
        return _BASE_USER_PROMPT
    return f"{_BASE_USER_PROMPT}\n\nAdditional context provided: {free_text}"


def fallback_analysis() -> DealAnalysis:
    """Result used when the provider call fails: every field is the sentinel."""
    return DealAnalysis(
        deal_name=UNKNOWN,
        deal_description=UNKNOWN,
        deal_founding_team=[FoundingMember(name=UNKNOWN, role=UNKNOWN, description=UNKNOWN)],
    )


async def synthesize_deal(
    llm: LLMClient, file_ids: Sequence[str], free_text: str | None = None,
) -> DealAnalysis:
    """Run the structured extraction over the ingested files and/or free text.

    Raises:
        PipelineValidationError: neither file ids nor free text were given.
    """
    file_ids = [fid for fid in file_ids if fid]
    if not file_ids and not (free_text or "").strip():
        raise PipelineValidationError("Either documents or free text must be provided")

    log.info("Requesting deal synthesis (files=%d, free_text=%s)", len(file_ids), bool(free_text))
    try:
        result = await llm.parse(
            SYNTHESIS_SYSTEM_PROMPT,
            build_synthesis_prompt(free_text),
            DealAnalysis,
            file_ids=file_ids,
        )
    except LLMCallError as exc:
        log.warning("Deal synthesis failed, using fallback: %s", exc)
        return fallback_analysis()

    log.info("Deal synthesis done: %s (%d team members)", result.deal_name, len(result.deal_founding_team))
    return result

"""Analysis pipeline orchestrator.

Phases, strictly sequential::

    initializing -> ingesting -> synthesizing+discovering -> evaluating
                 -> finalizing -> completed

``failed`` is reached only when there is nothing to analyse (no documents and
no free text) or the deal does not exist.  Every other failure is absorbed by
the step that hit it: an ingestion item loses its file id, synthesis falls back
to sentinel values, a discovery branch yields no competitors, an evaluation
leaves its row untouched.  A run that reaches ``completed`` therefore means
"ran to the end", not "fully enriched".
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from credo import services
from credo.analysis import PipelineValidationError, fallback_analysis, synthesize_deal
from credo.categories import ALL_CATEGORIES, CategoryConfig
from credo.competitors import clear_competitors, evaluate_competitor, run_discovery_branch
from credo.config import StepTimeouts
from credo.db import SessionScope, session_scope as default_session_scope
from credo.ingest import IngestResult, ingest_files
from credo.llm import LLMClient
from credo.models import Deal, DealFile
from credo.schemas import DealAnalysis, SourceFile
from credo.storage import BlobStore

log = logging.getLogger(__name__)


class PipelineState(str, Enum):
    INITIALIZING = "initializing"
    INGESTING = "ingesting"
    SYNTHESIZING = "synthesizing+discovering"
    EVALUATING = "evaluating"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (PipelineState.COMPLETED.value, PipelineState.FAILED.value)


@dataclass
class ProgressEvent:
    state: str
    label: str
    progress: int


@dataclass
class ProgressReporter:
    """Advisory progress telemetry; progress never goes backwards.

    Subclasses override :meth:`publish` to push each event somewhere durable.
    """
    state: str = PipelineState.INITIALIZING.value
    label: str = ""
    progress: int = 0
    output: dict[str, Any] | None = None
    error: str | None = None
    history: list[ProgressEvent] = field(default_factory=list)

    def update(self, state: PipelineState | str, label: str, progress: int) -> None:
        self.state = PipelineState(state).value
        self.label = label
        self.progress = max(self.progress, min(100, int(progress)))
        event = ProgressEvent(self.state, self.label, self.progress)
        self.history.append(event)
        log.info("[%s] %s (%d%%)", event.state, event.label, event.progress)
        self.publish(event)

    def complete(self, output: dict[str, Any]) -> None:
        self.output = output
        self.update(PipelineState.COMPLETED, "Analysis completed", 100)

    def fail(self, error: str) -> None:
        self.error = error
        self.update(PipelineState.FAILED, f"Failed: {error}", self.progress)

    def publish(self, event: ProgressEvent) -> None:
        pass


def validate_inputs(files: Sequence[SourceFile], free_text: str | None) -> None:
    if not files and not (free_text or "").strip():
        raise PipelineValidationError("Either documents or free text must be provided")


def apply_file_ids(session: Session, deal_id: str, results: Sequence[IngestResult]) -> int:
    """Write provider file ids back onto DealFile rows, matched by (filename, url).

    Matching by content rather than position keeps this correct when results
    come back in a different order than the files were sent.
    """
    updated = 0
    for r in results:
        if not r.ai_file_id:
            continue
        outcome = session.execute(
            update(DealFile)
            .where(
                DealFile.deal_id == deal_id,
                DealFile.original_name == r.original_filename,
                DealFile.url == r.url,
            )
            .values(ai_file_id=r.ai_file_id)
        )
        updated += outcome.rowcount or 0
    return updated


def apply_analysis(deal: Deal, analysis: DealAnalysis) -> None:
    deal.company_name = analysis.deal_name
    deal.description = analysis.deal_description
    deal.founding_team_json = json.dumps([m.model_dump() for m in analysis.deal_founding_team])


class Pipeline:
    """Runs one analysis of one deal. Dependencies are injected, never global."""

    def __init__(
        self,
        llm: LLMClient,
        blob_store: BlobStore,
        session_scope: SessionScope = default_session_scope,
        reporter: ProgressReporter | None = None,
        categories: Sequence[CategoryConfig] = ALL_CATEGORIES,
        timeouts: StepTimeouts | None = None,
    ):
        self.llm = llm
        self.blob_store = blob_store
        self.session_scope = session_scope
        self.reporter = reporter or ProgressReporter()
        self.categories = tuple(categories)
        self.timeouts = timeouts or StepTimeouts()

    async def run(
        self, deal_id: str, files: Sequence[SourceFile], free_text: str | None = None,
    ) -> dict[str, Any]:
        files = list(files)
        self.reporter.update(PipelineState.INITIALIZING, "Initializing analysis", 5)
        try:
            validate_inputs(files, free_text)
            with self.session_scope() as session:
                if session.get(Deal, deal_id) is None:
                    raise PipelineValidationError(f"Deal not found: {deal_id}")
        except PipelineValidationError as exc:
            self.reporter.fail(str(exc))
            raise

        log.info("Starting analysis of deal %s (files=%d, free_text=%s)",
                 deal_id, len(files), bool(free_text))

        ingested = await self._ingest(files)
        file_ids = [r.ai_file_id for r in ingested if r.ai_file_id]

        # Discovery only runs with documents; without them earlier results are kept.
        if file_ids and self.categories:
            with self.session_scope() as session:
                removed = clear_competitors(session, deal_id)
                session.commit()
            if removed:
                log.info("Replacing %d competitors from an earlier run of deal %s", removed, deal_id)

        self.reporter.update(PipelineState.SYNTHESIZING, "Analyzing deal and searching for competitors", 40)
        analysis, *branches = await asyncio.gather(
            self._synthesize(file_ids, free_text),
            *(
                run_discovery_branch(
                    self.llm, self.session_scope, deal_id, category, file_ids,
                    company_hint=free_text, timeout=self.timeouts.discovery,
                )
                for category in self.categories
            ),
        )

        self.reporter.update(PipelineState.SYNTHESIZING, "Updating deal with extracted information", 70)
        with self.session_scope() as session:
            deal = session.get(Deal, deal_id)
            if deal is None:
                raise LookupError(f"Deal {deal_id} disappeared during analysis")
            apply_analysis(deal, analysis)
            written = apply_file_ids(session, deal_id, ingested)
            session.commit()
        log.info("Deal %s updated (%d file ids written)", deal_id, written)

        competitor_ids = [cid for ids in branches for cid in ids]
        self.reporter.update(
            PipelineState.EVALUATING, f"Evaluating {len(competitor_ids)} competitors", 85,
        )
        if competitor_ids:
            evaluations = await asyncio.gather(*(
                evaluate_competitor(self.llm, self.session_scope, cid, timeout=self.timeouts.evaluation)
                for cid in competitor_ids
            ))
            log.info("Evaluated %d/%d competitors", sum(e is not None for e in evaluations), len(evaluations))

        self.reporter.update(PipelineState.FINALIZING, "Finalizing", 95)
        with self.session_scope() as session:
            deal = session.get(Deal, deal_id)
            if deal is None:
                raise LookupError(f"Deal {deal_id} disappeared during analysis")
            output = services.deal_detail(deal)

        self.reporter.complete(output)
        return output

    async def _ingest(self, files: list[SourceFile]) -> list[IngestResult]:
        if not files:
            return []
        self.reporter.update(PipelineState.INGESTING, f"Uploading {len(files)} files for analysis", 15)
        try:
            return await asyncio.wait_for(
                ingest_files(files, self.llm, self.blob_store), self.timeouts.ingest,
            )
        except TimeoutError:
            log.warning("Ingestion timed out after %ss", self.timeouts.ingest)
            return [
                IngestResult(
                    original_filename=f.original_filename, url=f.url, ai_file_id=None,
                    size=f.size, mime_type=f.mime_type, error="timed out",
                )
                for f in files
            ]

    async def _synthesize(self, file_ids: list[str], free_text: str | None) -> DealAnalysis:
        try:
            return await asyncio.wait_for(
                synthesize_deal(self.llm, file_ids, free_text), self.timeouts.synthesis,
            )
        except PipelineValidationError:
            log.warning("No ingested documents and no free text left, using fallback analysis")
        except TimeoutError:
            log.warning("Deal synthesis timed out after %ss", self.timeouts.synthesis)
        except Exception as exc:
            log.warning("Deal synthesis failed: %s", exc)
        return fallback_analysis()

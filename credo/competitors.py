"""Competitor discovery (one branch per category) and per-competitor evaluation.

Discovery asks the model, with web search and the deal's documents attached,
for rivals inside a single :class:`~credo.categories.CompetitorCategory` and
stores each one as a ``Competitor`` row tagged with that category.

Evaluation compares the deal with one stored competitor and attaches a score,
an evaluation category and two justifications to that row.  A failed
evaluation leaves the row exactly as it was.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from credo.categories import CategoryConfig
from credo.db import SessionScope
from credo.llm import LLMCallError, LLMClient
from credo.models import Competitor, Deal, DealFile
from credo.schemas import UNCERTAIN, UNKNOWN, CompetitorEvaluation, CompetitorList, CompetitorProfile
from credo.utils import sanitize_citations

log = logging.getLogger(__name__)

_NO_CITATIONS = (
    "Do not include citation markers (e.g., cite, turnXsearchY, turnXnewsY, [1]) "
    "in your prose. Return clean text only."
)

DISCOVERY_SYSTEM_PROMPT = f"""\
You are a venture capital analyst. Read the attached documents about the company \
being evaluated and use web search to find real, named competitors. Only return \
companies or projects that belong to the requested category. Prefer concrete named \
companies over generic descriptions. {_NO_CITATIONS}\
"""

EVALUATION_SYSTEM_PROMPT = """\
You are a world-class venture capital analyst. Your mission is to evaluate the \
competitive landscape between two companies. Read the attached documents about \
{company}, and use web search to find information about the competitor \
({competitor}). Be thorough and meticulous in your research. """ + _NO_CITATIONS

COMPETITION_RULES = """\
Score how strongly the competitor threatens the company being evaluated on a scale \
from 0 to 10:
- 0-2: different problem or customer; overlap is incidental
- 3-5: partial overlap in product or customer, different positioning
- 6-8: same customer and a substitutable product
- 9-10: direct head-to-head competitor with an equal or stronger offering
If there is not enough public information to judge, use the score "UNCERTAIN".

Classify the competitor as exactly one of:
- early-stage: pre-Series A startups or small projects
- well-funded: venture-backed companies at Series B or later, or with $10M+ raised
- incumbent: large established companies or public market leaders

Give a one-sentence short justification and a detailed justification of a few \
paragraphs covering product, customers, funding and momentum.\
"""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def build_discovery_prompt(category: CategoryConfig, company_hint: str | None = None) -> str:
    lines = [
        f"Find competitors of the company described in the attached documents "
        f"in this category only: {category.name}.",
        f"Category definition: {category.description}",
        "For each competitor give the name, a short description, the website if known, "
        "and a sentence on why it is relevant to the company.",
    ]
    if company_hint and company_hint.strip():
        lines.append(f"Additional context about the company: {company_hint.strip()}")
    return "\n".join(lines)


def clean_profile(profile: CompetitorProfile) -> CompetitorProfile | None:
    """Strip citation artifacts from every text field; drop profiles without a name."""
    name = sanitize_citations(profile.name)
    if not name:
        return None
    return CompetitorProfile(
        name=name,
        description=sanitize_citations(profile.description),
        website=sanitize_citations(profile.website),
        relevance=sanitize_citations(profile.relevance),
    )


async def discover_competitors(
    llm: LLMClient,
    category: CategoryConfig,
    file_ids: Sequence[str],
    company_hint: str | None = None,
) -> list[CompetitorProfile]:
    """Find competitors for one category. No documents means no call and no results."""
    file_ids = [fid for fid in file_ids if fid]
    if not file_ids:
        log.info("No ingested documents, skipping %s discovery", category.slug.value)
        return []

    result = await llm.parse(
        DISCOVERY_SYSTEM_PROMPT,
        build_discovery_prompt(category, company_hint),
        CompetitorList,
        file_ids=file_ids,
        web_search=True,
    )
    profiles = [p for p in (clean_profile(c) for c in result.competitors) if p is not None]
    log.info("Discovered %d %s competitors", len(profiles), category.slug.value)
    return profiles


def clear_competitors(session: Session, deal_id: str) -> int:
    """Remove the competitors of an earlier run so a rerun replaces them. Caller must commit."""
    outcome = session.execute(delete(Competitor).where(Competitor.deal_id == deal_id))
    return outcome.rowcount or 0


def persist_competitors(
    session: Session, deal_id: str, category: CategoryConfig, profiles: list[CompetitorProfile],
) -> list[str]:
    """Create one row per profile, tagged with the category. Caller must commit."""
    rows = [
        Competitor(
            deal_id=deal_id,
            name=p.name,
            description=p.description,
            website=p.website,
            relevance=p.relevance,
            competitor_source=category.slug.value,
        )
        for p in profiles
    ]
    session.add_all(rows)
    session.flush()
    return [r.id for r in rows]


async def run_discovery_branch(
    llm: LLMClient,
    session_scope: SessionScope,
    deal_id: str,
    category: CategoryConfig,
    file_ids: Sequence[str],
    company_hint: str | None = None,
    timeout: float | None = None,
) -> list[str]:
    """Discover and store competitors for one category; return the new row ids.

    Any failure (provider, time limit, database) yields ``[]`` for this branch only.
    """
    try:
        profiles = await asyncio.wait_for(
            discover_competitors(llm, category, file_ids, company_hint), timeout,
        )
        if not profiles:
            return []
        with session_scope() as session:
            ids = persist_competitors(session, deal_id, category, profiles)
            session.commit()
        return ids
    except TimeoutError:
        log.warning("Discovery for %s timed out after %ss", category.slug.value, timeout)
    except Exception as exc:
        log.warning("Discovery for %s failed: %s", category.slug.value, exc)
    return []


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def format_score(score: float | str) -> str:
    if isinstance(score, str):
        return UNCERTAIN
    return str(int(score)) if float(score).is_integer() else f"{score:g}"


def build_evaluation_prompt(deal: Deal, competitor: Competitor) -> str:
    company_description = "\n\n".join(t for t in (deal.description, deal.uploaded_text) if t)
    return f"""\
You are comparing two companies.

{deal.company_name} (the one we are evaluating):
Name: {deal.company_name}
Description: {company_description or UNKNOWN}

{competitor.name} (the competitor):
Name: {competitor.name}
Description: {competitor.description or UNKNOWN}
Website: {competitor.website or UNKNOWN}

Please evaluate the competition between them using the following rules:
---
{COMPETITION_RULES}
---
"""


def _load_for_evaluation(session: Session, competitor_id: str) -> tuple[str, str, str, list[str]] | None:
    competitor = session.get(Competitor, competitor_id)
    if competitor is None or competitor.deal is None:
        return None
    deal = competitor.deal
    file_ids = list(session.execute(
        select(DealFile.ai_file_id).where(
            DealFile.deal_id == deal.id, DealFile.ai_file_id.is_not(None),
        )
    ).scalars().all())
    return (
        EVALUATION_SYSTEM_PROMPT.format(company=deal.company_name, competitor=competitor.name),
        build_evaluation_prompt(deal, competitor),
        competitor.name,
        file_ids,
    )


async def evaluate_competitor(
    llm: LLMClient,
    session_scope: SessionScope,
    competitor_id: str,
    timeout: float | None = None,
) -> CompetitorEvaluation | None:
    """Score one competitor against its deal and store the result on the row.

    Returns ``None`` without touching the row when the competitor is missing,
    the call fails, or the time limit is hit.
    """
    try:
        with session_scope() as session:
            loaded = _load_for_evaluation(session, competitor_id)
        if loaded is None:
            log.warning("Competitor or deal not found: %s", competitor_id)
            return None
        system, user, name, file_ids = loaded

        evaluation = await asyncio.wait_for(
            llm.parse(system, user, CompetitorEvaluation, file_ids=file_ids, web_search=True),
            timeout,
        )

        with session_scope() as session:
            competitor = session.get(Competitor, competitor_id)
            if competitor is None:
                log.warning("Competitor %s disappeared before its evaluation was saved", competitor_id)
                return None
            competitor.score = format_score(evaluation.score)
            competitor.competitor_category = evaluation.competitor_category.value
            competitor.short_justification = sanitize_citations(evaluation.short_justification) or UNKNOWN
            competitor.detailed_justification = sanitize_citations(evaluation.detailed_justification) or UNKNOWN
            session.commit()
    except TimeoutError:
        log.warning("Evaluation of competitor %s timed out after %ss", competitor_id, timeout)
        return None
    except LLMCallError as exc:
        log.warning("Evaluation of competitor %s failed: %s", competitor_id, exc)
        return None
    except Exception as exc:
        log.warning("Evaluation of competitor %s failed unexpectedly: %s", competitor_id, exc)
        return None

    log.info("Evaluated %s: score=%s category=%s", name, format_score(evaluation.score),
             evaluation.competitor_category.value)
    return evaluation

"""Shared business logic for the Credo API, pipeline and MCP server."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from credo.models import PLACEHOLDER_NAME, Deal, DealFile, Person, PipelineRun
from credo.schemas import SourceFile
from credo.storage import BlobStore, BlobStoreError
from credo.utils import json_parse

log = logging.getLogger(__name__)

PDF_MIME = "application/pdf"

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

FILE_FIELDS = ("id", "filename", "original_name", "mime_type", "size", "url", "ai_file_id")

COMPETITOR_FIELDS = (
    "id", "name", "description", "website", "relevance", "competitor_source",
    "score", "competitor_category", "short_justification", "detailed_justification",
)

PERSON_FIELDS = (
    "id", "leadspicker_id", "full_name", "email", "position", "linkedin_url",
    "company_name", "company_website_url", "country",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def deal_summary(deal: Deal) -> dict:
    return {
        "id": deal.id,
        "company_name": deal.company_name,
        "description": deal.description or "",
        "uploaded_text": deal.uploaded_text or "",
        "founding_team": json_parse(deal.founding_team_json, []),
        "owner_id": deal.owner_id,
        "created_at": _iso(deal.created_at),
        "updated_at": _iso(deal.updated_at),
        "files": [{f: getattr(df, f) for f in FILE_FIELDS} for df in deal.files],
    }


def deal_detail(deal: Deal) -> dict:
    base = deal_summary(deal)
    base["competitors"] = [
        {f: getattr(c, f) for f in COMPETITOR_FIELDS}
        for c in sorted(deal.competitors, key=lambda c: (c.competitor_source, c.name))
    ]
    return base


def run_summary(run: PipelineRun) -> dict:
    output = json_parse(run.output_json, None) if run.output_json else None
    return {
        "id": run.id,
        "deal_id": run.deal_id,
        "status": run.status,
        "label": run.label,
        "progress": run.progress,
        "output": output,
        "error": run.error or None,
        "created_at": _iso(run.created_at),
        "finished_at": _iso(run.finished_at),
    }


def person_summary(person: Person) -> dict:
    return {f: getattr(person, f) for f in PERSON_FIELDS}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_deals(session: Session, owner_id: str) -> list[Deal]:
    return list(session.execute(
        select(Deal)
        .where(Deal.owner_id == owner_id, Deal.deleted.is_(False))
        .order_by(Deal.created_at.desc())
    ).scalars().all())


def get_owned_deal(session: Session, deal_id: str, owner_id: str) -> Deal | None:
    """Return the deal if it exists, is not soft-deleted and belongs to *owner_id*."""
    return session.execute(
        select(Deal).where(
            Deal.id == deal_id, Deal.owner_id == owner_id, Deal.deleted.is_(False),
        )
    ).scalars().first()


def source_files(deal: Deal) -> list[SourceFile]:
    return [
        SourceFile(url=f.url, original_filename=f.original_name, mime_type=f.mime_type, size=f.size)
        for f in deal.files
    ]


# ---------------------------------------------------------------------------
# Mutations (caller must commit)
# ---------------------------------------------------------------------------


def create_deal(
    session: Session, owner_id: str, company_name: str = PLACEHOLDER_NAME,
    description: str = "", uploaded_text: str = "",
) -> Deal:
    deal = Deal(
        owner_id=owner_id, company_name=company_name,
        description=description, uploaded_text=uploaded_text, deleted=False,
    )
    session.add(deal)
    session.flush()
    return deal


def soft_delete_deal(deal: Deal) -> None:
    deal.deleted = True


@dataclass
class IncomingFile:
    """A file received by the upload endpoint, already read into memory."""
    filename: str
    content_type: str
    data: bytes


def is_pdf(filename: str, content_type: str | None) -> bool:
    return content_type == PDF_MIME or filename.lower().endswith(".pdf")


async def store_deal_files(
    session: Session, deal: Deal, files: list[IncomingFile], blob_store: BlobStore,
) -> list[DealFile]:
    """Upload each file to blob storage and record it on the deal.

    When a write fails, the keys already written are logged so the orphaned
    blobs can be found once the caller rolls the deal back.
    """
    rows: list[DealFile] = []
    for f in files:
        try:
            key, url = await blob_store.put(f.data, f.filename, f.content_type or PDF_MIME)
        except BlobStoreError:
            log.warning("Upload of %s failed; orphaned blobs: %s",
                        f.filename, [r.filename for r in rows] or "none")
            raise
        row = DealFile(
            deal=deal, filename=key, original_name=f.filename,
            mime_type=f.content_type or PDF_MIME, size=len(f.data), url=url,
        )
        session.add(row)
        rows.append(row)
    session.flush()
    log.info("Stored %d files for deal %s", len(rows), deal.id)
    return rows


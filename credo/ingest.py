"""File ingestion: move stored documents into the AI provider's file store."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from credo.llm import LLMClient
from credo.schemas import SourceFile
from credo.storage import BlobStore

log = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome for one source file; ``ai_file_id`` is None when the upload failed."""
    original_filename: str
    url: str
    ai_file_id: str | None
    size: int = 0
    mime_type: str = ""
    error: str | None = None


async def _ingest_one(file: SourceFile, llm: LLMClient, blob_store: BlobStore) -> str:
    data = await blob_store.fetch(file.url)
    return await llm.upload_file(file.original_filename, data, file.mime_type)


async def ingest_files(
    files: list[SourceFile], llm: LLMClient, blob_store: BlobStore,
) -> list[IngestResult]:
    """Upload every file to the provider; one result per input, in input order.

    A failed item degrades to ``ai_file_id=None`` and never aborts its siblings.
    """
    if not files:
        return []

    outcomes = await asyncio.gather(
        *(_ingest_one(f, llm, blob_store) for f in files), return_exceptions=True,
    )
    results: list[IngestResult] = []
    for file, outcome in zip(files, outcomes):
        if isinstance(outcome, BaseException):
            log.warning("Ingestion failed for %s (%s): %s", file.original_filename, file.url, outcome)
            results.append(IngestResult(
                original_filename=file.original_filename, url=file.url, ai_file_id=None,
                size=file.size, mime_type=file.mime_type, error=str(outcome),
            ))
        else:
            log.info("Ingested %s as %s", file.original_filename, outcome)
            results.append(IngestResult(
                original_filename=file.original_filename, url=file.url, ai_file_id=outcome,
                size=file.size, mime_type=file.mime_type,
            ))

    ok = sum(1 for r in results if r.ai_file_id)
    log.info("Ingestion finished: %d/%d files uploaded", ok, len(results))
    return results

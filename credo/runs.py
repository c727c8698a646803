"""Pipeline runs: scheduling, persisted progress and run-scoped read access."""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credo.analysis import PipelineValidationError
from credo.categories import ALL_CATEGORIES, CategoryConfig
from credo.config import Settings, get_settings
from credo.db import SessionScope, session_scope as default_session_scope
from credo.llm import LLMClient
from credo.models import PipelineRun
from credo.pipeline import (
    TERMINAL_STATES,
    Pipeline,
    PipelineState,
    ProgressEvent,
    ProgressReporter,
    validate_inputs,
)
from credo.schemas import SourceFile
from credo.storage import BlobStore, build_blob_store

log = logging.getLogger(__name__)


class RunInProgressError(Exception):
    """A deal already has an unfinished analysis run."""
    def __init__(self, deal_id: str, run_id: str):
        super().__init__(f"Deal {deal_id} already has an active run ({run_id})")
        self.deal_id = deal_id
        self.run_id = run_id


class DbProgressReporter(ProgressReporter):
    """Mirrors every progress event onto the run's database row."""

    def __init__(self, run_id: str, session_scope: SessionScope):
        super().__init__()
        self.run_id = run_id
        self.session_scope = session_scope

    def publish(self, event: ProgressEvent) -> None:
        try:
            with self.session_scope() as session:
                run = session.get(PipelineRun, self.run_id)
                if run is None:
                    return
                run.status = event.state
                run.label = event.label
                run.progress = max(run.progress or 0, event.progress)
                if self.output is not None:
                    run.output_json = json.dumps(self.output)
                if self.error:
                    run.error = self.error
                if event.state in TERMINAL_STATES:
                    run.finished_at = datetime.now(UTC)
                session.commit()
        except SQLAlchemyError as exc:
            log.warning("Could not record progress for run %s: %s", self.run_id, exc)


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


def issue_run_token(run: PipelineRun) -> str:
    """Create (or rotate) the read token scoped to this one run. Caller must commit."""
    token = secrets.token_urlsafe(24)
    run.access_token = token
    return token


def can_read_run(run: PipelineRun, owner_id: str | None = None, token: str | None = None) -> bool:
    if owner_id and run.owner_id == owner_id:
        return True
    if token and run.access_token:
        return secrets.compare_digest(token, run.access_token)
    return False


def active_run(session: Session, deal_id: str) -> PipelineRun | None:
    return session.execute(
        select(PipelineRun).where(
            PipelineRun.deal_id == deal_id,
            PipelineRun.status.not_in(TERMINAL_STATES),
        )
    ).scalars().first()


def recover_stale_runs(session: Session, older_than: float = 0.0) -> int:
    """Fail runs left unfinished by a previous process. Caller must commit.

    With several workers sharing one database, pass *older_than* (seconds, at
    least the whole-run time limit) so runs another worker may still be
    executing are left alone.
    """
    query = select(PipelineRun).where(PipelineRun.status.not_in(TERMINAL_STATES))
    if older_than > 0:
        # created_at is stored as naive UTC
        cutoff = datetime.now(UTC).replace(tzinfo=None) - timedelta(seconds=older_than)
        query = query.where(PipelineRun.created_at <= cutoff)
    stale = session.execute(query).scalars().all()
    for run in stale:
        run.status = PipelineState.FAILED.value
        run.label = "Interrupted by restart"
        run.error = "Interrupted by restart"
        run.finished_at = datetime.now(UTC)
    return len(stale)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class PipelineRunner:
    """Schedules pipeline runs as background tasks on the running event loop.

    Each run is bounded by the whole-pipeline time limit.  Runs never retry
    themselves; a run for a deal that already has an active run is refused.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        llm_factory: Callable[[Settings], LLMClient] = LLMClient,
        blob_store: BlobStore | None = None,
        session_scope: SessionScope = default_session_scope,
        categories: Sequence[CategoryConfig] = ALL_CATEGORIES,
    ):
        self.settings = settings or get_settings()
        self._llm_factory = llm_factory
        self._llm: LLMClient | None = None
        self.blob_store = blob_store or build_blob_store(self.settings)
        self.session_scope = session_scope
        self.categories = tuple(categories)
        self._tasks: set[asyncio.Task] = set()

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = self._llm_factory(self.settings)
        return self._llm

    async def start(
        self, deal_id: str, owner_id: str, files: Sequence[SourceFile], free_text: str | None = None,
    ) -> str:
        """Validate, record a new run and schedule it; return the run id.

        Raises:
            PipelineValidationError: no documents and no free text.
            RunInProgressError: the deal already has an unfinished run.
        """
        files = list(files)
        validate_inputs(files, free_text)
        with self.session_scope() as session:
            existing = active_run(session, deal_id)
            if existing is not None:
                raise RunInProgressError(deal_id, existing.id)
            run = PipelineRun(
                deal_id=deal_id, owner_id=owner_id,
                status=PipelineState.INITIALIZING.value, label="Queued", progress=0,
            )
            session.add(run)
            session.commit()
            run_id = run.id

        task = asyncio.create_task(self.execute(run_id, deal_id, files, free_text), name=f"pipeline-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("Scheduled run %s for deal %s", run_id, deal_id)
        return run_id

    async def execute(
        self, run_id: str, deal_id: str, files: list[SourceFile], free_text: str | None,
    ) -> dict[str, Any] | None:
        """Run the pipeline to a terminal state and record the outcome on the run row."""
        reporter = DbProgressReporter(run_id, self.session_scope)
        limit = self.settings.timeouts.pipeline
        try:
            pipeline = Pipeline(
                self.llm, self.blob_store, self.session_scope, reporter,
                self.categories, self.settings.timeouts,
            )
            return await asyncio.wait_for(pipeline.run(deal_id, files, free_text), limit)
        except PipelineValidationError as exc:
            log.warning("Run %s rejected: %s", run_id, exc)
        except TimeoutError:
            log.warning("Run %s exceeded %ss", run_id, limit)
            reporter.fail(f"Timed out after {limit:g}s")
        except Exception as exc:
            log.exception("Run %s crashed", run_id)
            reporter.fail(str(exc) or exc.__class__.__name__)
        return None

    async def wait_idle(self) -> None:
        """Wait for every scheduled run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

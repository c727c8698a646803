from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from credo import services
from credo.analysis import PipelineValidationError
from credo.categories import ALL_CATEGORIES
from credo.config import Settings, get_settings
from credo.db import SessionScope, get_session, init_db, session_scope
from credo.leads import add_person
from credo.models import Person, PipelineRun
from credo.pipeline import TERMINAL_STATES
from credo.runs import PipelineRunner, RunInProgressError, can_read_run, issue_run_token, recover_stale_runs
from credo.schemas import (
    CategoryOut,
    DealCreate,
    DealDetail,
    DealOut,
    PersonOut,
    RunOut,
    RunTokenOut,
    UploadResponse,
)
from credo.storage import BlobStore, BlobStoreError

log = logging.getLogger(__name__)

_STREAM_POLL_SECONDS = 0.5


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db(settings.db_path)
    with session_scope() as session:
        stale = recover_stale_runs(session, older_than=settings.stale_run_grace)
        session.commit()
    if stale:
        log.warning("Marked %d interrupted runs as failed", stale)
    app.state.runner = PipelineRunner(settings)
    yield
    await app.state.runner.wait_idle()


app = FastAPI(
    title="Credo",
    version="0.1.0",
    description=(
        "Deal analysis API for venture investors. Upload a pitch deck, then follow "
        "the analysis run as it extracts the company profile and finds and scores "
        "competitors. Callers identify themselves with the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Deals", "description": "Create, browse and delete deals."},
        {"name": "Analysis", "description": "Upload documents and run the analysis pipeline."},
        {"name": "Runs", "description": "Progress and results of analysis runs."},
        {"name": "People", "description": "Lead enrichment from Leadspicker."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session_scope() -> SessionScope:
    return session_scope


def get_app_settings() -> Settings:
    return get_settings()


def get_runner(request: Request) -> PipelineRunner:
    return request.app.state.runner


def get_blob_store(runner: PipelineRunner = Depends(get_runner)) -> BlobStore:
    return runner.blob_store


def current_user_id(x_user_id: str | None = Header(None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return user_id


def optional_user_id(x_user_id: str | None = Header(None)) -> str | None:
    return (x_user_id or "").strip() or None


def _owned_deal_or_404(session: Session, deal_id: str, owner_id: str):
    deal = services.get_owned_deal(session, deal_id, owner_id)
    if deal is None:
        raise HTTPException(404, "Deal not found")
    return deal


def _readable_run_or_404(session: Session, run_id: str, owner_id: str | None, token: str | None) -> PipelineRun:
    if not owner_id and not token:
        raise HTTPException(401, "Missing X-User-Id header or run token")
    run = session.get(PipelineRun, run_id)
    if run is None or not can_read_run(run, owner_id, token):
        raise HTTPException(404, "Run not found")
    return run


async def _start_run(runner: PipelineRunner, deal, owner_id: str) -> str:
    try:
        return await runner.start(deal.id, owner_id, services.source_files(deal), deal.uploaded_text)
    except PipelineValidationError as exc:
        raise HTTPException(400, str(exc)) from exc
    except RunInProgressError as exc:
        raise HTTPException(409, str(exc)) from exc


# ---------------------------------------------------------------------------
# Routes: Deals
# ---------------------------------------------------------------------------


@app.get("/api/deals", response_model=list[DealOut],
         tags=["Deals"], summary="List the caller's deals, newest first")
async def list_deals(owner_id: str = Depends(current_user_id), session: Session = Depends(db_session)):
    return [services.deal_summary(d) for d in services.list_deals(session, owner_id)]


@app.post("/api/deals", response_model=DealDetail, status_code=201,
          tags=["Deals"], summary="Create a deal by hand")
async def create_deal(body: DealCreate, owner_id: str = Depends(current_user_id),
                      session: Session = Depends(db_session)):
    name = body.company_name.strip()
    if not name:
        raise HTTPException(400, "company_name must not be empty")
    deal = services.create_deal(session, owner_id, company_name=name, description=body.description)
    session.commit()
    return services.deal_detail(deal)


@app.post("/api/deals/upload", response_model=UploadResponse, status_code=201,
          tags=["Analysis"], summary="Upload PDFs and/or free text and start an analysis run")
async def upload_deal(
    files: list[UploadFile] = File(default=[]),
    free_text: str = Form(""),
    owner_id: str = Depends(current_user_id),
    session: Session = Depends(db_session),
    runner: PipelineRunner = Depends(get_runner),
    blob_store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_app_settings),
):
    free_text = free_text.strip()
    incoming: list[services.IncomingFile] = []
    for upload in files:
        if not upload.filename:
            continue
        if not services.is_pdf(upload.filename, upload.content_type):
            raise HTTPException(400, f"Only PDF files are supported: {upload.filename}")
        if upload.size is not None and upload.size > settings.max_upload_bytes:
            raise HTTPException(413, f"{upload.filename} exceeds the upload size limit")
        # One byte past the limit is enough to know it is too big.
        data = await upload.read(settings.max_upload_bytes + 1)
        if len(data) > settings.max_upload_bytes:
            raise HTTPException(413, f"{upload.filename} exceeds the upload size limit")
        incoming.append(services.IncomingFile(upload.filename, upload.content_type or services.PDF_MIME, data))

    if not incoming and not free_text:
        raise HTTPException(400, "Provide at least one PDF or some free text")

    deal = services.create_deal(session, owner_id, uploaded_text=free_text)
    try:
        await services.store_deal_files(session, deal, incoming, blob_store)
    except BlobStoreError as exc:
        session.rollback()
        raise HTTPException(502, f"Could not store uploaded files: {exc}") from exc
    session.commit()

    run_id = await _start_run(runner, deal, owner_id)
    return {"success": True, "deal": services.deal_detail(deal), "run_id": run_id}


@app.get("/api/deals/{deal_id}", response_model=DealDetail,
         tags=["Deals"], summary="Get a deal with its files and competitors")
async def get_deal(deal_id: str, owner_id: str = Depends(current_user_id),
                   session: Session = Depends(db_session)):
    return services.deal_detail(_owned_deal_or_404(session, deal_id, owner_id))


@app.delete("/api/deals/{deal_id}", tags=["Deals"], summary="Soft-delete a deal")
async def delete_deal(deal_id: str, owner_id: str = Depends(current_user_id),
                      session: Session = Depends(db_session)):
    deal = _owned_deal_or_404(session, deal_id, owner_id)
    services.soft_delete_deal(deal)
    session.commit()
    return {"ok": True}


@app.post("/api/deals/{deal_id}/analyze", status_code=202,
          tags=["Analysis"], summary="Re-run the analysis from the deal's stored files and text")
async def analyze_deal(
    deal_id: str,
    owner_id: str = Depends(current_user_id),
    session: Session = Depends(db_session),
    runner: PipelineRunner = Depends(get_runner),
):
    deal = _owned_deal_or_404(session, deal_id, owner_id)
    return {"run_id": await _start_run(runner, deal, owner_id)}


@app.get("/api/deals/{deal_id}/runs", response_model=list[RunOut],
         tags=["Runs"], summary="List analysis runs for a deal, newest first")
async def list_deal_runs(deal_id: str, owner_id: str = Depends(current_user_id),
                         session: Session = Depends(db_session)):
    _owned_deal_or_404(session, deal_id, owner_id)
    runs = session.execute(
        select(PipelineRun)
        .where(PipelineRun.deal_id == deal_id)
        .order_by(PipelineRun.created_at.desc())
    ).scalars().all()
    return [services.run_summary(r) for r in runs]


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.get("/api/runs/{run_id}", response_model=RunOut,
         tags=["Runs"], summary="Current state of a run (owner, or anyone holding its token)")
async def get_run(
    run_id: str,
    token: str | None = Query(None, description="Read token issued for this run"),
    owner_id: str | None = Depends(optional_user_id),
    session: Session = Depends(db_session),
):
    return services.run_summary(_readable_run_or_404(session, run_id, owner_id, token))


@app.get("/api/runs/{run_id}/stream", tags=["Runs"], summary="Follow a run (SSE progress stream)")
async def stream_run(
    run_id: str,
    token: str | None = Query(None),
    owner_id: str | None = Depends(optional_user_id),
    session: Session = Depends(db_session),
    scope: SessionScope = Depends(get_session_scope),
):
    _readable_run_or_404(session, run_id, owner_id, token)

    async def stream():
        last: dict[str, Any] | None = None
        while True:
            with scope() as poll:
                run = poll.get(PipelineRun, run_id)
                if run is None:
                    yield f"data: {json.dumps({'type': 'error', 'error': 'Run not found'})}\n\n"
                    return
                current = services.run_summary(run)
            if current != last:
                yield f"data: {json.dumps({'type': 'progress', 'run': current})}\n\n"
                last = current
            if current["status"] in TERMINAL_STATES:
                return
            await asyncio.sleep(_STREAM_POLL_SECONDS)

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.post("/api/runs/{run_id}/token", response_model=RunTokenOut,
          tags=["Runs"], summary="Issue a read token scoped to this one run")
async def create_run_token(run_id: str, owner_id: str = Depends(current_user_id),
                           session: Session = Depends(db_session)):
    run = session.get(PipelineRun, run_id)
    if run is None or run.owner_id != owner_id:
        raise HTTPException(404, "Run not found")
    token = issue_run_token(run)
    session.commit()
    return {"run_id": run.id, "token": token}


# ---------------------------------------------------------------------------
# Routes: Categories
# ---------------------------------------------------------------------------


@app.get("/api/categories", response_model=list[CategoryOut],
         tags=["Analysis"], summary="Competitor categories searched during discovery")
async def list_categories():
    return [{"slug": c.slug.value, "name": c.name, "description": c.description} for c in ALL_CATEGORIES]


# ---------------------------------------------------------------------------
# Routes: People
# ---------------------------------------------------------------------------


def _webhook_person_id(body: dict[str, Any]) -> int | None:
    candidates = [body.get("person_id"), body.get("personId")]
    person = body.get("person")
    if isinstance(person, dict):
        candidates.append(person.get("id"))
    for value in candidates:
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


@app.post("/api/webhook/register-new-person", tags=["People"],
          summary="Receive a new-lead webhook and enrich the person in the background")
async def register_new_person(
    request: Request,
    background: BackgroundTasks,
    settings: Settings = Depends(get_app_settings),
    scope: SessionScope = Depends(get_session_scope),
):
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise HTTPException(400, "Webhook body must be a JSON object")

    person_id = _webhook_person_id(body)
    log.info("Webhook register-new-person: keys=%s person_id=%s", sorted(body), person_id)
    if person_id is not None:
        background.add_task(add_person, person_id, settings, scope)
    return {
        "success": True,
        "message": "Webhook received",
        "body_keys": sorted(body),
        "person_id": person_id,
        "enrichment_scheduled": person_id is not None,
    }


@app.get("/api/people", response_model=list[PersonOut], tags=["People"], summary="List enriched people")
async def list_people(_: str = Depends(current_user_id), session: Session = Depends(db_session)):
    people = session.execute(select(Person).order_by(Person.created_at.desc())).scalars().all()
    return [services.person_summary(p) for p in people]


@app.post("/api/people/{leadspicker_id}/enrich", tags=["People"],
          summary="Fetch a person from Leadspicker and store it")
async def enrich_person(
    leadspicker_id: int,
    _: str = Depends(current_user_id),
    settings: Settings = Depends(get_app_settings),
    scope: SessionScope = Depends(get_session_scope),
):
    report = await add_person(leadspicker_id, settings, scope)
    if not report["success"]:
        raise HTTPException(502, report.get("error") or "Lead enrichment failed")
    return report


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("credo.app:app", host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()

"""Integration tests for the FastAPI endpoints.

Uses TestClient with the database, blob store and pipeline runner overridden.
"""
from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from credo.config import Settings, get_settings
from credo.db import make_session_scope
from credo.models import Competitor, Deal, PipelineRun
from credo.runs import RunInProgressError
from credo.storage import BlobStoreError

from conftest import FakeBlobStore

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


class RecordingRunner:
    """Stands in for PipelineRunner: records start() calls instead of scheduling."""

    def __init__(self, blob_store):
        self.blob_store = blob_store
        self.calls: list[dict] = []
        self.error: Exception | None = None

    async def start(self, deal_id, owner_id, files, free_text=None):
        if self.error is not None:
            raise self.error
        self.calls.append({"deal_id": deal_id, "owner_id": owner_id, "files": list(files), "free_text": free_text})
        return f"run-{len(self.calls)}"


class FailingSecondPut(FakeBlobStore):
    async def put(self, data, filename, content_type):
        if self.blobs:
            raise BlobStoreError("bucket unavailable")
        return await super().put(data, filename, content_type)


@pytest.fixture()
def client(session_factory, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database."""
    monkeypatch.setenv("CREDO_DB_PATH", str(tmp_path / "credo.db"))
    monkeypatch.setenv("BLOB_DIR", str(tmp_path / "blobs"))
    get_settings.cache_clear()

    from credo.app import app, db_session, get_app_settings, get_runner, get_session_scope

    runner = RecordingRunner(FakeBlobStore())

    def override_db_session():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_session_scope] = lambda: make_session_scope(session_factory)
    app.dependency_overrides[get_runner] = lambda: runner
    app.dependency_overrides[get_app_settings] = lambda: Settings(max_upload_bytes=1024)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, runner
    app.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest.fixture()
def seeded(client, session):
    """Client plus one deal owned by alice with a completed run."""
    c, runner = client
    deal = Deal(owner_id="alice", company_name="Acme", description="Robots", uploaded_text="Robots")
    session.add(deal)
    session.flush()
    session.add(Competitor(deal_id=deal.id, name="Rival", competitor_source="yc-companies", score="7"))
    run = PipelineRun(deal_id=deal.id, owner_id="alice", status="completed", label="Analysis completed",
                      progress=100, output_json=json.dumps({"company_name": "Acme"}))
    session.add(run)
    session.commit()
    return c, runner, deal.id, run.id


class TestAuth:
    def test_missing_user_header(self, client):
        c, _ = client
        assert c.get("/api/deals").status_code == 401
        assert c.post("/api/deals/upload", data={"free_text": "x"}).status_code == 401


class TestDealEndpoints:
    def test_create_and_list(self, client):
        c, _ = client
        resp = c.post("/api/deals", json={"company_name": "Acme", "description": "Robots"}, headers=ALICE)
        assert resp.status_code == 201
        assert resp.json()["company_name"] == "Acme"
        assert resp.json()["competitors"] == []

        listed = c.get("/api/deals", headers=ALICE).json()
        assert [d["company_name"] for d in listed] == ["Acme"]
        assert c.get("/api/deals", headers=BOB).json() == []

    def test_create_requires_name(self, client):
        c, _ = client
        assert c.post("/api/deals", json={"company_name": "  "}, headers=ALICE).status_code == 400

    def test_detail_includes_competitors(self, seeded):
        c, _, deal_id, _ = seeded
        data = c.get(f"/api/deals/{deal_id}", headers=ALICE).json()
        assert data["competitors"][0]["name"] == "Rival"
        assert data["competitors"][0]["score"] == "7"

    def test_other_owner_gets_404(self, seeded):
        c, _, deal_id, _ = seeded
        assert c.get(f"/api/deals/{deal_id}", headers=BOB).status_code == 404
        assert c.delete(f"/api/deals/{deal_id}", headers=BOB).status_code == 404

    def test_soft_delete(self, seeded, session):
        c, _, deal_id, _ = seeded
        assert c.delete(f"/api/deals/{deal_id}", headers=ALICE).json() == {"ok": True}
        assert c.get(f"/api/deals/{deal_id}", headers=ALICE).status_code == 404
        assert c.get("/api/deals", headers=ALICE).json() == []
        session.expire_all()
        assert session.get(Deal, deal_id).deleted is True


class TestUpload:
    def test_empty_upload_rejected(self, client):
        c, runner = client
        resp = c.post("/api/deals/upload", data={"free_text": "   "}, headers=ALICE)
        assert resp.status_code == 400
        assert runner.calls == []

    def test_non_pdf_rejected(self, client):
        c, runner = client
        resp = c.post(
            "/api/deals/upload",
            files={"files": ("notes.txt", b"hello", "text/plain")},
            headers=ALICE,
        )
        assert resp.status_code == 400
        assert "notes.txt" in resp.json()["detail"]
        assert runner.calls == []

    def test_size_limit(self, client):
        c, _ = client
        resp = c.post(
            "/api/deals/upload",
            files={"files": ("deck.pdf", b"%PDF" + b"0" * 2048, "application/pdf")},
            headers=ALICE,
        )
        assert resp.status_code == 413

    def test_file_at_size_limit_accepted(self, client):
        c, runner = client
        resp = c.post(
            "/api/deals/upload",
            files={"files": ("deck.pdf", b"%PDF" + b"0" * 1020, "application/pdf")},
            headers=ALICE,
        )
        assert resp.status_code == 201
        assert len(runner.blob_store.blobs[runner.calls[0]["files"][0].url]) == 1024

    def test_failed_blob_write_logs_orphans(self, client, session, caplog):
        c, runner = client
        runner.blob_store = FailingSecondPut()
        resp = c.post(
            "/api/deals/upload",
            files=[
                ("files", ("one.pdf", b"%PDF-1", "application/pdf")),
                ("files", ("two.pdf", b"%PDF-2", "application/pdf")),
            ],
            headers=ALICE,
        )
        assert resp.status_code == 502
        assert runner.calls == []
        assert session.execute(select(Deal)).scalars().all() == []
        assert "0-one.pdf" in caplog.text

    def test_pdf_and_text_start_run(self, client):
        c, runner = client
        resp = c.post(
            "/api/deals/upload",
            files={"files": ("deck.pdf", b"%PDF-1.4 deck", "application/pdf")},
            data={"free_text": "Seed round"},
            headers=ALICE,
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["run_id"] == "run-1"
        assert body["deal"]["company_name"] == "Processing…"
        assert body["deal"]["uploaded_text"] == "Seed round"
        assert body["deal"]["files"][0]["original_name"] == "deck.pdf"

        call = runner.calls[0]
        assert call["deal_id"] == body["deal"]["id"]
        assert call["owner_id"] == "alice"
        assert call["free_text"] == "Seed round"
        assert [f.original_filename for f in call["files"]] == ["deck.pdf"]
        assert runner.blob_store.blobs[call["files"][0].url] == b"%PDF-1.4 deck"

    def test_free_text_only(self, client):
        c, runner = client
        resp = c.post("/api/deals/upload", data={"free_text": "Robots for farms"}, headers=ALICE)
        assert resp.status_code == 201
        assert runner.calls[0]["files"] == []


class TestAnalyze:
    def test_rerun_uses_stored_text(self, seeded):
        c, runner, deal_id, _ = seeded
        resp = c.post(f"/api/deals/{deal_id}/analyze", headers=ALICE)
        assert resp.status_code == 202
        assert runner.calls[0]["free_text"] == "Robots"

    def test_active_run_conflict(self, seeded):
        c, runner, deal_id, run_id = seeded
        runner.error = RunInProgressError(deal_id, run_id)
        assert c.post(f"/api/deals/{deal_id}/analyze", headers=ALICE).status_code == 409

    def test_list_runs(self, seeded):
        c, _, deal_id, run_id = seeded
        runs = c.get(f"/api/deals/{deal_id}/runs", headers=ALICE).json()
        assert [r["id"] for r in runs] == [run_id]
        assert c.get(f"/api/deals/{deal_id}/runs", headers=BOB).status_code == 404


class TestRunEndpoints:
    def test_owner_reads_run(self, seeded):
        c, _, _, run_id = seeded
        data = c.get(f"/api/runs/{run_id}", headers=ALICE).json()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["output"] == {"company_name": "Acme"}

    def test_no_credentials(self, seeded):
        c, _, _, run_id = seeded
        assert c.get(f"/api/runs/{run_id}").status_code == 401

    def test_other_user_404(self, seeded):
        c, _, _, run_id = seeded
        assert c.get(f"/api/runs/{run_id}", headers=BOB).status_code == 404

    def test_token_grants_read(self, seeded):
        c, _, _, run_id = seeded
        assert c.post(f"/api/runs/{run_id}/token", headers=BOB).status_code == 404

        token = c.post(f"/api/runs/{run_id}/token", headers=ALICE).json()["token"]
        assert c.get(f"/api/runs/{run_id}", params={"token": token}).status_code == 200
        assert c.get(f"/api/runs/{run_id}", params={"token": "wrong"}).status_code == 404

    def test_stream_finished_run(self, seeded):
        c, _, _, run_id = seeded
        resp = c.get(f"/api/runs/{run_id}/stream", headers=ALICE)
        assert resp.status_code == 200
        events = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
        assert len(events) == 1
        assert events[0]["run"]["status"] == "completed"


class TestMisc:
    def test_categories(self, client):
        c, _ = client
        slugs = [cat["slug"] for cat in c.get("/api/categories").json()]
        assert slugs == ["yc-companies", "open-source", "early-stage-vc", "well-funded-vc", "incumbents"]

    def test_webhook_without_person(self, client):
        c, _ = client
        resp = c.post("/api/webhook/register-new-person", json={"event": "created"})
        assert resp.status_code == 200
        assert resp.json()["enrichment_scheduled"] is False
        assert resp.json()["body_keys"] == ["event"]

    def test_webhook_rejects_non_object(self, client):
        c, _ = client
        assert c.post("/api/webhook/register-new-person", json=[1, 2]).status_code == 400

    def test_enrich_person_unconfigured(self, client):
        c, _ = client
        resp = c.post("/api/people/12/enrich", headers=ALICE)
        assert resp.status_code == 502
        assert "LEADSPICKER_API_KEY" in resp.json()["detail"]

    def test_people_empty(self, client):
        c, _ = client
        assert c.get("/api/people", headers=ALICE).json() == []

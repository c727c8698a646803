"""Shared fixtures: in-memory database, fake blob store and a scripted LLM."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from credo.categories import ALL_CATEGORIES, CategoryConfig
from credo.db import create_sqlite_engine, make_session_scope
from credo.models import Base, Deal
from credo.schemas import CompetitorEvaluation, CompetitorList, DealAnalysis
from credo.storage import BlobStore, BlobStoreError


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_sqlite_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def scope(session_factory):
    return make_session_scope(session_factory)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def deal(session) -> Deal:
    d = Deal(owner_id="user-1", company_name="Processing…", uploaded_text="")
    session.add(d)
    session.commit()
    return d


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------


class FakeBlobStore(BlobStore):
    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    async def put(self, data: bytes, filename: str, content_type: str) -> tuple[str, str]:
        key = f"{len(self.blobs)}-{filename}"
        url = f"memory://{key}"
        self.blobs[url] = data
        return key, url

    async def fetch(self, url: str) -> bytes:
        if url not in self.blobs:
            raise BlobStoreError(f"No blob at {url}")
        return self.blobs[url]


@pytest.fixture()
def blob_store():
    return FakeBlobStore()


# ---------------------------------------------------------------------------
# Scripted LLM
# ---------------------------------------------------------------------------


def _category_in(prompt: str) -> CategoryConfig | None:
    for category in ALL_CATEGORIES:
        if category.name in prompt:
            return category
    return None


class FakeLLM:
    """Answers ``parse`` by response schema and ``upload_file`` by filename.

    Any scripted value that is an exception instance is raised instead of returned.
    ``competitors`` maps a category slug to that branch's answer; unlisted
    categories find nothing.
    """

    def __init__(self, analysis=None, competitors=None, evaluation=None, uploads=None):
        self.analysis = analysis
        self.competitors = competitors or {}
        self.evaluation = evaluation
        self.uploads = uploads or {}
        self.parse = AsyncMock(side_effect=self._parse)
        self.upload_file = AsyncMock(side_effect=self._upload)

    async def _upload(self, filename, data, mime_type):
        result = self.uploads.get(filename, f"file-{filename}")
        if isinstance(result, BaseException):
            raise result
        return result

    async def _parse(self, system, user, schema, file_ids=(), web_search=False):
        if schema is DealAnalysis:
            result = self.analysis
        elif schema is CompetitorList:
            category = _category_in(user)
            result = self.competitors.get(category.slug.value if category else None, CompetitorList(competitors=[]))
        elif schema is CompetitorEvaluation:
            result = self.evaluation
        else:
            raise AssertionError(f"Unexpected schema {schema!r}")
        if isinstance(result, BaseException):
            raise result
        if result is None:
            raise AssertionError(f"No scripted answer for {schema.__name__}")
        return result

    def calls_for(self, schema) -> list:
        return [c for c in self.parse.await_args_list if c.args[2] is schema]

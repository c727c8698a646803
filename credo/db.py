from __future__ import annotations

import threading
from collections.abc import Callable
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from credo.config import get_settings
from credo.models import Base

SessionScope = Callable[[], AbstractContextManager[Session]]

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def create_sqlite_engine(url: str, **kwargs) -> Engine:
    """Create an engine with foreign keys enforced (SQLite ignores them by default)."""
    engine = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)

    @event.listens_for(engine, "connect")
    def _enable_fks(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else get_settings().db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_sqlite_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


def make_session_scope(factory: Callable[[], Session]) -> SessionScope:
    """Build a ``session_scope``-style context manager around any session factory.

    Pipeline steps take one of these so tests can hand them an in-memory database.
    """
    @contextmanager
    def scope() -> Generator[Session, None, None]:
        session = factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


# Process-wide scope: ``with session_scope() as session: ...``
session_scope: SessionScope = make_session_scope(get_session)

from __future__ import annotations

import threading
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from openproposal.models import Base

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def _connect_args(url: str) -> dict:
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


def init_db(database_url: str | None = None) -> Engine:
    """Create (or replace) the process-wide engine and ensure all tables exist."""
    global _engine, _SessionLocal
    if database_url is None:
        from openproposal.config import get_settings
        database_url = get_settings().database_url
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            Path(database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(database_url, connect_args=_connect_args(database_url))
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        return _engine


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def session_generator() -> Generator[Session, None, None]:
    """One session per request for FastAPI ``Depends()``; uncommitted work is discarded on error."""
    with get_session() as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise

"""Shared fixtures: in-memory database, seeded users, tokens, and an API client."""
from __future__ import annotations

import os
from datetime import datetime
from unittest.mock import MagicMock

os.environ.setdefault("OPENPROPOSAL_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENPROPOSAL_RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from openproposal.models import Base
from openproposal.roles import Role
from openproposal.tests.factories import AFTER_DEADLINE, make_user


@pytest.fixture()
def engine():
    """Uses StaticPool so every session shares the same in-memory database."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(SessionLocal):
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def people(session):
    """One user per role of interest, keyed by short name."""
    return {
        "admin": make_user(session, "po@grants.org", Role.PROGRAM_OFFICER),
        "pi": make_user(session, "pi@uni.edu", Role.PRINCIPAL_INVESTIGATOR),
        "copi": make_user(session, "copi@uni.edu", Role.CO_PRINCIPAL_INVESTIGATOR),
        "reviewer": make_user(session, "rev@uni.edu", Role.REVIEWER),
        "reviewer2": make_user(session, "rev2@uni.edu", Role.REVIEWER),
        "chair": make_user(session, "chair@uni.edu", Role.AREA_CHAIR),
        "outsider": make_user(session, "other@uni.edu", Role.PRINCIPAL_INVESTIGATOR),
    }


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock():
    return Clock(AFTER_DEADLINE)


@pytest.fixture()
def notifier():
    return MagicMock()


@pytest.fixture()
def client(SessionLocal, clock, notifier):
    """FastAPI TestClient bound to the in-memory database, a fixed clock and a mock notifier."""
    from openproposal import notifications
    from openproposal.app import app, db_session, get_now

    def override_db_session():
        sess = SessionLocal()
        try:
            yield sess
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_now] = clock
    app.dependency_overrides[notifications.get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()

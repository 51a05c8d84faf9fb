"""
Pytest fixtures for the changeflow core test suite.

Provides:
- In-memory SQLite session shared by the engine, the scheduler and the API
- FixedClock pinned to a known instant
- User and change factories
- FastAPI TestClient wired to the test session and clock
"""
import os

# Must be set before changeflow_core.config is first imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTOMATION_SECRET"] = "test-automation-secret"

from datetime import datetime
from typing import Generator
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from changeflow_core import crud, lifecycle
from changeflow_core.api.main import app
from changeflow_core.api.routers.changes import get_clock
from changeflow_core.clock import FixedClock
from changeflow_core.database import get_db
from changeflow_core.models import Base, ApprovalDecision, MemberRole, User
from changeflow_core.principals import Actor, SYSTEM_ACTOR

AUTOMATION_TOKEN = "test-automation-secret"
T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine) -> Generator[Session, None, None]:
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def make_user(db, org_id):
    def _make_user(role: MemberRole = MemberRole.MEMBER, organization_id=None, name=None) -> User:
        user_id = uuid4()
        user = User(
            id=user_id,
            organization_id=organization_id or org_id,
            email=f"{user_id.hex[:8]}@example.com",
            full_name=name or f"{role.value.capitalize()} {user_id.hex[:4]}",
            role=role,
        )
        db.add(user)
        db.commit()
        return user
    return _make_user


@pytest.fixture
def requester(make_user) -> User:
    return make_user(MemberRole.MEMBER, name="Rita Requester")


@pytest.fixture
def assignee(make_user) -> User:
    return make_user(MemberRole.MEMBER, name="Alex Assignee")


@pytest.fixture
def manager(make_user) -> User:
    return make_user(MemberRole.MANAGER, name="Morgan Manager")


@pytest.fixture
def make_change(db, clock, requester, assignee):
    def _make_change(scheduled_for=None, estimated_end_time=None, assigned=True, title="Rotate TLS certificates"):
        change = crud.create_change(
            db,
            organization_id=requester.organization_id,
            title=title,
            requested_by=requester.id,
            description="Replace expiring certificates on the edge proxies",
            assigned_to=assignee.id if assigned else None,
            scheduled_for=scheduled_for,
            estimated_end_time=estimated_end_time,
            now=clock.now(),
        )
        db.commit()
        return change
    return _make_change


@pytest.fixture
def pending_change(db, clock, make_change, requester):
    """Factory: a change already submitted for approval."""
    def _pending_change(**kwargs):
        change = make_change(**kwargs)
        lifecycle.request_approval(db, change.id, Actor.from_user(requester), clock=clock)
        return change
    return _pending_change


@pytest.fixture
def approved_change(db, clock, pending_change, manager):
    """Factory: a change approved by a manager (automations scheduled)."""
    def _approved_change(**kwargs):
        change = pending_change(**kwargs)
        lifecycle.decide_approval(db, change.id, Actor.from_user(manager), ApprovalDecision.APPROVE, clock=clock)
        return change
    return _approved_change


@pytest.fixture
def in_progress_change(db, clock, approved_change):
    """Factory: an approved change started by the system principal."""
    def _in_progress_change(**kwargs):
        change = approved_change(**kwargs)
        lifecycle.auto_start(db, change.id, SYSTEM_ACTOR, clock=clock)
        return change
    return _in_progress_change


@pytest.fixture
def client(db, clock) -> Generator[TestClient, None, None]:
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"X-User-Id": str(user.id)}
    return _headers


@pytest.fixture
def automation_headers() -> dict:
    return {"Authorization": f"Bearer {AUTOMATION_TOKEN}"}

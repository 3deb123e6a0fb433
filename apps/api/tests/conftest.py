"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, tables created fresh for each test
- Organization, user, contact and flow factories
- HTTPX AsyncClient bound to the app with the test session injected
"""
import os
from typing import AsyncGenerator, Callable, Generator

# Configure before the app (and its settings) are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["RESEND_API_KEY"] = ""
os.environ["BOOTSTRAP_DEFAULTS"] = "false"

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from app.main import app
from app.core.deps import INTERNAL_SECRET_HEADER, get_db
from app.db.base import Base
from app.db.enums import StepExecutionStatus
from app.db.models import Contact, Flow, Organization, StepExecution, User
from app.db.session import SessionLocal, engine
from app.services import flow_service


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Session on a freshly created schema.

    App code commits freely; the schema is dropped after the test.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    org = Organization(name="Test Organization", slug="test-org")
    db.add(org)
    db.commit()
    return org


@pytest.fixture(scope="function")
def test_user(db: Session, test_org: Organization) -> User:
    """Coordinator who owns the test flows."""
    user = User(
        email="coordinator@test.com",
        name="Test Coordinator",
        active_organization_id=test_org.id,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def test_contact(db: Session, test_org: Organization) -> Contact:
    contact = Contact(
        id="contact-123",
        organization_id=test_org.id,
        email="client@example.com",
        name="Casey Client",
    )
    db.add(contact)
    db.commit()
    return contact


@pytest.fixture(scope="function")
def make_flow(db: Session, test_org: Organization, test_user: User) -> Callable[..., Flow]:
    """Factory: store a flow owned by test_org/test_user (or unowned)."""

    def _make(definition: dict, name: str = "Client Onboarding", owned: bool = True) -> Flow:
        flow = flow_service.create_flow(
            db,
            name=name,
            definition=definition,
            org_id=test_org.id if owned else None,
            created_by_id=test_user.id if owned else None,
        )
        db.commit()
        return flow

    return _make


@pytest.fixture(scope="function")
def step_rows(db: Session) -> Callable[[str], dict[str, StepExecution]]:
    """Factory: a run's step executions keyed by step id."""

    def _rows(run_id: str) -> dict[str, StepExecution]:
        db.expire_all()
        rows = db.query(StepExecution).filter(StepExecution.flow_run_id == run_id).all()
        return {row.step_id: row for row in rows}

    return _rows


@pytest.fixture(scope="function")
def active_row(step_rows) -> Callable[[str], StepExecution]:
    """Factory: the single IN_PROGRESS step of a run."""

    def _active(run_id: str) -> StepExecution:
        active = [
            row for row in step_rows(run_id).values()
            if row.status == StepExecutionStatus.IN_PROGRESS.value
        ]
        assert len(active) == 1, [row.step_id for row in active]
        return active[0]

    return _active


# =============================================================================
# HTTP Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client (webhook trigger and public task routes)."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def coordinator_client(client: AsyncClient) -> AsyncClient:
    """Client carrying the internal secret for /api/runs routes."""
    client.headers[INTERNAL_SECRET_HEADER] = "test-internal-secret"
    return client

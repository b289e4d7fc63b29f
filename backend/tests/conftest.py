"""
Test Configuration — Fixtures for async DB, test client, and seed data.

Each test gets a fresh in-memory SQLite database. SQLite savepoints need the
driver's own transaction handling disabled so SQLAlchemy can emit BEGIN and
SAVEPOINT itself (alert isolation and the assignment ledger rely on them).
"""

import uuid
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_db
from api.main import app
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _enable_sqlite_savepoints(engine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
async def test_engine():
    """Create a test database engine and build all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(test_db):
    """Create an async test client with the DB dependency overridden."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """Seed an organization with a three-step funnel."""
    from db.models import Funnel, FunnelStep, Organization

    organization = Organization(organization_id=ORG_ID, name="Test Coaching Co", status="active")
    test_db.add(organization)
    await test_db.flush()

    funnel = Funnel(organization_id=ORG_ID, name="Webinar Funnel")
    test_db.add(funnel)
    await test_db.flush()

    steps = []
    for position, (name, step_type) in enumerate(
        [("Landing", "PAGE_VIEW"), ("Opt-in", "OPT_IN"), ("Checkout", "PURCHASE")], start=1
    ):
        step = FunnelStep(funnel_id=funnel.funnel_id, name=name, step_type=step_type, position=position)
        test_db.add(step)
        steps.append(step)
    await test_db.flush()

    await test_db.commit()

    return {
        "organization_id": ORG_ID,
        "organization": organization,
        "funnel": funnel,
        "steps": steps,
    }


@pytest.fixture
def make_event(test_db):
    """Add an event row; returns the model (flushed, not committed)."""
    from db.models import Event

    async def _make(event_type: str, timestamp: datetime, **fields) -> Event:
        row = Event(
            organization_id=fields.pop("organization_id", ORG_ID),
            event_type=event_type,
            timestamp=timestamp,
            **fields,
        )
        test_db.add(row)
        await test_db.flush()
        return row

    return _make


@pytest.fixture
def make_payment(test_db):
    from db.models import Payment

    async def _make(amount_cents: int, created_at: datetime, **fields) -> Payment:
        row = Payment(
            organization_id=fields.pop("organization_id", ORG_ID),
            amount_cents=amount_cents,
            created_at=created_at,
            **fields,
        )
        test_db.add(row)
        await test_db.flush()
        return row

    return _make

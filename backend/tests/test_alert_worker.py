import asyncio
import json
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alerts.monitor import AlertCheckResult, AlertOutcome, AlertOutcomeStatus
from alerts.publisher import alert_channel, publish_fired_alerts
from db.session import Base
from workers.alerts import run_alert_check

ORG_ID = "00000000-0000-0000-0000-000000000201"


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.published: list[tuple[str, dict]] = []
        self.closed = False
        self.fail = fail

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        self.closed = True


def _patch_settings(monkeypatch, db_url: str = "sqlite+aiosqlite://"):
    settings = SimpleNamespace(database_url=db_url, redis_url="redis://localhost:6379/0")
    monkeypatch.setattr("core.config.get_settings", lambda: settings)
    monkeypatch.setattr("alerts.publisher.get_settings", lambda: settings)


def _seed_database(db_url: str) -> dict:
    from db.models import Alert, Event, Organization

    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    ids = {}

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add(Organization(organization_id=ORG_ID, name="Worker Org", status="active"))
            stale = Alert(organization_id=ORG_ID, alert_type="NO_PURCHASES", threshold_hours=24)
            fresh = Alert(organization_id=ORG_ID, alert_type="NO_PAGE_VIEWS", threshold_hours=24)
            db.add_all([stale, fresh])
            db.add(Event(organization_id=ORG_ID, event_type="PAGE_VIEW", timestamp=datetime.utcnow() - timedelta(hours=1)))
            await db.commit()
            ids["stale"] = str(stale.alert_id)
            ids["fresh"] = str(fresh.alert_id)
        await engine.dispose()

    asyncio.run(_seed())
    return ids


def test_run_alert_check_fires_and_publishes(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}"
    ids = _seed_database(db_url)
    _patch_settings(monkeypatch, db_url)
    fake = FakeRedis()
    monkeypatch.setattr("alerts.publisher.aioredis.from_url", lambda url: fake)

    result = run_alert_check.run(organization_id=ORG_ID)

    assert result["status"] == "success"
    assert result["checked"] == 2
    assert result["fired_alert_ids"] == [ids["stale"]]
    assert result["updated_alert_ids"] == [ids["fresh"]]
    assert result["subscribers_notified"] == 1
    assert fake.published[0][0] == f"alerts:{ORG_ID}"
    assert fake.published[0][1]["type"] == "alert_fired"
    assert fake.published[0][1]["payload"]["alert_id"] == ids["stale"]
    assert fake.closed


def test_run_alert_check_survives_publish_failure(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}"
    _seed_database(db_url)
    _patch_settings(monkeypatch, db_url)
    monkeypatch.setattr("alerts.publisher.aioredis.from_url", lambda url: FakeRedis(fail=True))

    result = run_alert_check.run(organization_id=ORG_ID)

    assert result["status"] == "success"
    assert result["fired"] == 1
    assert result["subscribers_notified"] == 0
    assert "redis down" in result["publish_error"]


def test_run_alert_check_reports_failure(monkeypatch):
    _patch_settings(monkeypatch)

    result = run_alert_check.run(organization_id="not-a-uuid")

    assert result["status"] == "failed"
    assert result["organization_id"] == "not-a-uuid"


def test_publish_skips_when_nothing_fired(monkeypatch):
    def _unexpected(url):
        raise AssertionError("redis should not be contacted")

    monkeypatch.setattr("alerts.publisher.aioredis.from_url", _unexpected)
    check = AlertCheckResult(
        organization_id=uuid.uuid4(),
        checked_at=datetime(2026, 3, 10, 12),
        outcomes=[AlertOutcome(alert_id=uuid.uuid4(), status=AlertOutcomeStatus.UPDATED)],
    )
    assert asyncio.run(publish_fired_alerts(check)) == 0


def test_alert_channel():
    assert alert_channel("abc") == "alerts:abc"

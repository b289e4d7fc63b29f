"""
Alert Monitor — staleness detection for "expected events stopped" alerts.

Per active alert, on every check:
  cutoff = now - threshold_hours
  latest matching event with timestamp >= cutoff?
    yes → last_event_at = event.timestamp
    no  → last_fired_at = now, alert reported as fired (last_event_at kept)

Firing is level-triggered: a stale alert fires again on every check until a
qualifying event arrives. De-duplicating notifications is the caller's job.

Each alert runs inside its own SAVEPOINT; a failure rolls back that alert
only and the remaining alerts are still evaluated.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.event_store import EventFilter, EventStore
from db.models import Alert

logger = structlog.get_logger()

# Alert type → watched event types (None = any event)
ALERT_EVENT_MAP: dict[str, tuple[str, ...] | None] = {
    "NO_EVENTS": None,
    "NO_OPT_INS": ("OPT_IN", "FORM_SUBMIT"),
    "NO_PURCHASES": ("PURCHASE",),
    "NO_BOOKINGS": ("BOOKING", "BOOKING_CONFIRMED"),
    "NO_PAGE_VIEWS": ("PAGE_VIEW",),
}


class AlertOutcomeStatus(str, Enum):
    UPDATED = "updated"  # qualifying event found, last_event_at refreshed
    FIRED = "fired"
    FAILED = "failed"


@dataclass
class AlertOutcome:
    alert_id: uuid.UUID
    status: AlertOutcomeStatus
    last_event_at: datetime | None = None
    error: str | None = None


@dataclass
class AlertCheckResult:
    organization_id: uuid.UUID
    checked_at: datetime
    outcomes: list[AlertOutcome] = field(default_factory=list)

    def _ids(self, status: AlertOutcomeStatus) -> list[str]:
        return [str(o.alert_id) for o in self.outcomes if o.status is status]

    @property
    def fired_alert_ids(self) -> list[str]:
        return self._ids(AlertOutcomeStatus.FIRED)

    @property
    def updated_alert_ids(self) -> list[str]:
        return self._ids(AlertOutcomeStatus.UPDATED)

    @property
    def failed(self) -> dict[str, str]:
        return {str(o.alert_id): o.error or "" for o in self.outcomes if o.status is AlertOutcomeStatus.FAILED}

    def as_dict(self) -> dict:
        return {
            "organization_id": str(self.organization_id),
            "checked_at": self.checked_at.isoformat(),
            "checked": len(self.outcomes),
            "fired": len(self.fired_alert_ids),
            "fired_alert_ids": self.fired_alert_ids,
            "updated_alert_ids": self.updated_alert_ids,
            "failed": self.failed,
        }


def watched_event_types(alert_type: str) -> tuple[str, ...] | None:
    try:
        return ALERT_EVENT_MAP[alert_type]
    except KeyError:
        raise ValueError(f"Unknown alert type: {alert_type}") from None


class AlertMonitor:
    """Run staleness checks for the active alerts of an organization."""

    def __init__(self, db: AsyncSession, store: EventStore | None = None):
        self.db = db
        self.store = store or EventStore(db)

    async def check_organization(self, organization_id: uuid.UUID, now: datetime | None = None) -> AlertCheckResult:
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Alert)
            .where(Alert.organization_id == organization_id, Alert.is_active.is_(True))
            .order_by(Alert.created_at)
        )
        alerts = list(result.scalars().all())

        check = AlertCheckResult(organization_id=organization_id, checked_at=now)
        for alert in alerts:
            alert_id = alert.alert_id
            try:
                async with self.db.begin_nested():
                    outcome = await self.check_alert(alert, now)
            except Exception as exc:  # noqa: BLE001
                logger.error("alerts.check.alert_failed", alert_id=str(alert_id), error=str(exc), exc_info=True)
                outcome = AlertOutcome(alert_id=alert_id, status=AlertOutcomeStatus.FAILED, error=str(exc))
            check.outcomes.append(outcome)

        await self.db.commit()
        logger.info(
            "alerts.check.completed",
            organization_id=str(organization_id),
            checked=len(check.outcomes),
            fired=len(check.fired_alert_ids),
            failed=len(check.failed),
        )
        return check

    async def check_alert(self, alert: Alert, now: datetime) -> AlertOutcome:
        """Evaluate one alert and write its state fields. Does not commit."""
        cutoff = now - timedelta(hours=alert.threshold_hours)
        latest = await self.store.find_latest_event(
            EventFilter(
                organization_id=alert.organization_id,
                event_types=watched_event_types(alert.alert_type),
                funnel_id=alert.funnel_id,
                funnel_step_id=alert.funnel_step_id,
                start=cutoff,
            )
        )

        if latest is None:
            alert.last_fired_at = now
            await self.db.flush()
            logger.warning(
                "alerts.check.fired",
                alert_id=str(alert.alert_id),
                alert_type=alert.alert_type,
                threshold_hours=alert.threshold_hours,
            )
            return AlertOutcome(alert_id=alert.alert_id, status=AlertOutcomeStatus.FIRED, last_event_at=alert.last_event_at)

        alert.last_event_at = latest.timestamp
        await self.db.flush()
        return AlertOutcome(alert_id=alert.alert_id, status=AlertOutcomeStatus.UPDATED, last_event_at=latest.timestamp)

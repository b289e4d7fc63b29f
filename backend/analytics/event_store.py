"""
Event Store — read access to tracked events and payments.

The engine never owns the event schema; every query it needs goes through
this adapter so evaluation, alerting, and reporting share one filter shape.

Filter fields:
  - organization_id (required)
  - event_types: tuple of types, or None for "any event"
  - funnel_id / funnel_step_id / source / tag scopes
  - start (inclusive) / end (exclusive) timestamp bounds, naive UTC
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import TransientStorageError
from db.models import ContactTag, Event, Payment

logger = structlog.get_logger()

SUCCEEDED_PAYMENT_STATUS = "succeeded"


@dataclass(frozen=True)
class EventFilter:
    """Scope of an event or payment query."""

    organization_id: uuid.UUID
    event_types: tuple[str, ...] | None = None
    funnel_id: uuid.UUID | None = None
    funnel_step_id: uuid.UUID | None = None
    source: str | None = None
    tag: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    def with_types(self, *event_types: str) -> "EventFilter":
        return replace(self, event_types=tuple(event_types) or None)


class EventStore:
    """SQLAlchemy-backed event store reads."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Events ─────────────────────────────────────────────────────────────

    async def find_events(self, event_filter: EventFilter) -> list[Event]:
        stmt = (
            select(Event)
            .where(*self._event_conditions(event_filter))
            .order_by(Event.timestamp)
        )
        result = await self._execute(stmt, "find_events")
        return list(result.scalars().all())

    async def find_latest_event(self, event_filter: EventFilter) -> Event | None:
        stmt = (
            select(Event)
            .where(*self._event_conditions(event_filter))
            .order_by(Event.timestamp.desc())
            .limit(1)
        )
        result = await self._execute(stmt, "find_latest_event")
        return result.scalars().first()

    async def count_events(self, event_filter: EventFilter) -> int:
        stmt = select(func.count(Event.event_id)).where(*self._event_conditions(event_filter))
        result = await self._execute(stmt, "count_events")
        return int(result.scalar() or 0)

    async def count_distinct_contacts(self, event_filter: EventFilter) -> int:
        stmt = select(func.count(func.distinct(Event.contact_id))).where(
            *self._event_conditions(event_filter),
            Event.contact_id.is_not(None),
        )
        result = await self._execute(stmt, "count_distinct_contacts")
        return int(result.scalar() or 0)

    # ── Payments ───────────────────────────────────────────────────────────

    async def find_payments(self, event_filter: EventFilter, product_name: str | None = None) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(*self._payment_conditions(event_filter, product_name))
            .order_by(Payment.created_at)
        )
        result = await self._execute(stmt, "find_payments")
        return list(result.scalars().all())

    async def sum_revenue_cents(self, event_filter: EventFilter, product_name: str | None = None) -> int:
        stmt = select(func.coalesce(func.sum(Payment.amount_cents), 0)).where(
            *self._payment_conditions(event_filter, product_name)
        )
        result = await self._execute(stmt, "sum_revenue_cents")
        return int(result.scalar() or 0)

    # ── Internals ──────────────────────────────────────────────────────────

    async def _execute(self, stmt, operation: str):
        try:
            return await self.db.execute(stmt)
        except OperationalError as exc:
            logger.error("event_store.unavailable", operation=operation, error=str(exc))
            raise TransientStorageError(f"Event store unavailable during {operation}") from exc

    def _tagged_contacts(self, event_filter: EventFilter):
        return select(ContactTag.contact_id).where(
            ContactTag.organization_id == event_filter.organization_id,
            ContactTag.tag == event_filter.tag,
        )

    def _event_conditions(self, event_filter: EventFilter) -> list:
        conditions = [Event.organization_id == event_filter.organization_id]
        if event_filter.event_types:
            conditions.append(Event.event_type.in_(event_filter.event_types))
        if event_filter.funnel_id:
            conditions.append(Event.funnel_id == event_filter.funnel_id)
        if event_filter.funnel_step_id:
            conditions.append(Event.funnel_step_id == event_filter.funnel_step_id)
        if event_filter.source:
            conditions.append(Event.source == event_filter.source)
        if event_filter.tag:
            conditions.append(Event.contact_id.in_(self._tagged_contacts(event_filter)))
        if event_filter.start is not None:
            conditions.append(Event.timestamp >= event_filter.start)
        if event_filter.end is not None:
            conditions.append(Event.timestamp < event_filter.end)
        return conditions

    def _payment_conditions(self, event_filter: EventFilter, product_name: str | None) -> list:
        # Payments are not attributed to funnel steps; step scope does not apply.
        conditions = [
            Payment.organization_id == event_filter.organization_id,
            Payment.status == SUCCEEDED_PAYMENT_STATUS,
        ]
        if product_name:
            conditions.append(Payment.product_name == product_name)
        if event_filter.funnel_id:
            conditions.append(Payment.funnel_id == event_filter.funnel_id)
        if event_filter.source:
            conditions.append(Payment.source == event_filter.source)
        if event_filter.tag:
            conditions.append(Payment.contact_id.in_(self._tagged_contacts(event_filter)))
        if event_filter.start is not None:
            conditions.append(Payment.created_at >= event_filter.start)
        if event_filter.end is not None:
            conditions.append(Payment.created_at < event_filter.end)
        return conditions

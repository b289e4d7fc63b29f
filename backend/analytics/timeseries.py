"""
Time-Series Assembler — chart rows and funnel breakdowns.

Chart output has one row per local day of the requested range, zero-filled,
so gaps render as zeros rather than missing points.

Funnel breakdowns:
  - step counts in step order with conversion (count / first step count)
    and step-over-step drop-off; zero denominators resolve to 0.0
  - totals by traffic source (missing source → "direct")
"""

import uuid
from collections.abc import Iterable
from dataclasses import asdict, dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from analytics.buckets import bucket_daily
from analytics.date_range import DateRange
from analytics.definitions import MetricDefinition
from analytics.evaluator import MetricEvaluator, MetricFilters, safe_divide
from analytics.event_store import EventFilter, EventStore
from core.errors import NotFoundError
from db.models import Funnel, FunnelStep

DIRECT_SOURCE = "direct"
LEAD_EVENT_TYPES = ("OPT_IN", "FORM_SUBMIT")
VISIT_EVENT_TYPE = "PAGE_VIEW"
PURCHASE_EVENT_TYPE = "PURCHASE"


@dataclass
class StepCount:
    funnel_step_id: uuid.UUID
    name: str
    step_type: str
    position: int
    count: int
    conversion_rate: float  # count / first step count
    dropoff_rate: float  # 1 - count / previous step count


@dataclass
class SourceRow:
    source: str
    visitors: int
    leads: int
    purchases: int
    revenue: float
    revenue_per_lead: float

    def as_dict(self) -> dict:
        return asdict(self)


async def load_funnel(db: AsyncSession, organization_id: uuid.UUID, funnel_id: uuid.UUID) -> Funnel:
    result = await db.execute(
        select(Funnel)
        .options(selectinload(Funnel.steps))
        .where(Funnel.funnel_id == funnel_id, Funnel.organization_id == organization_id)
    )
    funnel = result.scalar_one_or_none()
    if funnel is None:
        raise NotFoundError(f"Funnel {funnel_id} not found")
    return funnel


# ──────────────────────────────────────────────────────────────────────────
# Metric charts
# ──────────────────────────────────────────────────────────────────────────


async def metric_chart(
    evaluator: MetricEvaluator,
    metrics: Iterable[MetricDefinition],
    date_range: DateRange,
    filters: MetricFilters | None = None,
) -> list[dict]:
    """
    One row per day: {"date": "YYYY-MM-DD", <metric id>: value, ...}.

    Columns are keyed by metric id since metric names are not unique.
    """
    rows = [{"date": day.isoformat()} for day in date_range.days()]
    for metric in metrics:
        points = await evaluator.evaluate_series(metric, date_range, filters)
        for row, point in zip(rows, points):
            row[str(metric.metric_id)] = point.value
    return rows


async def funnel_chart(
    store: EventStore,
    organization_id: uuid.UUID,
    funnel_id: uuid.UUID,
    date_range: DateRange,
    tz_name: str = "UTC",
) -> list[dict]:
    """Daily event count and revenue for one funnel."""
    start, end = date_range.utc_bounds(tz_name)
    scope = EventFilter(organization_id=organization_id, funnel_id=funnel_id, start=start, end=end)

    events = await store.find_events(scope)
    payments = await store.find_payments(scope)

    event_counts = bucket_daily(((e.timestamp, 1) for e in events), date_range, tz_name)
    revenue_cents = bucket_daily(((p.created_at, p.amount_cents) for p in payments), date_range, tz_name)

    return [
        {"date": day.isoformat(), "events": int(count), "revenue": cents / 100}
        for (day, count), (_, cents) in zip(event_counts, revenue_cents)
    ]


# ──────────────────────────────────────────────────────────────────────────
# Funnel breakdowns
# ──────────────────────────────────────────────────────────────────────────


async def funnel_step_counts(
    store: EventStore,
    organization_id: uuid.UUID,
    steps: Iterable[FunnelStep],
    date_range: DateRange,
    tz_name: str = "UTC",
) -> list[StepCount]:
    start, end = date_range.utc_bounds(tz_name)
    ordered = sorted(steps, key=lambda s: s.position)

    counts = []
    for step in ordered:
        step_filter = EventFilter(
            organization_id=organization_id,
            funnel_step_id=step.funnel_step_id,
            start=start,
            end=end,
        )
        counts.append(await store.count_events(step_filter))

    first = counts[0] if counts else 0
    rows = []
    for index, (step, count) in enumerate(zip(ordered, counts)):
        previous = counts[index - 1] if index > 0 else count
        rows.append(
            StepCount(
                funnel_step_id=step.funnel_step_id,
                name=step.name,
                step_type=step.step_type,
                position=step.position,
                count=count,
                conversion_rate=safe_divide(count, first),
                dropoff_rate=1 - safe_divide(count, previous) if previous else 0.0,
            )
        )
    return rows


async def source_breakdown(
    store: EventStore,
    organization_id: uuid.UUID,
    date_range: DateRange,
    funnel_id: uuid.UUID | None = None,
    tz_name: str = "UTC",
) -> list[SourceRow]:
    """Visitors, leads, purchases and revenue grouped by traffic source, highest revenue first."""
    start, end = date_range.utc_bounds(tz_name)
    scope = EventFilter(organization_id=organization_id, funnel_id=funnel_id, start=start, end=end)

    events = await store.find_events(scope)
    payments = await store.find_payments(scope)

    visitors: dict[str, set] = {}
    leads: dict[str, int] = {}
    purchases: dict[str, int] = {}
    revenue_cents: dict[str, int] = {}

    for event in events:
        source = event.source or DIRECT_SOURCE
        visitors.setdefault(source, set())
        if event.event_type == VISIT_EVENT_TYPE:
            # Anonymous page views count once each.
            visitors[source].add(event.contact_id or event.event_id)
        elif event.event_type in LEAD_EVENT_TYPES:
            leads[source] = leads.get(source, 0) + 1
        elif event.event_type == PURCHASE_EVENT_TYPE:
            purchases[source] = purchases.get(source, 0) + 1

    for payment in payments:
        source = payment.source or DIRECT_SOURCE
        visitors.setdefault(source, set())
        revenue_cents[source] = revenue_cents.get(source, 0) + payment.amount_cents

    rows = []
    for source, visitor_ids in visitors.items():
        revenue = revenue_cents.get(source, 0) / 100
        lead_count = leads.get(source, 0)
        rows.append(
            SourceRow(
                source=source,
                visitors=len(visitor_ids),
                leads=lead_count,
                purchases=purchases.get(source, 0),
                revenue=revenue,
                revenue_per_lead=safe_divide(revenue, lead_count),
            )
        )
    return sorted(rows, key=lambda row: (-row.revenue, row.source))

"""
Metric Evaluator — scalar values and daily series for metric definitions.

Dispatch:
  - EventMetric:      count rows, distinct contacts, or sum/avg of a payload value
  - RevenueMetric:    succeeded payment cents / 100
  - CalculatedMetric: numerator / denominator over the same range and filters

Calculated metrics recurse with the set of metric ids already on the current
descent path. Revisiting one of them is a reference cycle and raises
ConfigurationError; so does exceeding `max_depth`. A zero denominator yields
ZERO_DENOMINATOR_VALUE, never an exception.

Queries run sequentially: an AsyncSession does not allow concurrent
statements.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

import structlog

from analytics.buckets import bucket_daily
from analytics.date_range import DateRange
from analytics.definitions import (
    Aggregation,
    CalculatedMetric,
    EventMetric,
    MetricDefinition,
    MetricGraph,
    RevenueMetric,
)
from analytics.event_store import EventFilter, EventStore
from core.errors import ConfigurationError

logger = structlog.get_logger()

ZERO_DENOMINATOR_VALUE = 0.0
DEFAULT_MAX_DEPTH = 8


@dataclass(frozen=True)
class MetricFilters:
    """Optional scopes applied to every event/payment query of an evaluation."""

    funnel_id: uuid.UUID | None = None
    funnel_step_id: uuid.UUID | None = None
    source: str | None = None
    tag: str | None = None


@dataclass(frozen=True)
class SeriesPoint:
    day: date
    value: float


def safe_divide(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return ZERO_DENOMINATOR_VALUE
    return numerator / denominator


def _payload_value(payload, key: str | None):
    if not isinstance(payload, dict) or key is None:
        return None
    return payload.get(key)


def _numeric(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class MetricEvaluator:
    """Evaluate metrics of one organization against the event store."""

    def __init__(
        self,
        store: EventStore,
        graph: MetricGraph,
        organization_id: uuid.UUID,
        tz_name: str = "UTC",
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.store = store
        self.graph = graph
        self.organization_id = organization_id
        self.tz_name = tz_name
        self.max_depth = max_depth
        self.logger = logger.bind(organization_id=str(organization_id))

    # ── Public API ─────────────────────────────────────────────────────────

    async def evaluate(
        self,
        metric: MetricDefinition,
        date_range: DateRange,
        filters: MetricFilters | None = None,
    ) -> float:
        return await self._evaluate(metric, date_range, filters or MetricFilters(), frozenset())

    async def evaluate_series(
        self,
        metric: MetricDefinition,
        date_range: DateRange,
        filters: MetricFilters | None = None,
    ) -> list[SeriesPoint]:
        values = await self._evaluate_series(metric, date_range, filters or MetricFilters(), frozenset())
        return [SeriesPoint(day=day, value=value) for day, value in values]

    async def evaluate_many(
        self,
        metrics: Iterable[MetricDefinition],
        date_range: DateRange,
        filters: MetricFilters | None = None,
    ) -> dict[uuid.UUID, float]:
        return {metric.metric_id: await self.evaluate(metric, date_range, filters) for metric in metrics}

    # ── Recursion guard ────────────────────────────────────────────────────

    def _descend(self, metric: MetricDefinition, visited: frozenset) -> frozenset:
        if metric.metric_id in visited:
            self.logger.error("metrics.cycle_detected", metric_id=str(metric.metric_id))
            raise ConfigurationError(f"Metric {metric.metric_id} participates in a reference cycle")
        if len(visited) >= self.max_depth:
            raise ConfigurationError(
                f"Metric {metric.metric_id} exceeds the maximum calculated-metric depth of {self.max_depth}"
            )
        return visited | {metric.metric_id}

    def _operands(self, metric: CalculatedMetric) -> tuple[MetricDefinition, MetricDefinition]:
        return (
            self.graph.resolve_reference(metric.numerator_id, metric.metric_id),
            self.graph.resolve_reference(metric.denominator_id, metric.metric_id),
        )

    def _event_filter(self, date_range: DateRange, filters: MetricFilters, *event_types: str) -> EventFilter:
        start, end = date_range.utc_bounds(self.tz_name)
        return EventFilter(
            organization_id=self.organization_id,
            event_types=tuple(event_types) or None,
            funnel_id=filters.funnel_id,
            funnel_step_id=filters.funnel_step_id,
            source=filters.source,
            tag=filters.tag,
            start=start,
            end=end,
        )

    # ── Scalar evaluation ──────────────────────────────────────────────────

    async def _evaluate(
        self,
        metric: MetricDefinition,
        date_range: DateRange,
        filters: MetricFilters,
        visited: frozenset,
    ) -> float:
        visited = self._descend(metric, visited)

        if isinstance(metric, EventMetric):
            return await self._evaluate_event(metric, date_range, filters)
        if isinstance(metric, RevenueMetric):
            event_filter = self._event_filter(date_range, filters)
            cents = await self.store.sum_revenue_cents(event_filter, metric.product_filter)
            return cents / 100
        if isinstance(metric, CalculatedMetric):
            numerator_metric, denominator_metric = self._operands(metric)
            numerator = await self._evaluate(numerator_metric, date_range, filters, visited)
            denominator = await self._evaluate(denominator_metric, date_range, filters, visited)
            return safe_divide(numerator, denominator)
        raise ConfigurationError(f"Unsupported metric definition: {type(metric).__name__}")

    async def _evaluate_event(self, metric: EventMetric, date_range: DateRange, filters: MetricFilters) -> float:
        event_filter = self._event_filter(date_range, filters, metric.event_type)

        if metric.aggregation is Aggregation.TOTAL_EVENTS:
            return float(await self.store.count_events(event_filter))
        if metric.aggregation is Aggregation.UNIQUE_CONTACTS:
            return float(await self.store.count_distinct_contacts(event_filter))

        events = await self.store.find_events(event_filter)
        values = [
            v for v in (_numeric(_payload_value(e.payload, metric.value_property)) for e in events) if v is not None
        ]
        if not values:
            return 0.0
        total = sum(values)
        if metric.aggregation is Aggregation.EVENT_VALUE_SUM:
            return total
        return total / len(values)

    # ── Series evaluation ──────────────────────────────────────────────────

    async def _evaluate_series(
        self,
        metric: MetricDefinition,
        date_range: DateRange,
        filters: MetricFilters,
        visited: frozenset,
    ) -> list[tuple[date, float]]:
        visited = self._descend(metric, visited)

        if isinstance(metric, EventMetric):
            return await self._event_series(metric, date_range, filters)
        if isinstance(metric, RevenueMetric):
            event_filter = self._event_filter(date_range, filters)
            payments = await self.store.find_payments(event_filter, metric.product_filter)
            cents = bucket_daily(((p.created_at, p.amount_cents) for p in payments), date_range, self.tz_name)
            return [(day, value / 100) for day, value in cents]
        if isinstance(metric, CalculatedMetric):
            numerator_metric, denominator_metric = self._operands(metric)
            numerators = await self._evaluate_series(numerator_metric, date_range, filters, visited)
            denominators = await self._evaluate_series(denominator_metric, date_range, filters, visited)
            return [(day, safe_divide(num, den)) for (day, num), (_, den) in zip(numerators, denominators)]
        raise ConfigurationError(f"Unsupported metric definition: {type(metric).__name__}")

    async def _event_series(
        self, metric: EventMetric, date_range: DateRange, filters: MetricFilters
    ) -> list[tuple[date, float]]:
        events = await self.store.find_events(self._event_filter(date_range, filters, metric.event_type))

        if metric.aggregation is Aggregation.TOTAL_EVENTS:
            return bucket_daily(((e.timestamp, 1) for e in events), date_range, self.tz_name, how="sum")
        if metric.aggregation is Aggregation.UNIQUE_CONTACTS:
            return bucket_daily(((e.timestamp, e.contact_id) for e in events), date_range, self.tz_name, how="nunique")

        records = ((e.timestamp, _numeric(_payload_value(e.payload, metric.value_property))) for e in events)
        how = "sum" if metric.aggregation is Aggregation.EVENT_VALUE_SUM else "mean"
        return bucket_daily(records, date_range, self.tz_name, how=how)

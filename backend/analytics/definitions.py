"""
Metric Definition Graph — typed metric definitions and reference checks.

A stored metric row becomes exactly one of:
  - EventMetric:      count / distinct contacts / payload value of one event type
  - RevenueMetric:    sum of succeeded payments
  - CalculatedMetric: numerator metric / denominator metric

Calculated metrics form a directed graph. The graph rejects dangling
references and cycles, and answers "who depends on this metric" for the
delete guard.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConfigurationError, NotFoundError
from db.models import Metric


class MetricKind(str, Enum):
    EVENT = "EVENT"
    REVENUE = "REVENUE"
    CALCULATED = "CALCULATED"


class Aggregation(str, Enum):
    TOTAL_EVENTS = "TOTAL_EVENTS"
    UNIQUE_CONTACTS = "UNIQUE_CONTACTS"
    EVENT_VALUE_SUM = "EVENT_VALUE_SUM"
    EVENT_VALUE_AVG = "EVENT_VALUE_AVG"


class MetricFormat(str, Enum):
    NUMBER = "NUMBER"
    CURRENCY = "CURRENCY"
    PERCENTAGE = "PERCENTAGE"


@dataclass(frozen=True)
class EventMetric:
    metric_id: uuid.UUID
    name: str
    event_type: str
    aggregation: Aggregation = Aggregation.TOTAL_EVENTS
    value_property: str | None = None
    format: MetricFormat = MetricFormat.NUMBER


@dataclass(frozen=True)
class RevenueMetric:
    metric_id: uuid.UUID
    name: str
    product_filter: str | None = None
    format: MetricFormat = MetricFormat.CURRENCY


@dataclass(frozen=True)
class CalculatedMetric:
    metric_id: uuid.UUID
    name: str
    numerator_id: uuid.UUID
    denominator_id: uuid.UUID
    format: MetricFormat = MetricFormat.NUMBER


MetricDefinition = EventMetric | RevenueMetric | CalculatedMetric


def definition_from_row(row: Metric) -> MetricDefinition:
    """Convert a stored metric row into its typed definition."""
    fmt = MetricFormat(row.format or MetricFormat.NUMBER.value)
    kind = MetricKind(row.kind)

    if kind is MetricKind.EVENT:
        if not row.event_type:
            raise ConfigurationError(f"Event metric {row.metric_id} has no event type")
        aggregation = Aggregation(row.aggregation or Aggregation.TOTAL_EVENTS.value)
        if aggregation in (Aggregation.EVENT_VALUE_SUM, Aggregation.EVENT_VALUE_AVG) and not row.value_property:
            raise ConfigurationError(f"Event metric {row.metric_id} aggregates a value but has no value property")
        return EventMetric(
            metric_id=row.metric_id,
            name=row.name,
            event_type=row.event_type,
            aggregation=aggregation,
            value_property=row.value_property,
            format=fmt,
        )

    if kind is MetricKind.REVENUE:
        return RevenueMetric(metric_id=row.metric_id, name=row.name, product_filter=row.product_filter, format=fmt)

    if row.numerator_metric_id is None or row.denominator_metric_id is None:
        raise ConfigurationError(f"Calculated metric {row.metric_id} requires both numerator and denominator")
    return CalculatedMetric(
        metric_id=row.metric_id,
        name=row.name,
        numerator_id=row.numerator_metric_id,
        denominator_id=row.denominator_metric_id,
        format=fmt,
    )


def references_of(definition: MetricDefinition) -> tuple[uuid.UUID, ...]:
    if isinstance(definition, CalculatedMetric):
        return (definition.numerator_id, definition.denominator_id)
    return ()


class MetricGraph:
    """All metric definitions of one organization, indexed by id."""

    def __init__(self, definitions: Iterable[MetricDefinition]):
        self._definitions: dict[uuid.UUID, MetricDefinition] = {d.metric_id: d for d in definitions}

    @classmethod
    async def load(cls, db: AsyncSession, organization_id: uuid.UUID) -> "MetricGraph":
        result = await db.execute(select(Metric).where(Metric.organization_id == organization_id))
        return cls(definition_from_row(row) for row in result.scalars().all())

    def __contains__(self, metric_id: uuid.UUID) -> bool:
        return metric_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def definitions(self) -> list[MetricDefinition]:
        return list(self._definitions.values())

    def get(self, metric_id: uuid.UUID) -> MetricDefinition:
        try:
            return self._definitions[metric_id]
        except KeyError:
            raise NotFoundError(f"Metric {metric_id} not found") from None

    def resolve_reference(self, metric_id: uuid.UUID, referenced_by: uuid.UUID) -> MetricDefinition:
        definition = self._definitions.get(metric_id)
        if definition is None:
            raise ConfigurationError(f"Metric {referenced_by} references missing metric {metric_id}")
        return definition

    def with_definition(self, definition: MetricDefinition) -> "MetricGraph":
        """Graph including a new or edited definition (used to validate before saving)."""
        merged = dict(self._definitions)
        merged[definition.metric_id] = definition
        return MetricGraph(merged.values())

    def dependents(self, metric_id: uuid.UUID) -> list[uuid.UUID]:
        return [d.metric_id for d in self._definitions.values() if metric_id in references_of(d)]

    def validate(self, metric_id: uuid.UUID | None = None) -> None:
        """
        Raise ConfigurationError on a dangling reference or a reference cycle.

        Walks from `metric_id`, or from every metric when omitted.
        """
        roots = [metric_id] if metric_id is not None else list(self._definitions)
        done: set[uuid.UUID] = set()
        for root in roots:
            self._walk(self.get(root), (), done)

    def _walk(self, definition: MetricDefinition, path: tuple[uuid.UUID, ...], done: set[uuid.UUID]) -> None:
        if definition.metric_id in path:
            cycle = " -> ".join(str(m) for m in (*path, definition.metric_id))
            raise ConfigurationError(f"Metric reference cycle: {cycle}")
        if definition.metric_id in done:
            return
        path = (*path, definition.metric_id)
        for ref in references_of(definition):
            self._walk(self.resolve_reference(ref, definition.metric_id), path, done)
        done.add(definition.metric_id)

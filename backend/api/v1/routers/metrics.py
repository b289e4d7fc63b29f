"""
Metrics Router — metric definitions and evaluation.

Endpoints:
  GET    /api/v1/orgs/{org_id}/metrics                     — List definitions
  POST   /api/v1/orgs/{org_id}/metrics                     — Create (graph-validated)
  POST   /api/v1/orgs/{org_id}/metrics/seed                — Seed default metrics
  DELETE /api/v1/orgs/{org_id}/metrics/{metric_id}         — Delete unless referenced
  GET    /api/v1/orgs/{org_id}/metrics/{metric_id}/value   — Scalar value over a range
  GET    /api/v1/orgs/{org_id}/metrics/{metric_id}/series  — Daily series over a range
"""

import uuid
from datetime import datetime
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.date_range import parse_date_range
from analytics.definitions import MetricGraph, definition_from_row
from analytics.evaluator import MetricEvaluator, MetricFilters
from analytics.formatting import format_metric_value
from analytics.seed import seed_default_metrics
from api.deps import get_db, get_evaluator
from core.errors import ConfigurationError
from db.models import EVENT_TYPES, Metric

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/orgs/{org_id}/metrics", tags=["metrics"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class MetricResponse(BaseModel):
    metric_id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    description: str | None
    kind: str
    event_type: str | None
    aggregation: str
    value_property: str | None
    product_filter: str | None
    numerator_metric_id: uuid.UUID | None
    denominator_metric_id: uuid.UUID | None
    format: str
    created_at: datetime

    model_config = {"from_attributes": True}


class MetricCreate(BaseModel):
    name: str
    description: str | None = None
    kind: Literal["EVENT", "REVENUE", "CALCULATED"]
    event_type: str | None = None
    aggregation: Literal["TOTAL_EVENTS", "UNIQUE_CONTACTS", "EVENT_VALUE_SUM", "EVENT_VALUE_AVG"] = "TOTAL_EVENTS"
    value_property: str | None = None
    product_filter: str | None = None
    numerator_metric_id: uuid.UUID | None = None
    denominator_metric_id: uuid.UUID | None = None
    format: Literal["NUMBER", "CURRENCY", "PERCENTAGE"] = "NUMBER"


class MetricValueResponse(BaseModel):
    metric_id: uuid.UUID
    name: str
    value: float
    formatted: str
    format: str
    start: str
    end: str


class SeriesPointResponse(BaseModel):
    date: str
    value: float


class MetricSeriesResponse(BaseModel):
    metric_id: uuid.UUID
    name: str
    format: str
    points: list[SeriesPointResponse]


def metric_filters(
    funnel_id: uuid.UUID | None = None,
    funnel_step_id: uuid.UUID | None = None,
    source: str | None = None,
    tag: str | None = None,
) -> MetricFilters:
    return MetricFilters(funnel_id=funnel_id, funnel_step_id=funnel_step_id, source=source, tag=tag)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[MetricResponse])
async def list_metrics(org_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """List metric definitions, newest first."""
    result = await db.execute(
        select(Metric).where(Metric.organization_id == org_id).order_by(Metric.created_at.desc())
    )
    return result.scalars().all()


@router.post("", response_model=MetricResponse, status_code=status.HTTP_201_CREATED)
async def create_metric(org_id: uuid.UUID, body: MetricCreate, db: AsyncSession = Depends(get_db)):
    """Create a metric after checking its references resolve without a cycle."""
    if body.kind == "EVENT" and not body.event_type:
        raise HTTPException(status_code=422, detail="Event metrics require an event type")
    if body.kind == "EVENT" and body.event_type not in EVENT_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown event type '{body.event_type}'")
    if body.kind == "CALCULATED" and (not body.numerator_metric_id or not body.denominator_metric_id):
        raise HTTPException(status_code=422, detail="Calculated metrics require both numerator and denominator")

    metric = Metric(
        metric_id=uuid.uuid4(),
        organization_id=org_id,
        name=body.name,
        description=body.description,
        kind=body.kind,
        event_type=body.event_type if body.kind == "EVENT" else None,
        aggregation=body.aggregation,
        value_property=body.value_property if body.kind == "EVENT" else None,
        product_filter=body.product_filter if body.kind == "REVENUE" else None,
        numerator_metric_id=body.numerator_metric_id if body.kind == "CALCULATED" else None,
        denominator_metric_id=body.denominator_metric_id if body.kind == "CALCULATED" else None,
        format=body.format,
        created_at=datetime.utcnow(),
    )

    try:
        definition = definition_from_row(metric)
        graph = await MetricGraph.load(db, org_id)
        graph.with_definition(definition).validate(metric.metric_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    db.add(metric)
    await db.commit()
    await db.refresh(metric)
    logger.info("metrics.created", organization_id=str(org_id), metric_id=str(metric.metric_id), kind=metric.kind)
    return metric


@router.post("/seed")
async def seed_metrics(org_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    """Create the default metric set when the organization has no metrics yet."""
    created = await seed_default_metrics(db, org_id)
    return {"created": created}


@router.delete("/{metric_id}")
async def delete_metric(org_id: uuid.UUID, metric_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    """Delete a metric unless another metric uses it as numerator or denominator."""
    result = await db.execute(
        select(Metric).where(Metric.metric_id == metric_id, Metric.organization_id == org_id)
    )
    metric = result.scalar_one_or_none()
    if metric is None:
        raise HTTPException(status_code=404, detail="Metric not found")

    graph = await MetricGraph.load(db, org_id)
    dependents = graph.dependents(metric_id)
    if dependents:
        raise HTTPException(
            status_code=409,
            detail=(
                f"Cannot delete: {len(dependents)} other metric(s) depend on this metric "
                "as part of a calculation."
            ),
        )

    await db.delete(metric)
    await db.commit()
    logger.info("metrics.deleted", organization_id=str(org_id), metric_id=str(metric_id))
    return {"ok": True}


@router.get("/{metric_id}/value", response_model=MetricValueResponse)
async def get_metric_value(
    metric_id: uuid.UUID,
    range: str | None = Query(None, description="today, 7d, 30d, 90d, all, or YYYY-MM-DD_YYYY-MM-DD"),
    filters: MetricFilters = Depends(metric_filters),
    evaluator: MetricEvaluator = Depends(get_evaluator),
):
    """Evaluate a metric over a date range."""
    metric = evaluator.graph.get(metric_id)
    date_range = parse_date_range(range)
    value = await evaluator.evaluate(metric, date_range, filters)
    return MetricValueResponse(
        metric_id=metric.metric_id,
        name=metric.name,
        value=value,
        formatted=format_metric_value(value, metric.format),
        format=metric.format.value,
        start=date_range.start.isoformat(),
        end=date_range.end.isoformat(),
    )


@router.get("/{metric_id}/series", response_model=MetricSeriesResponse)
async def get_metric_series(
    metric_id: uuid.UUID,
    range: str | None = Query(None, description="today, 7d, 30d, 90d, all, or YYYY-MM-DD_YYYY-MM-DD"),
    filters: MetricFilters = Depends(metric_filters),
    evaluator: MetricEvaluator = Depends(get_evaluator),
):
    """Daily series for a metric, one zero-filled point per day."""
    metric = evaluator.graph.get(metric_id)
    points = await evaluator.evaluate_series(metric, parse_date_range(range), filters)
    return MetricSeriesResponse(
        metric_id=metric.metric_id,
        name=metric.name,
        format=metric.format.value,
        points=[SeriesPointResponse(date=p.day.isoformat(), value=p.value) for p in points],
    )

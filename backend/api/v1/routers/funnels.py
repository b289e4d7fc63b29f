"""
Funnels Router — funnel breakdowns, daily chart, and KPI values.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.date_range import parse_date_range
from analytics.evaluator import MetricEvaluator, MetricFilters
from analytics.event_store import EventStore
from analytics.formatting import format_metric_value
from analytics.timeseries import funnel_chart, funnel_step_counts, load_funnel, source_breakdown
from api.deps import get_app_settings, get_db, get_evaluator
from core.config import Settings

router = APIRouter(prefix="/api/v1/orgs/{org_id}/funnels", tags=["funnels"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StepCountResponse(BaseModel):
    funnel_step_id: uuid.UUID
    name: str
    step_type: str
    position: int
    count: int
    conversion_rate: float
    dropoff_rate: float


class SourceRowResponse(BaseModel):
    source: str
    visitors: int
    leads: int
    purchases: int
    revenue: float
    revenue_per_lead: float


class FunnelBreakdownResponse(BaseModel):
    funnel_id: uuid.UUID
    name: str
    start: str
    end: str
    steps: list[StepCountResponse]
    sources: list[SourceRowResponse]


class KpiValueResponse(BaseModel):
    metric_id: uuid.UUID
    name: str
    value: float
    formatted: str
    format: str


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/{funnel_id}/breakdown", response_model=FunnelBreakdownResponse)
async def get_funnel_breakdown(
    org_id: uuid.UUID,
    funnel_id: uuid.UUID,
    range: str | None = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Step counts with conversion ratios, plus totals by traffic source."""
    funnel = await load_funnel(db, org_id, funnel_id)
    date_range = parse_date_range(range)
    store = EventStore(db)
    tz_name = settings.report_timezone

    steps = await funnel_step_counts(store, org_id, funnel.steps, date_range, tz_name)
    sources = await source_breakdown(store, org_id, date_range, funnel_id=funnel_id, tz_name=tz_name)

    return FunnelBreakdownResponse(
        funnel_id=funnel.funnel_id,
        name=funnel.name,
        start=date_range.start.isoformat(),
        end=date_range.end.isoformat(),
        steps=[StepCountResponse(**vars(s)) for s in steps],
        sources=[SourceRowResponse(**s.as_dict()) for s in sources],
    )


@router.get("/{funnel_id}/chart")
async def get_funnel_chart(
    org_id: uuid.UUID,
    funnel_id: uuid.UUID,
    range: str | None = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> list[dict]:
    """Daily events and revenue for the funnel, zero-filled."""
    await load_funnel(db, org_id, funnel_id)
    return await funnel_chart(EventStore(db), org_id, funnel_id, parse_date_range(range), settings.report_timezone)


@router.get("/{funnel_id}/kpis", response_model=list[KpiValueResponse])
async def get_funnel_kpis(
    org_id: uuid.UUID,
    funnel_id: uuid.UUID,
    range: str | None = None,
    metric_ids: list[uuid.UUID] | None = Query(None),
    db: AsyncSession = Depends(get_db),
    evaluator: MetricEvaluator = Depends(get_evaluator),
):
    """Evaluate metrics scoped to this funnel (all organization metrics when none are given)."""
    await load_funnel(db, org_id, funnel_id)
    metrics = [evaluator.graph.get(m) for m in metric_ids] if metric_ids else evaluator.graph.definitions()
    date_range = parse_date_range(range)
    values = await evaluator.evaluate_many(metrics, date_range, MetricFilters(funnel_id=funnel_id))

    return [
        KpiValueResponse(
            metric_id=metric.metric_id,
            name=metric.name,
            value=values[metric.metric_id],
            formatted=format_metric_value(values[metric.metric_id], metric.format),
            format=metric.format.value,
        )
        for metric in metrics
    ]

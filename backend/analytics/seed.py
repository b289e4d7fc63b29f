"""
Default metric set for a new organization.

Base metrics are flushed first so the calculated metrics can reference
their generated ids.
"""

import uuid

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Metric

logger = structlog.get_logger()

BASE_METRICS = {
    "visitors": {
        "name": "Visitors",
        "description": "Unique visitors (distinct contacts with a page view)",
        "kind": "EVENT",
        "event_type": "PAGE_VIEW",
        "aggregation": "UNIQUE_CONTACTS",
        "format": "NUMBER",
    },
    "leads": {
        "name": "Leads",
        "description": "Opt-in events",
        "kind": "EVENT",
        "event_type": "OPT_IN",
        "aggregation": "TOTAL_EVENTS",
        "format": "NUMBER",
    },
    "purchases": {
        "name": "Purchases",
        "description": "Purchase events",
        "kind": "EVENT",
        "event_type": "PURCHASE",
        "aggregation": "TOTAL_EVENTS",
        "format": "NUMBER",
    },
    "revenue": {
        "name": "Revenue",
        "description": "Total revenue from succeeded payments",
        "kind": "REVENUE",
        "format": "CURRENCY",
    },
}

# name, description, numerator key, denominator key, format
CALCULATED_METRICS = [
    ("RPL", "Revenue Per Lead", "revenue", "leads", "CURRENCY"),
    ("Opt-in Rate", "Leads / Visitors", "leads", "visitors", "PERCENTAGE"),
]


async def seed_default_metrics(db: AsyncSession, organization_id: uuid.UUID) -> int:
    """Create the default metrics if the organization has none. Returns the number created."""
    existing = await db.execute(select(func.count(Metric.metric_id)).where(Metric.organization_id == organization_id))
    if (existing.scalar() or 0) > 0:
        return 0

    created: dict[str, Metric] = {}
    for key, fields in BASE_METRICS.items():
        metric = Metric(organization_id=organization_id, **fields)
        db.add(metric)
        created[key] = metric
    await db.flush()

    for name, description, numerator, denominator, fmt in CALCULATED_METRICS:
        db.add(
            Metric(
                organization_id=organization_id,
                name=name,
                description=description,
                kind="CALCULATED",
                numerator_metric_id=created[numerator].metric_id,
                denominator_metric_id=created[denominator].metric_id,
                format=fmt,
            )
        )

    await db.commit()
    total = len(BASE_METRICS) + len(CALCULATED_METRICS)
    logger.info("metrics.seeded", organization_id=str(organization_id), count=total)
    return total

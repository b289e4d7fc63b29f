"""
FunnelFuel API Dependencies

Dependency injection for DB sessions and engine components.
"""

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.definitions import MetricGraph
from analytics.evaluator import MetricEvaluator
from analytics.event_store import EventStore
from core.config import Settings, get_settings
from db.session import AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_app_settings() -> Settings:
    return get_settings()


async def get_evaluator(
    org_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> MetricEvaluator:
    """Metric evaluator over the organization's current metric definitions."""
    graph = await MetricGraph.load(db, org_id)
    return MetricEvaluator(
        EventStore(db),
        graph,
        organization_id=org_id,
        tz_name=settings.report_timezone,
        max_depth=settings.metric_max_depth,
    )

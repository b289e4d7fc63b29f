"""
Alert Check Fan-out — hourly beat entry point.

Finds every organization whose status is in `alert_check_statuses` and that
has at least one active alert, then queues one `run_alert_check` per
organization. Organizations without active alerts are never queued.
"""

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.alerts import run_alert_check
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def organizations_to_check(db: AsyncSession, statuses: list[str]) -> list[str]:
    from db.models import Alert, Organization

    result = await db.execute(
        select(Organization.organization_id)
        .join(Alert, Alert.organization_id == Organization.organization_id)
        .where(Organization.status.in_(statuses), Alert.is_active.is_(True))
        .group_by(Organization.organization_id, Organization.created_at)
        .order_by(Organization.created_at)
    )
    return [str(organization_id) for organization_id in result.scalars().all()]


@celery_app.task(name="workers.scheduler.dispatch_alert_checks", bind=True)
def dispatch_alert_checks(self):
    """Queue an alert check for each organization with active alerts."""
    from core.config import get_settings

    run_id = self.request.id or "manual"

    async def _collect() -> list[str]:
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                return await organizations_to_check(db, list(settings.alert_check_statuses))
        finally:
            await engine.dispose()

    try:
        organization_ids = asyncio.run(_collect())
    except Exception as exc:  # noqa: BLE001
        logger.error("alerts.dispatch_failed", error=str(exc), run_id=run_id, exc_info=True)
        return {"status": "failed", "error": str(exc), "run_id": run_id}

    for organization_id in organization_ids:
        run_alert_check.delay(organization_id=organization_id)

    logger.info("alerts.dispatch_complete", queued=len(organization_ids), run_id=run_id)
    return {
        "status": "success",
        "queued_organization_ids": organization_ids,
        "queued_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
    }

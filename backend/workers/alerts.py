"""
Alert Workers — scheduled staleness checks.

  run_alert_check: evaluate every active alert of one organization and
  publish fired alert ids for the notification layer.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(name="workers.alerts.run_alert_check", bind=True)
def run_alert_check(self, organization_id: str):
    """
    Hourly job: check alert staleness for one organization.
    Returns the check summary, or a failed summary if the run could not complete.
    """
    from alerts.monitor import AlertMonitor
    from alerts.publisher import publish_fired_alerts
    from core.config import get_settings

    run_id = self.request.id or "manual"
    logger.info("alerts.check.started", organization_id=organization_id, run_id=run_id)

    async def _check():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                check = await AlertMonitor(db).check_organization(uuid.UUID(organization_id))

            summary = check.as_dict()
            try:
                summary["subscribers_notified"] = await publish_fired_alerts(check)
            except Exception as exc:  # noqa: BLE001
                logger.error("alerts.publish_failed", organization_id=organization_id, error=str(exc))
                summary["subscribers_notified"] = 0
                summary["publish_error"] = str(exc)
            summary["status"] = "success"
            summary["run_id"] = run_id
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_check())
    except Exception as exc:  # noqa: BLE001
        logger.error("alerts.check.failed", organization_id=organization_id, error=str(exc), exc_info=True)
        return {"status": "failed", "organization_id": organization_id, "error": str(exc), "run_id": run_id}

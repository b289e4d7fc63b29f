"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "funnelfuel",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.alerts", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.alerts.*": {"queue": "alerts"},
        "workers.scheduler.*": {"queue": "alerts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Queues one run_alert_check per organization with active alerts.
    beat_schedule={
        "alert-check-hourly": {
            "task": "workers.scheduler.dispatch_alert_checks",
            "schedule": crontab(minute=settings.alert_check_minute),
            "options": {"queue": "alerts"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])

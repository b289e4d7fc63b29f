"""
Fired-alert publishing over Redis pub/sub.

The notification layer subscribes to `alerts:{organization_id}` and owns
delivery and de-duplication.
"""

import json

import redis.asyncio as aioredis

from alerts.monitor import AlertCheckResult
from core.config import get_settings


def alert_channel(organization_id) -> str:
    return f"alerts:{organization_id}"


async def publish_fired_alerts(check: AlertCheckResult) -> int:
    """
    Publish one message per fired alert.
    Returns number of subscribers notified.
    """
    if not check.fired_alert_ids:
        return 0

    settings = get_settings()
    redis = aioredis.from_url(settings.redis_url)
    try:
        total_subs = 0
        for alert_id in check.fired_alert_ids:
            payload = json.dumps(
                {
                    "type": "alert_fired",
                    "payload": {
                        "alert_id": alert_id,
                        "organization_id": str(check.organization_id),
                        "fired_at": check.checked_at.isoformat(),
                    },
                }
            )
            total_subs += await redis.publish(alert_channel(check.organization_id), payload)
        return total_subs
    finally:
        await redis.aclose()

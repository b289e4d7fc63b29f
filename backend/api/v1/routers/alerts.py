"""
Alerts Router — staleness alert listing and on-demand checks.
"""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.monitor import AlertMonitor
from api.deps import get_db
from db.models import Alert

router = APIRouter(prefix="/api/v1/orgs/{org_id}/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: uuid.UUID
    organization_id: uuid.UUID
    alert_type: str
    funnel_id: uuid.UUID | None
    funnel_step_id: uuid.UUID | None
    threshold_hours: int
    is_active: bool
    last_fired_at: datetime | None
    last_event_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class AlertCheckResponse(BaseModel):
    organization_id: uuid.UUID
    checked_at: datetime
    checked: int
    fired: int
    fired_alert_ids: list[str]
    updated_alert_ids: list[str]
    failed: dict[str, str]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[AlertResponse])
async def list_alerts(
    org_id: uuid.UUID,
    is_active: bool | None = None,
    db: AsyncSession = Depends(get_db),
):
    """List alerts with their current state fields."""
    query = select(Alert).where(Alert.organization_id == org_id)
    if is_active is not None:
        query = query.where(Alert.is_active.is_(is_active))
    result = await db.execute(query.order_by(Alert.created_at.desc()))
    return result.scalars().all()


@router.post("/check", response_model=AlertCheckResponse)
async def check_alerts(org_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Run the staleness check for every active alert of the organization."""
    check = await AlertMonitor(db).check_organization(org_id)
    return check.as_dict()

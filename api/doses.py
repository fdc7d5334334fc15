"""
Doses API Router
Endpoints for dose actions and today's obligations
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_services, ServiceContainer
from api.schemas.doses import (
    DoseActionRequest,
    DoseActionResponse,
    DoseObligationResponse,
    TodayDosesResponse,
)
from models import DoseStatus
from tools.scheduler import ObligationKey


router = APIRouter(prefix="/doses", tags=["doses"])


@router.post("/actions", response_model=DoseActionResponse)
async def record_dose_action(
    body: DoseActionRequest,
    services: ServiceContainer = Depends(get_services),
):
    """
    Take, skip or snooze a dose.

    The response carries the authoritative obligation state and any rewards;
    repeating a final action is a no-op with `changed = false`.
    """
    result = await services.adherence.record_dose_action(
        ObligationKey(body.scheduled_dose_id, body.scheduled_for),
        body.action.value,
        body.timestamp,
    )
    return DoseActionResponse.model_validate(result)


@router.get("/today", response_model=TodayDosesResponse)
async def get_today_doses(
    user_id: int = Query(..., gt=0),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Today's obligations merged with recorded status"""
    now = services.clock.now()
    doses = services.adherence.today(db, user_id, now)
    return TodayDosesResponse(
        user_id=user_id,
        date=now.date(),
        total=len(doses),
        taken=sum(1 for d in doses if d.status == DoseStatus.TAKEN.value),
        pending=sum(1 for d in doses if d.effective_status == DoseStatus.PENDING.value),
        doses=[DoseObligationResponse.model_validate(d) for d in doses],
    )

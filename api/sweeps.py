"""
Sweeps API Router
Entry points for an external scheduler; every sweep is idempotent
"""

from typing import Optional
from fastapi import APIRouter, Depends, Body

from api.deps import get_services, ServiceContainer
from api.schemas.sweeps import SweepRequest, SweepReportResponse


router = APIRouter(prefix="/sweeps", tags=["sweeps"])


@router.post("/reminders", response_model=SweepReportResponse)
async def run_reminder_sweep(
    body: Optional[SweepRequest] = Body(None),
    services: ServiceContainer = Depends(get_services),
):
    report = await services.reminders.run_reminder_sweep(body.now if body else None)
    return SweepReportResponse(**report.to_dict())


@router.post("/missed-doses", response_model=SweepReportResponse)
async def run_missed_dose_sweep(
    body: Optional[SweepRequest] = Body(None),
    services: ServiceContainer = Depends(get_services),
):
    report = await services.missed.run_missed_dose_sweep(body.now if body else None)
    return SweepReportResponse(**report.to_dict())


@router.post("/weekly-rollover", response_model=SweepReportResponse)
async def run_weekly_rollover(
    body: Optional[SweepRequest] = Body(None),
    services: ServiceContainer = Depends(get_services),
):
    report = await services.challenges.run_weekly_rollover(body.now if body else None)
    return SweepReportResponse(**report.to_dict())

"""
Dose Schemas
Pydantic models for dose action and today-view requests and responses
"""

from typing import Optional, List
from datetime import datetime, date
from zoneinfo import ZoneInfo
from pydantic import BaseModel, Field, ConfigDict, field_validator
from enum import Enum

from config import settings


def to_engine_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert aware datetimes to naive engine-local time"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(settings.APP_TZ)).replace(tzinfo=None)


class DoseActionEnum(str, Enum):
    """Actions a user may take on a dose"""
    TAKEN = "taken"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"


# ==================== REQUEST SCHEMAS ====================

class DoseActionRequest(BaseModel):
    """Schema for recording a dose action"""
    scheduled_dose_id: int = Field(..., gt=0)
    scheduled_for: datetime
    action: DoseActionEnum
    timestamp: Optional[datetime] = None

    @field_validator("scheduled_for", "timestamp")
    @classmethod
    def normalize_time(cls, v):
        return to_engine_time(v)


# ==================== RESPONSE SCHEMAS ====================

class TimingResponse(BaseModel):
    """On-time classification of a taken dose"""
    model_config = ConfigDict(from_attributes=True)

    on_time: bool
    early: bool
    minutes_from_schedule: float


class DoseObligationResponse(BaseModel):
    """Authoritative obligation state"""
    model_config = ConfigDict(from_attributes=True)

    scheduled_dose_id: int
    scheduled_for: datetime
    user_id: int
    medication_id: int
    time_of_day: Optional[str] = None
    status: str
    effective_status: str
    action_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    was_snoozed: bool = False
    was_on_time: Optional[bool] = None
    was_early: Optional[bool] = None
    medication_name: Optional[str] = None
    scheduled_time: Optional[str] = None


class DoseRewardsResponse(BaseModel):
    """Rewards triggered by a dose action"""
    model_config = ConfigDict(from_attributes=True)

    spins_awarded: int = 0
    coins_awarded: int = 0
    coins_doubled: bool = False
    milestone: Optional[int] = None
    badges: List[str] = []
    completed_challenges: List[int] = []
    current_streak: Optional[int] = None
    perfect_day: bool = False
    coins_balance: Optional[int] = None
    spins_balance: Optional[int] = None


class DoseActionResponse(BaseModel):
    """Schema for dose action response"""
    model_config = ConfigDict(from_attributes=True)

    obligation: DoseObligationResponse
    changed: bool
    timing: Optional[TimingResponse] = None
    rewards: DoseRewardsResponse


class TodayDosesResponse(BaseModel):
    """Schema for today's doses"""
    user_id: int
    date: date
    total: int
    taken: int
    pending: int
    doses: List[DoseObligationResponse]

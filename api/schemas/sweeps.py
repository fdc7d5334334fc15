"""
Sweep Schemas
Pydantic models for externally triggered sweeps
"""

from typing import Optional, List, Dict
from datetime import datetime
from pydantic import BaseModel, field_validator

from api.schemas.doses import to_engine_time


class SweepRequest(BaseModel):
    """Optional evaluation instant; defaults to the engine clock"""
    now: Optional[datetime] = None

    @field_validator("now")
    @classmethod
    def normalize_time(cls, v):
        return to_engine_time(v)


class SweepReportResponse(BaseModel):
    name: str
    started_at: datetime
    examined: int
    succeeded: int
    failed: int
    skipped: int
    errors: List[str] = []
    counters: Dict[str, int] = {}

"""
Clock
Injectable time source so sweeps and handlers can be tested deterministically
"""

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings


class SystemClock:
    """Wall clock in the engine timezone, returned as naive local time"""

    def __init__(self, tz_name: Optional[str] = None):
        self.tz = ZoneInfo(tz_name or settings.APP_TZ)

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None)


class FixedClock:
    """Manually advanced clock"""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime):
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


system_clock = SystemClock()

"""
Dose State Machine
Legal status transitions, missed-dose timing and on-time classification
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_

from config import settings
from exceptions import InvalidTransitionError
from models import DoseLog, DoseStatus, OPEN_STATUSES, TERMINAL_STATUSES


logger = logging.getLogger(__name__)


class Actor(str, Enum):
    """Who requested a transition"""
    USER = "user"
    SYSTEM = "system"


USER_TARGETS = (DoseStatus.TAKEN.value, DoseStatus.SKIPPED.value, DoseStatus.SNOOZED.value)


@dataclass
class TimingClassification:
    """How a taken dose relates to its scheduled instant"""
    on_time: bool
    early: bool
    minutes_from_schedule: float


@dataclass
class TransitionPlan:
    """Validated transition: apply ``values`` unless ``noop``"""
    target: str
    noop: bool
    values: Dict[str, Any]
    timing: Optional[TimingClassification] = None


class DoseStateMachine:
    """
    Governs pending -> taken | skipped | snoozed | missed.

    A snoozed obligation whose resume instant has passed is treated as
    pending for reminder and missed purposes but keeps ``snoozed`` as its
    stored status until acted on.
    """

    def __init__(
        self,
        grace_minutes: Optional[int] = None,
        snooze_minutes: Optional[int] = None,
        on_time_window_minutes: Optional[int] = None,
        early_window_minutes: Optional[int] = None,
    ):
        self.grace = timedelta(minutes=grace_minutes if grace_minutes is not None else settings.MISSED_GRACE_MINUTES)
        self.snooze = timedelta(minutes=snooze_minutes if snooze_minutes is not None else settings.SNOOZE_MINUTES)
        self.on_time_window = on_time_window_minutes if on_time_window_minutes is not None else settings.ON_TIME_WINDOW_MINUTES
        self.early_window = early_window_minutes if early_window_minutes is not None else settings.EARLY_WINDOW_MINUTES

    # ==================== QUERIES ====================

    def is_effectively_pending(self, status: Optional[str], snoozed_until: Optional[datetime], now: datetime) -> bool:
        if status is None or status == DoseStatus.PENDING.value:
            return True
        if status == DoseStatus.SNOOZED.value:
            return snoozed_until is None or snoozed_until <= now
        return False

    def effective_status(self, obligation: Optional[DoseLog], now: datetime) -> str:
        """Status used for reminder/missed evaluation"""
        if obligation is None:
            return DoseStatus.PENDING.value
        if self.is_effectively_pending(obligation.status, obligation.snoozed_until, now):
            return DoseStatus.PENDING.value
        return obligation.status

    def missed_due(self, scheduled_for: datetime, now: datetime) -> bool:
        """True once the grace period after the scheduled instant has elapsed"""
        return now > scheduled_for + self.grace

    def effectively_pending_clause(self, now: datetime):
        """SQL guard: the existing row may still become missed"""
        status = DoseLog.__table__.c.status
        snoozed_until = DoseLog.__table__.c.snoozed_until
        return or_(
            status == DoseStatus.PENDING.value,
            and_(
                status == DoseStatus.SNOOZED.value,
                or_(snoozed_until.is_(None), snoozed_until <= now),
            ),
        )

    def classify_timing(self, scheduled_for: datetime, taken_at: datetime) -> TimingClassification:
        """
        On time: within +/- the on-time window of the scheduled instant.
        Early: on time and taken no later than the early window after it.
        """
        delta_minutes = (taken_at - scheduled_for).total_seconds() / 60
        on_time = abs(delta_minutes) <= self.on_time_window
        early = on_time and delta_minutes <= self.early_window
        return TimingClassification(on_time=on_time, early=early, minutes_from_schedule=round(delta_minutes, 1))

    # ==================== TRANSITIONS ====================

    def plan(
        self,
        current: Optional[DoseLog],
        target: str,
        actor: Actor,
        scheduled_for: datetime,
        now: datetime,
    ) -> TransitionPlan:
        """
        Validate a transition and compute the columns it writes.

        Raises:
            InvalidTransitionError: transition not allowed
        """
        current_status = current.status if current is not None else DoseStatus.PENDING.value
        try:
            target = DoseStatus(target).value
        except ValueError:
            raise InvalidTransitionError(current_status, str(target), "unknown status")

        if current_status in TERMINAL_STATUSES:
            if current_status == target:
                return TransitionPlan(target=target, noop=True, values={})
            raise InvalidTransitionError(current_status, target, "obligation is final")

        if target == DoseStatus.PENDING.value:
            raise InvalidTransitionError(current_status, target, "cannot return to pending")

        if target == DoseStatus.MISSED.value:
            if actor != Actor.SYSTEM:
                raise InvalidTransitionError(current_status, target, "only the missed-dose sweep may mark a dose missed")
            if not self.missed_due(scheduled_for, now):
                raise InvalidTransitionError(current_status, target, "grace period has not elapsed")
            snoozed_until = current.snoozed_until if current is not None else None
            if not self.is_effectively_pending(current_status, snoozed_until, now):
                raise InvalidTransitionError(current_status, target, "snooze has not expired")
            return TransitionPlan(target=target, noop=False, values={})

        if target not in USER_TARGETS or current_status not in OPEN_STATUSES:
            raise InvalidTransitionError(current_status, target)

        if target == DoseStatus.SNOOZED.value:
            return TransitionPlan(
                target=target,
                noop=False,
                values={"snoozed_until": now + self.snooze, "was_snoozed": True},
            )

        if target == DoseStatus.TAKEN.value:
            timing = self.classify_timing(scheduled_for, now)
            return TransitionPlan(
                target=target,
                noop=False,
                values={"was_on_time": timing.on_time, "was_early": timing.early},
                timing=timing,
            )

        return TransitionPlan(target=target, noop=False, values={})


dose_state_machine = DoseStateMachine()

"""
Adherence Service
User dose actions and the rewards they trigger
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import RewardTables, get_reward_tables
from database import SessionFactory, get_db_context
from exceptions import InvalidTransitionError, NotFoundError, ValidationError
import models
from models import DoseLog, DoseStatus, TimeOfDay
from services.badge_service import BadgeAwarder, badge_awarder
from services.catalog import MedicationCatalog, medication_catalog
from services.challenge_service import ChallengeTracker, DoseEvent
from services.dose_ledger import DoseLedger, dose_ledger, with_retry
from services.dose_state_machine import Actor, DoseStateMachine, TimingClassification, dose_state_machine
from services.streak_economy import StreakEconomyManager, streak_economy
from tools.clock import system_clock
from tools.scheduler import ObligationKey, expand_for_dates, expand_schedule


logger = logging.getLogger(__name__)


@dataclass
class DoseSnapshot:
    """Detached copy of an obligation row"""
    scheduled_dose_id: int
    scheduled_for: datetime
    user_id: int
    medication_id: int
    time_of_day: Optional[str]
    status: str
    effective_status: str
    action_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    was_snoozed: bool = False
    was_on_time: Optional[bool] = None
    was_early: Optional[bool] = None
    medication_name: Optional[str] = None
    scheduled_time: Optional[str] = None

    @classmethod
    def from_row(cls, row: DoseLog, effective_status: str, **extra) -> "DoseSnapshot":
        return cls(
            scheduled_dose_id=row.scheduled_dose_id,
            scheduled_for=row.scheduled_for,
            user_id=row.user_id,
            medication_id=row.medication_id,
            time_of_day=row.time_of_day,
            status=row.status,
            effective_status=effective_status,
            action_at=row.action_at,
            snoozed_until=row.snoozed_until,
            was_snoozed=bool(row.was_snoozed),
            was_on_time=row.was_on_time,
            was_early=row.was_early,
            **extra,
        )


@dataclass
class DoseRewards:
    spins_awarded: int = 0
    coins_awarded: int = 0
    coins_doubled: bool = False
    milestone: Optional[int] = None
    badges: List[str] = field(default_factory=list)
    completed_challenges: List[int] = field(default_factory=list)
    current_streak: Optional[int] = None
    perfect_day: bool = False
    coins_balance: Optional[int] = None
    spins_balance: Optional[int] = None


@dataclass
class DoseActionResult:
    """Authoritative state after a dose action; clients render from this"""
    obligation: DoseSnapshot
    changed: bool
    timing: Optional[TimingClassification] = None
    rewards: DoseRewards = field(default_factory=DoseRewards)


class AdherenceService:
    """
    Handles take / skip / snooze requests.

    Status write, challenge progress and reward credits share one
    transaction, so a retried request never double-credits.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        ledger: Optional[DoseLedger] = None,
        state_machine: Optional[DoseStateMachine] = None,
        catalog: Optional[MedicationCatalog] = None,
        economy: Optional[StreakEconomyManager] = None,
        badges: Optional[BadgeAwarder] = None,
        challenges: Optional[ChallengeTracker] = None,
        tables: Optional[RewardTables] = None,
        clock=None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or dose_ledger
        self.state_machine = state_machine or dose_state_machine
        self.catalog = catalog or medication_catalog
        self.economy = economy or streak_economy
        self.badges = badges or badge_awarder
        self.challenges = challenges or ChallengeTracker(session_factory=session_factory, economy=self.economy)
        self.tables = tables or get_reward_tables()
        self.clock = clock or system_clock

    # ==================== DOSE ACTIONS ====================

    async def record_dose_action(
        self,
        key: ObligationKey,
        action: str,
        timestamp: Optional[datetime] = None,
    ) -> DoseActionResult:
        """
        Record a user action (taken, skipped, snoozed) on an obligation.

        Args:
            key: Obligation natural key
            action: Target status
            timestamp: Action instant (defaults to the clock)

        Returns:
            DoseActionResult with the authoritative obligation and rewards

        Raises:
            NotFoundError: schedule does not exist
            ValidationError: key is not an instant of the schedule
            InvalidTransitionError: obligation is final with a different status
        """
        timestamp = timestamp or self.clock.now()

        def _run() -> DoseActionResult:
            with get_db_context(self.session_factory) as session:
                return self._record(session, key, action, timestamp)

        result = await with_retry(_run, description=f"dose action {action} on {key.scheduled_dose_id}@{key.scheduled_for}")
        if result.changed:
            logger.info(
                f"User {result.obligation.user_id} marked dose {key.scheduled_dose_id}@{key.scheduled_for} "
                f"as {result.obligation.status}"
            )
        return result

    def _record(self, session: Session, key: ObligationKey, action: str, timestamp: datetime) -> DoseActionResult:
        schedule = self.catalog.get_schedule(session, key.scheduled_dose_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {key.scheduled_dose_id} not found")
        if expand_schedule(schedule, key.scheduled_for.date()) != key:
            raise ValidationError(f"{key.scheduled_for} is not a scheduled instant of schedule {schedule.id}")

        current = self.ledger.get(session, key)
        plan = self.state_machine.plan(current, action, Actor.USER, key.scheduled_for, timestamp)
        if plan.noop:
            return DoseActionResult(obligation=self._snapshot(current, timestamp), changed=False)

        outcome = self.ledger.upsert_status(
            session,
            key,
            plan.target,
            timestamp,
            user_id=schedule.user_id,
            medication_id=schedule.medication_id,
            time_of_day=schedule.time_of_day,
            extra=plan.values,
        )
        obligation = outcome.obligation
        if not outcome.changed:
            # A concurrent writer finalized the row first
            if obligation.status == plan.target:
                return DoseActionResult(obligation=self._snapshot(obligation, timestamp), changed=False)
            raise InvalidTransitionError(obligation.status, plan.target, "obligation is final")

        result = DoseActionResult(obligation=self._snapshot(obligation, timestamp), changed=True, timing=plan.timing)
        if plan.target == DoseStatus.TAKEN.value:
            result.rewards = self._reward_taken(session, obligation, plan.timing, timestamp)
        return result

    def _reward_taken(self, session: Session, obligation: DoseLog, timing: TimingClassification, now: datetime) -> DoseRewards:
        rewards = DoseRewards()
        user_id = obligation.user_id

        completed = self.challenges.record_dose_event(
            session,
            user_id,
            DoseEvent(
                time_of_day=obligation.time_of_day,
                on_time=timing.on_time,
                early=timing.early,
                snoozed=bool(obligation.was_snoozed),
            ),
            now,
        )
        rewards.completed_challenges = [row.id for row in completed]

        dose_day = obligation.scheduled_for.date()
        account = self.economy.get_or_create_account(session, user_id, now)
        streak = self.economy.record_adherent_day(session, account, dose_day, now)
        rewards.current_streak = streak.current_streak
        rewards.spins_awarded += streak.bonus_spins
        rewards.badges += streak.badges

        if timing.on_time:
            self.economy.add_spins(account, self.tables.dose_reward_spins)
            rewards.spins_awarded += self.tables.dose_reward_spins

            credit = self.economy.credit_coins(session, account, self.tables.dose_reward_coins, now)
            rewards.coins_awarded = credit.credited
            rewards.coins_doubled = credit.doubled
            rewards.milestone = credit.milestone
            rewards.badges += credit.badges

            rewards.badges += self.badges.award(session, user_id, "first_dose", now)
            if obligation.time_of_day == TimeOfDay.MORNING.value and self._on_time_morning_count(session, user_id) >= self.tables.early_bird_target:
                rewards.badges += self.badges.award(session, user_id, "early_bird", now)

            if self._is_perfect_day(session, user_id, dose_day):
                rewards.perfect_day = True
                self.economy.add_spins(account, self.tables.perfect_day_spins)
                rewards.spins_awarded += self.tables.perfect_day_spins
                rewards.badges += self.badges.award(session, user_id, "perfect_day", now)
                logger.info(f"User {user_id} completed a perfect day on {dose_day}")

        session.flush()
        rewards.coins_balance = account.coins
        rewards.spins_balance = account.available_spins
        return rewards

    def _on_time_morning_count(self, session: Session, user_id: int) -> int:
        stmt = select(func.count(DoseLog.id)).where(
            DoseLog.user_id == user_id,
            DoseLog.status == DoseStatus.TAKEN.value,
            DoseLog.was_on_time.is_(True),
            DoseLog.time_of_day == TimeOfDay.MORNING.value,
        )
        return session.execute(stmt).scalar_one()

    def _is_perfect_day(self, session: Session, user_id: int, day: date) -> bool:
        """Every obligation scheduled for ``day`` has been taken on time"""
        schedules = self.catalog.get_active_schedules(session, user_id)
        keys = [key for _, key in expand_for_dates(schedules, [day])]
        if not keys:
            return False

        start = datetime.combine(day, datetime.min.time())
        rows = {
            row.natural_key: row
            for row in self.ledger.query_by_window(session, start - timedelta(seconds=1), start + timedelta(days=1), user_id=user_id)
        }
        for key in keys:
            row = rows.get(tuple(key))
            if row is None or row.status != DoseStatus.TAKEN.value or not row.was_on_time:
                return False
        return True

    def _snapshot(self, row: DoseLog, now: datetime) -> DoseSnapshot:
        return DoseSnapshot.from_row(row, self.state_machine.effective_status(row, now))

    # ==================== TODAY VIEW ====================

    def today(self, session: Session, user_id: int, now: Optional[datetime] = None) -> List[DoseSnapshot]:
        """Today's obligations from the schedules, merged with ledger state"""
        now = now or self.clock.now()
        day = now.date()
        schedules = self.catalog.get_active_schedules(session, user_id)

        start = datetime.combine(day, datetime.min.time())
        rows = {
            row.natural_key: row
            for row in self.ledger.query_by_window(session, start - timedelta(seconds=1), start + timedelta(days=1), user_id=user_id)
        }

        doses = []
        for schedule, key in expand_for_dates(schedules, [day]):
            extra = {"medication_name": schedule.medication.name, "scheduled_time": schedule.scheduled_time}
            row = rows.get(tuple(key))
            if row is not None:
                doses.append(DoseSnapshot.from_row(row, self.state_machine.effective_status(row, now), **extra))
                continue
            doses.append(DoseSnapshot(
                scheduled_dose_id=key.scheduled_dose_id,
                scheduled_for=key.scheduled_for,
                user_id=schedule.user_id,
                medication_id=schedule.medication_id,
                time_of_day=schedule.time_of_day,
                status=DoseStatus.PENDING.value,
                effective_status=DoseStatus.PENDING.value,
                **extra,
            ))
        doses.sort(key=lambda d: (d.scheduled_for, d.scheduled_dose_id))
        return doses

    def get_streak(self, session: Session, user_id: int) -> Optional[models.AdherenceStreak]:
        return session.get(models.AdherenceStreak, user_id)

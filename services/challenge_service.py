"""
Challenge Service
Weekly challenge rows, progress tracking and exclusive reward claims
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import case, select, union, update
from sqlalchemy.orm import Session, joinedload

from database import SessionFactory, dialect_insert, get_db_context
from exceptions import AlreadyClaimedError, ChallengeNotCompletedError, NotFoundError
from models import ChallengeType, RewardAccount, ScheduledDose, UserChallenge, WeeklyChallenge
from services.dose_ledger import storage_errors, with_retry
from services.streak_economy import StreakEconomyManager, streak_economy
from services.sweep_report import SweepReport
from tools.clock import system_clock


logger = logging.getLogger(__name__)


def week_start_for(moment) -> date:
    """Monday of the ISO week containing ``moment``"""
    day = moment.date() if isinstance(moment, datetime) else moment
    return day - timedelta(days=day.weekday())


@dataclass
class DoseEvent:
    """A taken dose as seen by challenge predicates"""
    time_of_day: Optional[str]
    on_time: bool
    early: bool
    snoozed: bool


@dataclass
class ClaimResult:
    user_challenge_id: int
    coins_awarded: int
    spins_awarded: int
    doubled: bool
    coins_balance: int
    spins_balance: int
    milestone: Optional[int] = None


def matches(challenge: WeeklyChallenge, event: DoseEvent) -> bool:
    """Whether a dose event counts toward a challenge"""
    kind = challenge.challenge_type
    if kind == ChallengeType.TIME_STREAK.value:
        return event.on_time and challenge.time_of_day == event.time_of_day
    if kind == ChallengeType.PERFECT_WEEK.value:
        return event.on_time
    if kind == ChallengeType.NO_SNOOZE.value:
        return not event.snoozed
    if kind == ChallengeType.EARLY_DOSE.value:
        return event.early
    logger.warning(f"Unknown challenge type '{kind}' on challenge {challenge.id}")
    return False


class ChallengeTracker:
    """
    Progress only moves forward within a week and each row completes once.
    Reward claims flip ``reward_claimed`` with a compare-and-swap update in
    the same transaction that credits the account.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        economy: Optional[StreakEconomyManager] = None,
        clock=None,
    ):
        self.session_factory = session_factory
        self.economy = economy or streak_economy
        self.clock = clock or system_clock

    # ==================== WEEK ROWS ====================

    def ensure_week(self, session: Session, user_id: int, now: datetime) -> int:
        """Create this week's progress rows for every active challenge; returns rows created"""
        week_start = week_start_for(now)
        challenge_ids = session.execute(
            select(WeeklyChallenge.id).where(WeeklyChallenge.is_active.is_(True))
        ).scalars().all()

        created = 0
        for challenge_id in challenge_ids:
            stmt = dialect_insert(session, UserChallenge).values(
                user_id=user_id,
                challenge_id=challenge_id,
                week_start=week_start,
                current_progress=0,
                is_completed=False,
                reward_claimed=False,
            ).on_conflict_do_nothing(index_elements=["user_id", "challenge_id", "week_start"])
            with storage_errors():
                created += session.execute(stmt).rowcount
        return created

    def list_for_week(self, session: Session, user_id: int, now: datetime) -> List[UserChallenge]:
        stmt = (
            select(UserChallenge)
            .options(joinedload(UserChallenge.challenge))
            .where(UserChallenge.user_id == user_id, UserChallenge.week_start == week_start_for(now))
            .order_by(UserChallenge.challenge_id)
            .execution_options(populate_existing=True)
        )
        return list(session.execute(stmt).scalars())

    async def run_weekly_rollover(self, now: Optional[datetime] = None) -> SweepReport:
        """Ensure current-week rows for every known user"""
        now = now or self.clock.now()
        report = SweepReport(name="weekly_rollover", started_at=now)

        with get_db_context(self.session_factory) as session:
            user_ids = session.execute(
                union(
                    select(RewardAccount.user_id),
                    select(ScheduledDose.user_id).where(ScheduledDose.is_active.is_(True)),
                )
            ).scalars().all()

        for user_id in sorted(set(user_ids)):
            report.examined += 1

            def _ensure(uid=user_id) -> int:
                with get_db_context(self.session_factory) as session:
                    return self.ensure_week(session, uid, now)

            try:
                created = await with_retry(_ensure, description=f"weekly rollover for user {user_id}")
            except Exception as e:
                logger.error(f"Weekly rollover failed for user {user_id}: {e}")
                report.record_failure(f"user:{user_id}", e)
                continue
            if created:
                report.succeeded += 1
            else:
                report.skipped += 1

        logger.info(
            f"Weekly rollover for week of {week_start_for(now)}: "
            f"{report.succeeded} users initialized, {report.skipped} already current, {report.failed} failed"
        )
        return report

    # ==================== PROGRESS ====================

    def record_dose_event(self, session: Session, user_id: int, event: DoseEvent, now: datetime) -> List[UserChallenge]:
        """
        Advance matching challenges for this week.

        Returns:
            Rows that became completed because of this event
        """
        self.ensure_week(session, user_id, now)
        open_rows = session.execute(
            select(UserChallenge)
            .options(joinedload(UserChallenge.challenge))
            .where(
                UserChallenge.user_id == user_id,
                UserChallenge.week_start == week_start_for(now),
                UserChallenge.is_completed.is_(False),
            )
        ).scalars().all()

        table = UserChallenge.__table__
        completed = []
        for row in open_rows:
            challenge = row.challenge
            if not challenge.is_active or not matches(challenge, event):
                continue

            new_progress = table.c.current_progress + 1
            reached = new_progress >= challenge.target_count
            stmt = (
                update(table)
                .where(table.c.id == row.id, table.c.is_completed.is_(False))
                .values(
                    current_progress=new_progress,
                    is_completed=reached,
                    completed_at=case((reached, now), else_=None),
                )
            )
            with storage_errors():
                if not session.execute(stmt).rowcount:
                    continue

            session.refresh(row)
            if row.is_completed:
                logger.info(f"User {user_id} completed challenge '{challenge.name}'")
                completed.append(row)
        return completed

    # ==================== CLAIMS ====================

    def _claim(self, session: Session, user_challenge_id: int, now: datetime) -> ClaimResult:
        row = session.get(UserChallenge, user_challenge_id)
        if row is None:
            raise NotFoundError(f"User challenge {user_challenge_id} not found")

        table = UserChallenge.__table__
        flipped = session.execute(
            update(table)
            .where(
                table.c.id == user_challenge_id,
                table.c.is_completed.is_(True),
                table.c.reward_claimed.is_(False),
            )
            .values(reward_claimed=True, claimed_at=now)
        ).rowcount

        if not flipped:
            session.refresh(row)
            if not row.is_completed:
                raise ChallengeNotCompletedError(f"Challenge {user_challenge_id} is not completed")
            raise AlreadyClaimedError(user_challenge_id)

        challenge = row.challenge
        account = self.economy.get_or_create_account(session, row.user_id, now)
        credit = self.economy.credit_coins(session, account, challenge.reward_coins, now)
        self.economy.add_spins(account, challenge.reward_spins)
        session.flush()

        return ClaimResult(
            user_challenge_id=user_challenge_id,
            coins_awarded=credit.credited,
            spins_awarded=challenge.reward_spins,
            doubled=credit.doubled,
            coins_balance=account.coins,
            spins_balance=account.available_spins,
            milestone=credit.milestone,
        )

    async def claim_reward(self, user_challenge_id: int, now: Optional[datetime] = None) -> ClaimResult:
        """
        Credit a completed challenge's reward exactly once.

        Raises:
            AlreadyClaimedError: reward already claimed
            ChallengeNotCompletedError: challenge not completed yet
            NotFoundError: unknown user challenge
        """
        now = now or self.clock.now()

        def _run() -> ClaimResult:
            with get_db_context(self.session_factory) as session:
                return self._claim(session, user_challenge_id, now)

        try:
            result = await with_retry(_run, description=f"claim challenge {user_challenge_id}")
        except AlreadyClaimedError:
            logger.info(f"Challenge {user_challenge_id} reward already claimed")
            raise

        logger.info(
            f"Claimed challenge {user_challenge_id}: +{result.coins_awarded} coins, +{result.spins_awarded} spins"
        )
        return result

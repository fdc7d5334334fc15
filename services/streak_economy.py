"""
Streak Economy
Reward-account mutations: multipliers, shields, boosts, coin milestones and adherence streak days
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import RewardTables, get_reward_tables
from database import dialect_insert
from models import AdherenceStreak, InventoryItem, RewardAccount, ShopItem
from services.badge_service import BadgeAwarder, badge_awarder
from services.dose_ledger import storage_errors


logger = logging.getLogger(__name__)

DOUBLE_COINS_ITEM = "double_coins_24h"


@dataclass
class CoinCredit:
    """Outcome of one coin award"""
    requested: int
    credited: int
    doubled: bool
    previous_balance: int
    new_balance: int
    milestone: Optional[int] = None
    badges: List[str] = field(default_factory=list)


@dataclass
class StreakUpdate:
    current_streak: int
    longest_streak: int
    extended: bool
    bonus_spins: int = 0
    badges: List[str] = field(default_factory=list)


class StreakEconomyManager:
    """
    Owns every write to RewardAccount balances outside of the spin lock
    bookkeeping. Callers hold the account row inside their transaction;
    the version column turns concurrent writers into ConflictError.
    """

    def __init__(self, tables: Optional[RewardTables] = None, badges: Optional[BadgeAwarder] = None):
        self.tables = tables or get_reward_tables()
        self.badges = badges or badge_awarder

    # ==================== ACCOUNTS ====================

    def get_or_create_account(self, session: Session, user_id: int, now: Optional[datetime] = None) -> RewardAccount:
        """Load the account, creating it with the starting spin grant if absent"""
        now = now or datetime.utcnow()
        stmt = dialect_insert(session, RewardAccount).values(
            user_id=user_id,
            coins=0,
            available_spins=self.tables.starting_spins,
            total_spins_used=0,
            streak_multiplier=1.0,
            streak_shield_active=False,
            version=1,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["user_id"])
        with storage_errors():
            if session.execute(stmt).rowcount:
                logger.info(f"Created reward account for user {user_id}")
            return self.load_account(session, user_id)

    def load_account(self, session: Session, user_id: int) -> Optional[RewardAccount]:
        """Fresh read of the account (pending changes are flushed first)"""
        with storage_errors():
            session.flush()
        stmt = select(RewardAccount).where(RewardAccount.user_id == user_id).execution_options(populate_existing=True)
        return session.execute(stmt).scalar_one_or_none()

    # ==================== MULTIPLIER / SHIELD ====================

    def apply_multiplier(self, account: RewardAccount, value: float) -> float:
        """Stack a multiplier prize additively, capped"""
        stacked = round(account.streak_multiplier + (value - 1.0), 4)
        account.streak_multiplier = min(self.tables.max_streak_multiplier, max(1.0, stacked))
        return account.streak_multiplier

    def grant_shield(self, account: RewardAccount, hours: float, now: datetime) -> datetime:
        """Activate the streak shield, re-arming rather than compounding the expiry"""
        expires = now + timedelta(hours=hours)
        if account.shield_is_active(now) and account.streak_shield_expires_at and account.streak_shield_expires_at > expires:
            expires = account.streak_shield_expires_at
        account.streak_shield_active = True
        account.streak_shield_expires_at = expires
        return expires

    # ==================== COINS ====================

    def detect_milestone(self, previous: int, new: int) -> Optional[int]:
        """Lowest threshold crossed by a single update, if any"""
        for threshold in sorted(self.tables.coin_milestones):
            if previous < threshold <= new:
                return threshold
        return None

    def double_coins_active(self, session: Session, user_id: int, now: datetime) -> bool:
        stmt = (
            select(InventoryItem.id)
            .join(ShopItem)
            .where(
                InventoryItem.user_id == user_id,
                ShopItem.item_type == DOUBLE_COINS_ITEM,
                InventoryItem.expires_at > now,
            )
            .limit(1)
        )
        return session.execute(stmt).first() is not None

    def credit_coins(
        self,
        session: Session,
        account: RewardAccount,
        amount: int,
        now: datetime,
        doubled: Optional[bool] = None,
    ) -> CoinCredit:
        """
        Credit coins, doubling once if a double-coins boost is active.

        ``doubled`` may be passed when the boost was already resolved (spin
        history replay) so the check is not repeated.
        """
        if doubled is None:
            doubled = amount > 0 and self.double_coins_active(session, account.user_id, now)
        credited = amount * 2 if doubled else amount

        previous = account.coins
        account.coins = previous + credited
        credit = CoinCredit(
            requested=amount,
            credited=credited,
            doubled=doubled,
            previous_balance=previous,
            new_balance=account.coins,
            milestone=self.detect_milestone(previous, account.coins),
        )
        if credit.milestone:
            logger.info(f"User {account.user_id} crossed coin milestone {credit.milestone}")
        if account.coins >= self.tables.high_roller_coins:
            credit.badges = self.badges.award(session, account.user_id, "high_roller", now)
        return credit

    def add_spins(self, account: RewardAccount, count: int) -> int:
        account.available_spins = account.available_spins + count
        return account.available_spins

    # ==================== ADHERENCE STREAK ====================

    def _get_or_create_streak(self, session: Session, user_id: int) -> AdherenceStreak:
        stmt = dialect_insert(session, AdherenceStreak).values(
            user_id=user_id, current_streak=0, longest_streak=0
        ).on_conflict_do_nothing(index_elements=["user_id"])
        with storage_errors():
            session.flush()
            session.execute(stmt)
        return session.execute(
            select(AdherenceStreak).where(AdherenceStreak.user_id == user_id).execution_options(populate_existing=True)
        ).scalar_one()

    def bonus_spins_for(self, streak_days: int) -> int:
        """Bonus spins for reaching a streak day; the largest step repeats on its multiples"""
        bonuses = self.tables.streak_bonus_spins
        if streak_days in bonuses:
            return bonuses[streak_days]
        largest = max(bonuses) if bonuses else 0
        if largest and streak_days > largest and streak_days % largest == 0:
            return bonuses[largest]
        return 0

    def record_adherent_day(self, session: Session, account: RewardAccount, day: date, now: datetime) -> StreakUpdate:
        """Count ``day`` toward the adherence streak (once per day)"""
        streak = self._get_or_create_streak(session, account.user_id)

        if streak.last_adherent_date and streak.last_adherent_date >= day:
            return StreakUpdate(streak.current_streak, streak.longest_streak, extended=False)

        if streak.last_adherent_date == day - timedelta(days=1):
            streak.current_streak += 1
        else:
            streak.current_streak = 1
        streak.last_adherent_date = day
        streak.longest_streak = max(streak.longest_streak, streak.current_streak)

        update = StreakUpdate(streak.current_streak, streak.longest_streak, extended=True)
        update.bonus_spins = self.bonus_spins_for(streak.current_streak)
        if update.bonus_spins:
            self.add_spins(account, update.bonus_spins)
            logger.info(f"User {account.user_id} reached a {streak.current_streak}-day streak: +{update.bonus_spins} spins")

        if streak.current_streak >= 7:
            update.badges += self.badges.award(session, account.user_id, "week_streak", now)
        if streak.current_streak >= 30:
            update.badges += self.badges.award(session, account.user_id, "month_streak", now)
        return update

    def reset_streak(self, session: Session, user_id: int, now: datetime) -> bool:
        """
        Reset the adherence streak after a missed dose.

        Returns False when an unexpired shield protected it.
        """
        account = self.load_account(session, user_id)
        if account is not None:
            if account.shield_is_active(now):
                logger.info(f"Streak shield protected user {user_id}")
                return False
            self.expire_shield(account, now)

        streak = self._get_or_create_streak(session, user_id)
        if streak.current_streak:
            logger.info(f"Resetting {streak.current_streak}-day streak for user {user_id}")
        streak.current_streak = 0
        streak.last_adherent_date = None
        return True

    def expire_shield(self, account: RewardAccount, now: datetime) -> bool:
        """Clear an expired shield flag"""
        if account.streak_shield_active and not account.shield_is_active(now):
            account.streak_shield_active = False
            return True
        return False


streak_economy = StreakEconomyManager()

"""
Reward Service
Weighted slot spins applied atomically to a reward account
"""

import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from config import PrizeDefinition, RewardTables, get_reward_tables, settings
from database import SessionFactory, get_db_context
from exceptions import NoSpinsAvailableError
from models import MatchKind, PrizeType, RewardAccount, SpinHistory
from services.badge_service import BadgeAwarder, badge_awarder
from services.dose_ledger import with_retry
from services.streak_economy import StreakEconomyManager, streak_economy
from tools.clock import system_clock


logger = logging.getLogger(__name__)

COIN_PRIZES = (PrizeType.COINS.value, PrizeType.JACKPOT.value)


@dataclass
class SpinResult:
    """Resolved spin plus the authoritative account state after applying it"""
    spin_id: int
    symbols: List[str]
    match_kind: str
    prize_type: str
    base_value: float
    prize_value: float
    prize_name: str
    coins_credited: int = 0
    coins_doubled: bool = False
    milestone: Optional[int] = None
    badges: List[str] = field(default_factory=list)
    coins: int = 0
    available_spins: int = 0
    streak_multiplier: float = 1.0
    streak_shield_active: bool = False
    streak_shield_expires_at: Optional[datetime] = None


@dataclass
class AppliedPrize:
    coins_credited: int = 0
    milestone: Optional[int] = None
    badges: List[str] = field(default_factory=list)


class RewardEngine:
    """
    Single-flight spin:

    1. acquire the account's spin lock (compare-and-swap on spin_locked_at)
    2. finish any history rows a previous crash left unapplied
    3. resolve symbols and the prize, persist history (applied = false)
    4. apply the prize, consume the spin, mark history applied, release the lock

    Step 4 is guarded by ``applied = false`` so reconciliation and a live
    spin can never both apply the same row.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        tables: Optional[RewardTables] = None,
        economy: Optional[StreakEconomyManager] = None,
        badges: Optional[BadgeAwarder] = None,
        rng: Optional[random.Random] = None,
        clock=None,
        lock_timeout_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.tables = tables or get_reward_tables()
        self.economy = economy or streak_economy
        self.badges = badges or badge_awarder
        self.rng = rng or random.SystemRandom()
        self.clock = clock or system_clock
        self.lock_timeout = timedelta(
            seconds=lock_timeout_seconds if lock_timeout_seconds is not None else settings.SPIN_LOCK_TIMEOUT_SECONDS
        )

        self._symbols = list(self.tables.symbol_weights)
        self._weights = [self.tables.symbol_weights[s] for s in self._symbols]

    # ==================== RESOLUTION ====================

    def roll_symbols(self) -> List[str]:
        """Three independent weighted draws"""
        return [self.rng.choices(self._symbols, weights=self._weights, k=1)[0] for _ in range(3)]

    def classify(self, symbols: Sequence[str]) -> Tuple[MatchKind, PrizeDefinition]:
        a, b, c = symbols
        if a == b == c:
            prize = self.tables.triple_prizes.get(a) or self.tables.pair_prize
            return MatchKind.TRIPLE, prize
        if a == b or b == c or a == c:
            return MatchKind.PAIR, self.tables.pair_prize
        return MatchKind.NONE, self.tables.none_prize

    def final_value(self, prize: PrizeDefinition, multiplier: float) -> float:
        """Coin prizes are scaled by the streak multiplier and floored"""
        if prize.type == PrizeType.COINS.value:
            return float(math.floor(prize.value * multiplier))
        return float(prize.value)

    def prize_name(self, prize: PrizeDefinition, value: float, multiplier: float) -> str:
        if prize.type == PrizeType.COINS.value and multiplier > 1:
            return f"{int(value)} Coins ({multiplier:g}x bonus!)"
        return prize.name

    # ==================== LOCK ====================

    def _lock_is_free(self, table, now: datetime):
        return or_(table.c.spin_locked_at.is_(None), table.c.spin_locked_at < now - self.lock_timeout)

    def _acquire(self, session: Session, user_id: int, now: datetime) -> None:
        self.economy.get_or_create_account(session, user_id, now)

        table = RewardAccount.__table__
        acquired = session.execute(
            update(table)
            .where(
                table.c.user_id == user_id,
                table.c.available_spins > 0,
                self._lock_is_free(table, now),
            )
            .values(spin_locked_at=now, version=table.c.version + 1)
        ).rowcount

        if not acquired:
            account = self.economy.load_account(session, user_id)
            if account.available_spins <= 0:
                raise NoSpinsAvailableError(user_id)
            raise NoSpinsAvailableError(user_id, "spin already in progress")

    def _take_lock(self, session: Session, user_id: int, now: datetime) -> bool:
        """Lock an account for reconciliation regardless of its spin balance"""
        table = RewardAccount.__table__
        return bool(session.execute(
            update(table)
            .where(table.c.user_id == user_id, self._lock_is_free(table, now))
            .values(spin_locked_at=now, version=table.c.version + 1)
        ).rowcount)

    def _release(self, user_id: int, locked_at: datetime) -> None:
        """Clear the lock only if it is still the one taken at ``locked_at``"""
        table = RewardAccount.__table__
        with get_db_context(self.session_factory) as session:
            session.execute(
                update(table)
                .where(table.c.user_id == user_id, table.c.spin_locked_at == locked_at)
                .values(spin_locked_at=None, version=table.c.version + 1)
            )

    # ==================== APPLY ====================

    def _apply_prize(self, session: Session, account: RewardAccount, history: SpinHistory, now: datetime) -> AppliedPrize:
        applied = AppliedPrize()
        prize_type = history.prize_type

        if prize_type in COIN_PRIZES:
            credit = self.economy.credit_coins(session, account, int(history.prize_value), now, doubled=history.coins_doubled)
            applied.coins_credited = credit.credited
            applied.milestone = credit.milestone
            applied.badges += credit.badges
        elif prize_type == PrizeType.MULTIPLIER.value:
            self.economy.apply_multiplier(account, history.prize_value)
        elif prize_type == PrizeType.SHIELD.value:
            self.economy.grant_shield(account, history.prize_value, now)
        elif prize_type == PrizeType.BONUS_SPIN.value:
            self.economy.add_spins(account, int(history.prize_value))
        elif prize_type == PrizeType.BADGE.value and history.badge_type:
            applied.badges += self.badges.award(session, account.user_id, history.badge_type, now)

        if prize_type == PrizeType.JACKPOT.value:
            applied.badges += self.badges.award(session, account.user_id, "lucky_spin", now)
        return applied

    def _apply(self, session: Session, history_id: int, now: datetime) -> Optional[Tuple[SpinHistory, RewardAccount, AppliedPrize]]:
        """Apply one history row exactly once. Returns None if it was already applied."""
        table = SpinHistory.__table__
        claimed = session.execute(
            update(table)
            .where(table.c.id == history_id, table.c.applied.is_(False))
            .values(applied=True, applied_at=now)
        ).rowcount
        if not claimed:
            return None

        history = session.get(SpinHistory, history_id, populate_existing=True)
        account = self.economy.load_account(session, history.user_id)

        account.available_spins = max(0, account.available_spins - 1)
        account.total_spins_used = account.total_spins_used + 1
        account.last_spin_date = now.date()
        applied = self._apply_prize(session, account, history, now)
        session.flush()
        return history, account, applied

    async def reconcile_unapplied(self, user_id: Optional[int] = None, now: Optional[datetime] = None, lock_held: bool = False) -> int:
        """
        Complete applies interrupted by a crash, honouring the stored prize.

        Accounts whose spin lock is held and not yet stale are skipped; their
        owner applies its own row. Pass ``lock_held`` when the caller already
        owns the lock for ``user_id``.

        Returns:
            Number of history rows applied
        """
        now = now or self.clock.now()
        with get_db_context(self.session_factory) as session:
            stmt = select(SpinHistory.id, SpinHistory.user_id).where(SpinHistory.applied.is_(False)).order_by(SpinHistory.id)
            if user_id is not None:
                stmt = stmt.where(SpinHistory.user_id == user_id)
            pending = session.execute(stmt).all()

        pending_by_user: Dict[int, List[int]] = {}
        for history_id, owner_id in pending:
            pending_by_user.setdefault(owner_id, []).append(history_id)

        applied = 0
        for owner_id, history_ids in pending_by_user.items():
            if not lock_held:
                def _lock(uid=owner_id):
                    with get_db_context(self.session_factory) as session:
                        return self._take_lock(session, uid, now)

                if not await with_retry(_lock, description=f"lock account {owner_id} for reconcile"):
                    logger.info(f"Skipping reconcile for user {owner_id}: spin in progress")
                    continue

            try:
                for history_id in history_ids:
                    def _run(hid=history_id):
                        with get_db_context(self.session_factory) as session:
                            return self._apply(session, hid, now)

                    if await with_retry(_run, description=f"reconcile spin {history_id}") is not None:
                        applied += 1
                        logger.warning(f"Reconciled unapplied spin {history_id}")
            finally:
                if not lock_held:
                    self._release(owner_id, now)
        return applied

    # ==================== SPIN ====================

    def _resolve_and_record(self, session: Session, user_id: int, now: datetime) -> int:
        account = self.economy.load_account(session, user_id)
        if account.available_spins <= 0:
            raise NoSpinsAvailableError(user_id)

        symbols = self.roll_symbols()
        match_kind, prize = self.classify(symbols)
        multiplier = account.streak_multiplier
        value = self.final_value(prize, multiplier)
        doubled = prize.type in COIN_PRIZES and self.economy.double_coins_active(session, user_id, now)

        history = SpinHistory(
            user_id=user_id,
            symbols=symbols,
            match_kind=match_kind.value,
            prize_type=prize.type,
            base_value=prize.value,
            prize_value=value,
            prize_name=self.prize_name(prize, value, multiplier),
            badge_type=prize.badge,
            coins_doubled=doubled,
            applied=False,
            created_at=now,
        )
        session.add(history)
        session.flush()
        return history.id

    async def spin(self, user_id: int, now: Optional[datetime] = None) -> SpinResult:
        """
        Spin the slot machine for a user.

        Raises:
            NoSpinsAvailableError: no spins left, or a spin is already in flight
        """
        now = now or self.clock.now()

        def _lock():
            with get_db_context(self.session_factory) as session:
                self._acquire(session, user_id, now)

        try:
            await with_retry(_lock, description=f"acquire spin lock for user {user_id}")
        except NoSpinsAvailableError as e:
            logger.info(f"Spin rejected: {e}")
            raise

        try:
            await self.reconcile_unapplied(user_id=user_id, now=now, lock_held=True)

            def _record():
                with get_db_context(self.session_factory) as session:
                    return self._resolve_and_record(session, user_id, now)

            history_id = await with_retry(_record, description=f"record spin for user {user_id}")

            def _finish():
                with get_db_context(self.session_factory) as session:
                    outcome = self._apply(session, history_id, now)
                    if outcome is None:
                        return None
                    history, account, applied = outcome
                    return self._result(history, account, applied)

            result = await with_retry(_finish, description=f"apply spin {history_id}")
        finally:
            self._release(user_id, now)

        if result is None:
            # Applied concurrently by a reconciliation pass
            with get_db_context(self.session_factory) as session:
                history = session.get(SpinHistory, history_id)
                account = self.economy.load_account(session, user_id)
                result = self._result(history, account, AppliedPrize())

        logger.info(f"User {user_id} spun {' '.join(result.symbols)} -> {result.prize_name}")
        return result

    def _result(self, history: SpinHistory, account: RewardAccount, applied: AppliedPrize) -> SpinResult:
        return SpinResult(
            spin_id=history.id,
            symbols=list(history.symbols),
            match_kind=history.match_kind,
            prize_type=history.prize_type,
            base_value=history.base_value,
            prize_value=history.prize_value,
            prize_name=history.prize_name,
            coins_credited=applied.coins_credited,
            coins_doubled=history.coins_doubled,
            milestone=applied.milestone,
            badges=applied.badges,
            coins=account.coins,
            available_spins=account.available_spins,
            streak_multiplier=account.streak_multiplier,
            streak_shield_active=account.streak_shield_active,
            streak_shield_expires_at=account.streak_shield_expires_at,
        )

    def history(self, session: Session, user_id: int, limit: int = 20) -> List[SpinHistory]:
        stmt = (
            select(SpinHistory)
            .where(SpinHistory.user_id == user_id)
            .order_by(SpinHistory.id.desc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

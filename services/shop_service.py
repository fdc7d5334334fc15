"""
Shop Service
Coin purchases, time-limited power-ups and cosmetic equipping
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from database import SessionFactory, get_db_context
from exceptions import ConflictError, InsufficientCoinsError, NotFoundError, ValidationError
from models import COSMETIC_CATEGORIES, InventoryItem, ShopCategory, ShopItem
from services.dose_ledger import with_retry
from services.streak_economy import StreakEconomyManager, streak_economy
from tools.clock import system_clock


logger = logging.getLogger(__name__)

TRIPLE_SPINS_ITEM = "triple_spins"
SHIELD_ITEM_PREFIX = "shield_"


@dataclass
class PurchaseResult:
    inventory_id: int
    item_type: str
    price: int
    expires_at: Optional[datetime]
    coins_balance: int
    spins_balance: int
    shield_expires_at: Optional[datetime] = None


@dataclass
class EquipResult:
    inventory_id: int
    item_type: str
    category: str
    is_equipped: bool = True


class ShopService:
    """Spends coins; balances never go negative"""

    def __init__(self, session_factory: Optional[SessionFactory] = None, economy: Optional[StreakEconomyManager] = None, clock=None):
        self.session_factory = session_factory
        self.economy = economy or streak_economy
        self.clock = clock or system_clock

    def list_items(self, session: Session) -> List[ShopItem]:
        stmt = select(ShopItem).where(ShopItem.is_active.is_(True)).order_by(ShopItem.category, ShopItem.price)
        return list(session.execute(stmt).scalars())

    def inventory(self, session: Session, user_id: int, now: datetime) -> List[InventoryItem]:
        """Owned entries that have not expired"""
        stmt = (
            select(InventoryItem)
            .options(joinedload(InventoryItem.item))
            .where(
                InventoryItem.user_id == user_id,
                or_(InventoryItem.expires_at.is_(None), InventoryItem.expires_at > now),
            )
            .order_by(InventoryItem.purchased_at, InventoryItem.id)
        )
        return list(session.execute(stmt).scalars())

    def _owns_permanent(self, session: Session, user_id: int, item_type: str, now: datetime) -> bool:
        return any(entry.item.item_type == item_type for entry in self.inventory(session, user_id, now))

    def _purchase(self, session: Session, user_id: int, item_id: int, now: datetime) -> PurchaseResult:
        item = session.get(ShopItem, item_id)
        if item is None or not item.is_active:
            raise NotFoundError(f"Shop item {item_id} not found")

        cosmetic = item.category in COSMETIC_CATEGORIES
        if cosmetic and self._owns_permanent(session, user_id, item.item_type, now):
            raise ConflictError(f"User {user_id} already owns {item.item_type}")

        account = self.economy.get_or_create_account(session, user_id, now)
        if account.coins < item.price:
            raise InsufficientCoinsError(user_id, account.coins, item.price)
        account.coins = account.coins - item.price

        expires_at = now + timedelta(hours=item.duration_hours) if item.duration_hours else None
        entry = InventoryItem(
            user_id=user_id,
            item_id=item.id,
            purchased_at=now,
            expires_at=expires_at,
            is_equipped=False,
            owned_key=f"{user_id}:{item.item_type}" if cosmetic else None,
        )
        session.add(entry)

        shield_expires_at = None
        if item.category == ShopCategory.POWERUP.value:
            if item.item_type.startswith(SHIELD_ITEM_PREFIX):
                shield_expires_at = self.economy.grant_shield(account, item.duration_hours or 24, now)
            elif item.item_type == TRIPLE_SPINS_ITEM:
                self.economy.add_spins(account, 3)

        try:
            session.flush()
        except IntegrityError as e:
            # a concurrent purchase inserted the same cosmetic first
            raise ConflictError(f"User {user_id} already owns {item.item_type}") from e
        return PurchaseResult(
            inventory_id=entry.id,
            item_type=item.item_type,
            price=item.price,
            expires_at=expires_at,
            coins_balance=account.coins,
            spins_balance=account.available_spins,
            shield_expires_at=shield_expires_at,
        )

    async def purchase(self, user_id: int, item_id: int, now: Optional[datetime] = None) -> PurchaseResult:
        """
        Buy a shop item with coins.

        Raises:
            NotFoundError: unknown or inactive item
            ConflictError: cosmetic already owned
            InsufficientCoinsError: balance below price
        """
        now = now or self.clock.now()

        def _run() -> PurchaseResult:
            with get_db_context(self.session_factory) as session:
                return self._purchase(session, user_id, item_id, now)

        result = await with_retry(_run, description=f"purchase item {item_id} for user {user_id}")
        logger.info(f"User {user_id} bought {result.item_type} for {result.price} coins")
        return result

    def equip(self, user_id: int, inventory_id: int, now: Optional[datetime] = None) -> EquipResult:
        """Equip a cosmetic; at most one equipped entry per category"""
        now = now or self.clock.now()
        with get_db_context(self.session_factory) as session:
            entry = session.get(InventoryItem, inventory_id)
            if entry is None or entry.user_id != user_id:
                raise NotFoundError(f"Inventory entry {inventory_id} not found for user {user_id}")
            if entry.expires_at is not None and entry.expires_at <= now:
                raise ValidationError(f"Inventory entry {inventory_id} has expired")

            category = entry.item.category
            if category not in COSMETIC_CATEGORIES:
                raise ValidationError(f"Items in category '{category}' cannot be equipped")

            same_category = select(InventoryItem.id).join(ShopItem).where(
                InventoryItem.user_id == user_id,
                ShopItem.category == category,
            )
            session.execute(
                update(InventoryItem)
                .where(InventoryItem.id.in_(same_category), InventoryItem.id != inventory_id)
                .values(is_equipped=False)
                .execution_options(synchronize_session=False)
            )
            entry.is_equipped = True
            session.flush()
            logger.info(f"User {user_id} equipped {entry.item.item_type} ({category})")
            return EquipResult(inventory_id=entry.id, item_type=entry.item.item_type, category=category)

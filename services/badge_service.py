"""
Badge Service
Idempotent achievement grants
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import RewardTables, get_reward_tables
from database import dialect_insert
from exceptions import UnknownBadgeError
from models import UserBadge
from services.dose_ledger import storage_errors


logger = logging.getLogger(__name__)


class BadgeAwarder:
    """Grants badges at most once per (user, badge type)"""

    def __init__(self, tables: Optional[RewardTables] = None):
        self.tables = tables or get_reward_tables()

    def _insert(self, session: Session, user_id: int, badge_type: str, now: datetime) -> bool:
        definition = self.tables.badges.get(badge_type)
        if definition is None:
            raise UnknownBadgeError(f"Unknown badge type: {badge_type}")

        stmt = dialect_insert(session, UserBadge).values(
            user_id=user_id,
            badge_type=badge_type,
            badge_name=definition.name,
            badge_description=definition.description,
            earned_at=now,
        ).on_conflict_do_nothing(index_elements=["user_id", "badge_type"])
        with storage_errors():
            return session.execute(stmt).rowcount > 0

    def award(self, session: Session, user_id: int, badge_type: str, now: datetime) -> List[str]:
        """
        Grant a badge; duplicates are silent no-ops.

        Derived badges are evaluated once after a regular badge is newly
        earned. Badges granted by that evaluation do not trigger another one.

        Returns:
            Badge types newly earned by this call
        """
        if not self._insert(session, user_id, badge_type, now):
            return []

        earned = [badge_type]
        logger.info(f"User {user_id} earned badge '{badge_type}'")

        if badge_type in self.tables.derived_badges:
            return earned

        held = self.count_regular(session, user_id)
        for derived_type, threshold in self.tables.derived_badges.items():
            if held >= threshold and self._insert(session, user_id, derived_type, now):
                earned.append(derived_type)
                logger.info(f"User {user_id} earned derived badge '{derived_type}' ({held} badges)")
        return earned

    def count_regular(self, session: Session, user_id: int) -> int:
        """Distinct badges held, not counting derived ones"""
        stmt = select(func.count(func.distinct(UserBadge.badge_type))).where(
            UserBadge.user_id == user_id,
            UserBadge.badge_type.notin_(list(self.tables.derived_badges)),
        )
        return session.execute(stmt).scalar_one()

    def has_badge(self, session: Session, user_id: int, badge_type: str) -> bool:
        stmt = select(UserBadge.id).where(UserBadge.user_id == user_id, UserBadge.badge_type == badge_type)
        return session.execute(stmt).first() is not None

    def list_badges(self, session: Session, user_id: int) -> List[UserBadge]:
        stmt = select(UserBadge).where(UserBadge.user_id == user_id).order_by(UserBadge.earned_at, UserBadge.id)
        return list(session.execute(stmt).scalars())


badge_awarder = BadgeAwarder()

"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

from typing import Generator, Optional
from fastapi import Query
from sqlalchemy.orm import Session

from database import SessionLocal, SessionFactory
from actions.alert_engine import MissedDoseDetector
from actions.reminder_engine import ReminderDispatcher
from services.adherence_service import AdherenceService
from services.badge_service import BadgeAwarder
from services.challenge_service import ChallengeTracker
from services.reward_service import RewardEngine
from services.shop_service import ShopService
from services.streak_economy import StreakEconomyManager
from tools.clock import system_clock
from tools.notification_service import NotificationTransport, notification_service


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency
    Yields a SQLAlchemy session and ensures cleanup
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def pagination_params(
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(20, ge=1, le=100, description="Max records to return")
) -> dict:
    """
    Common pagination parameters
    """
    return {"skip": skip, "limit": limit}


class ServiceContainer:
    """
    Wires services to one session factory, clock and transport.

    The app uses the module-level ``services`` instance; tests build their
    own and override ``get_services``.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        clock=None,
        transport: Optional[NotificationTransport] = None,
        rng=None,
    ):
        self.session_factory = session_factory
        self.clock = clock or system_clock
        self.transport = transport or notification_service

        self.badges = BadgeAwarder()
        self.economy = StreakEconomyManager(badges=self.badges)
        self.challenges = ChallengeTracker(session_factory=session_factory, economy=self.economy, clock=self.clock)
        self.adherence = AdherenceService(
            session_factory=session_factory,
            economy=self.economy,
            badges=self.badges,
            challenges=self.challenges,
            clock=self.clock,
        )
        self.rewards = RewardEngine(
            session_factory=session_factory,
            economy=self.economy,
            badges=self.badges,
            rng=rng,
            clock=self.clock,
        )
        self.shop = ShopService(session_factory=session_factory, economy=self.economy, clock=self.clock)
        self.reminders = ReminderDispatcher(session_factory=session_factory, transport=self.transport, clock=self.clock)
        self.missed = MissedDoseDetector(
            session_factory=session_factory,
            transport=self.transport,
            economy=self.economy,
            clock=self.clock,
        )


services = ServiceContainer()


def get_services() -> ServiceContainer:
    """Service container dependency"""
    return services

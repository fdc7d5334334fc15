"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for the Adherence & Reward Engine tests.
Fixtures include database sessions, a fixed clock, a recording notification
transport, sample catalog data and a wired service container.
"""

import os
import sys
import random
from datetime import datetime
from typing import Generator, Dict, Any, List, Optional

# Settings are read at import time; keep tests off the on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LEDGER_RETRY_BACKOFF_SECONDS", "0")
os.environ["APP_TZ"] = "UTC"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base
from models import (
    Medication, ScheduledDose, CaregiverRelationship, EmergencyContact, UserProfile,
    WeeklyChallenge, ShopItem, TimeOfDay, ChallengeType, ShopCategory
)
from api.deps import ServiceContainer, get_db, get_services
from tools.clock import FixedClock
from tools.notification_service import DeliveryResult, NotificationTransport
from app import app


PATIENT_ID = 1
CAREGIVER_ID = 7

# Monday 2024-06-03, before the morning dose
START = datetime(2024, 6, 3, 7, 0)


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory handed to services under test"""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session"""
    session = session_factory()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def fresh(session_factory):
    """Open a new session to read committed state"""
    def _open() -> Session:
        return session_factory()
    return _open


# ==================== CLOCK / TRANSPORT ====================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


class FakeTransport(NotificationTransport):
    """Records deliveries; recipients listed in ``failing`` get a failed result"""

    def __init__(self):
        self.pushes: List[Dict[str, Any]] = []
        self.sms: List[Dict[str, Any]] = []
        self.failing = set()

    async def send(self, user_id: int, title: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        if user_id in self.failing:
            return DeliveryResult(delivered=False, channel="push", error="device unreachable")
        self.pushes.append({"user_id": user_id, "title": title, "body": body, "metadata": metadata or {}})
        return DeliveryResult(delivered=True, channel="push", message_id=f"push_{len(self.pushes)}")

    async def send_sms(self, phone_number: str, body: str) -> DeliveryResult:
        if phone_number in self.failing:
            return DeliveryResult(delivered=False, channel="sms", error="carrier rejected")
        self.sms.append({"to": phone_number, "body": body})
        return DeliveryResult(delivered=True, channel="sms", message_id=f"sms_{len(self.sms)}")

    def pushes_to(self, user_id: int) -> List[Dict[str, Any]]:
        return [p for p in self.pushes if p["user_id"] == user_id]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


# ==================== SERVICES ====================

@pytest.fixture
def services(session_factory, clock, transport) -> ServiceContainer:
    """Service container wired to the test database, clock and transport"""
    return ServiceContainer(
        session_factory=session_factory,
        clock=clock,
        transport=transport,
        rng=random.Random(42),
    )


@pytest.fixture(scope="function")
def client(db_session: Session, services: ServiceContainer) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database and service overrides"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def test_medication(db_session: Session) -> Medication:
    """Create and return a test medication"""
    medication = Medication(user_id=PATIENT_ID, name="Metformin", strength="500mg", form="tablet", active=True)
    db_session.add(medication)
    db_session.add(UserProfile(user_id=PATIENT_ID, display_name="Maria"))
    db_session.commit()
    db_session.refresh(medication)
    return medication


@pytest.fixture
def morning_schedule(db_session: Session, test_medication: Medication) -> ScheduledDose:
    """Daily 08:00 morning dose"""
    schedule = ScheduledDose(
        user_id=PATIENT_ID,
        medication_id=test_medication.id,
        scheduled_time="08:00",
        time_of_day=TimeOfDay.MORNING.value,
        days_of_week=[],
        is_active=True,
    )
    db_session.add(schedule)
    db_session.commit()
    db_session.refresh(schedule)
    return schedule


@pytest.fixture
def evening_schedule(db_session: Session, test_medication: Medication) -> ScheduledDose:
    """Daily 20:00 evening dose"""
    schedule = ScheduledDose(
        user_id=PATIENT_ID,
        medication_id=test_medication.id,
        scheduled_time="20:00",
        time_of_day=TimeOfDay.EVENING.value,
        days_of_week=[],
        is_active=True,
    )
    db_session.add(schedule)
    db_session.commit()
    db_session.refresh(schedule)
    return schedule


@pytest.fixture
def caregiver(db_session: Session) -> int:
    """Caregiver who receives missed-dose alerts for the patient"""
    db_session.add(CaregiverRelationship(patient_id=PATIENT_ID, caregiver_id=CAREGIVER_ID, can_receive_alerts=True))
    db_session.add(CaregiverRelationship(patient_id=PATIENT_ID, caregiver_id=8, can_receive_alerts=False))
    db_session.commit()
    return CAREGIVER_ID


@pytest.fixture
def sms_contact(db_session: Session) -> EmergencyContact:
    contact = EmergencyContact(
        user_id=PATIENT_ID,
        name="Ana",
        phone="+15550001111",
        relationship_label="daughter",
        notify_on_missed_dose=True,
    )
    db_session.add(contact)
    db_session.commit()
    db_session.refresh(contact)
    return contact


@pytest.fixture
def weekly_challenges(db_session: Session) -> List[WeeklyChallenge]:
    challenges = [
        WeeklyChallenge(
            name="Morning Champion",
            description="Take 3 morning doses on time",
            challenge_type=ChallengeType.TIME_STREAK.value,
            time_of_day=TimeOfDay.MORNING.value,
            target_count=3,
            reward_coins=100,
            reward_spins=2,
        ),
        WeeklyChallenge(
            name="Early Riser",
            description="Take a dose early",
            challenge_type=ChallengeType.EARLY_DOSE.value,
            target_count=1,
            reward_coins=50,
            reward_spins=1,
        ),
    ]
    db_session.add_all(challenges)
    db_session.commit()
    for challenge in challenges:
        db_session.refresh(challenge)
    return challenges


@pytest.fixture
def shop_items(db_session: Session) -> Dict[str, ShopItem]:
    items = {
        "double_coins_24h": ShopItem(name="Double Coins", category=ShopCategory.POWERUP.value, item_type="double_coins_24h", price=200, duration_hours=24),
        "shield_24h": ShopItem(name="Streak Shield", category=ShopCategory.POWERUP.value, item_type="shield_24h", price=150, duration_hours=24),
        "triple_spins": ShopItem(name="Triple Spins", category=ShopCategory.POWERUP.value, item_type="triple_spins", price=100),
        "theme_ocean": ShopItem(name="Ocean Theme", category=ShopCategory.THEME.value, item_type="theme_ocean", price=300),
        "theme_forest": ShopItem(name="Forest Theme", category=ShopCategory.THEME.value, item_type="theme_forest", price=300),
    }
    db_session.add_all(items.values())
    db_session.commit()
    for item in items.values():
        db_session.refresh(item)
    return items


# ==================== MARKERS ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")

"""
Database Models
SQLAlchemy ORM models for the Adherence & Reward Engine
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Float, DateTime, ForeignKey, Text, Date,
    Index, UniqueConstraint, CheckConstraint, JSON
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum

from database import Base


# ==================== ENUMS ====================

class DoseStatus(str, PyEnum):
    """Status of a dose obligation"""
    PENDING = "pending"
    TAKEN = "taken"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"
    MISSED = "missed"


TERMINAL_STATUSES = (DoseStatus.TAKEN.value, DoseStatus.SKIPPED.value, DoseStatus.MISSED.value)
OPEN_STATUSES = (DoseStatus.PENDING.value, DoseStatus.SNOOZED.value)


class TimeOfDay(str, PyEnum):
    """Time-of-day bucket of a scheduled dose"""
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    BEDTIME = "bedtime"


class DispatchKind(str, PyEnum):
    """What a dispatch receipt proves was sent"""
    REMINDER = "reminder"
    MISSED_USER = "missed_user"
    MISSED_CAREGIVER = "missed_caregiver"
    MISSED_SMS = "missed_sms"


MISSED_ALERT_KINDS = (
    DispatchKind.MISSED_USER.value,
    DispatchKind.MISSED_CAREGIVER.value,
    DispatchKind.MISSED_SMS.value,
)


class DispatchStatus(str, PyEnum):
    """Lifecycle of a dispatch receipt"""
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class PrizeType(str, PyEnum):
    """Slot machine prize types"""
    COINS = "coins"
    MULTIPLIER = "multiplier"
    SHIELD = "shield"
    BADGE = "badge"
    BONUS_SPIN = "bonus_spin"
    JACKPOT = "jackpot"


class MatchKind(str, PyEnum):
    """Classification of a resolved symbol triple"""
    TRIPLE = "triple"
    PAIR = "pair"
    NONE = "none"


class ChallengeType(str, PyEnum):
    """Weekly challenge predicates"""
    TIME_STREAK = "time_streak"
    PERFECT_WEEK = "perfect_week"
    NO_SNOOZE = "no_snooze"
    EARLY_DOSE = "early_dose"


class ShopCategory(str, PyEnum):
    THEME = "theme"
    AVATAR = "avatar"
    POWERUP = "powerup"


COSMETIC_CATEGORIES = (ShopCategory.THEME.value, ShopCategory.AVATAR.value)


# ==================== MEDICATION CATALOG ====================

class UserProfile(Base):
    """Display data for a user (patients and caregivers)"""
    __tablename__ = "user_profiles"

    user_id = Column(Integer, primary_key=True)
    display_name = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)


class Medication(Base):
    """Medication owned by a user"""
    __tablename__ = "medications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    strength = Column(String(50))
    form = Column(String(50))  # tablet, capsule, ...
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    schedules = relationship("ScheduledDose", back_populates="medication", cascade="all, delete-orphan")


class ScheduledDose(Base):
    """Recurring schedule definition: one clock time on a set of weekdays"""
    __tablename__ = "scheduled_doses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False)

    scheduled_time = Column(String(5), nullable=False)  # "08:00"
    time_of_day = Column(String(20), nullable=False, default=TimeOfDay.MORNING.value)
    days_of_week = Column(JSON, default=list)  # 0 = Sunday .. 6 = Saturday, empty = every day
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    medication = relationship("Medication", back_populates="schedules")

    __table_args__ = (
        Index("ix_scheduled_doses_user_active", "user_id", "is_active"),
    )


class CaregiverRelationship(Base):
    """Caregiver linked to a patient"""
    __tablename__ = "caregiver_relationships"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False, index=True)
    caregiver_id = Column(Integer, nullable=False)
    can_receive_alerts = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("patient_id", "caregiver_id", name="uq_caregiver_pair"),
    )


class EmergencyContact(Base):
    """Contact reachable by SMS when a dose is missed"""
    __tablename__ = "emergency_contacts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False)
    relationship_label = Column(String(50))
    notify_on_missed_dose = Column(Boolean, default=True)


# ==================== DOSE LEDGER ====================

class DoseLog(Base):
    """Materialized dose obligation, one per schedule per scheduled instant"""
    __tablename__ = "dose_logs"

    id = Column(Integer, primary_key=True, index=True)
    scheduled_dose_id = Column(Integer, ForeignKey("scheduled_doses.id"), nullable=False)
    scheduled_for = Column(DateTime, nullable=False)

    user_id = Column(Integer, nullable=False)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False)
    time_of_day = Column(String(20))

    status = Column(String(20), nullable=False, default=DoseStatus.PENDING.value)
    action_at = Column(DateTime)
    snoozed_until = Column(DateTime)
    was_snoozed = Column(Boolean, default=False)
    was_on_time = Column(Boolean)
    was_early = Column(Boolean)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("scheduled_dose_id", "scheduled_for", name="uq_dose_natural_key"),
        Index("ix_dose_logs_status_scheduled", "status", "scheduled_for"),
        Index("ix_dose_logs_user_scheduled", "user_id", "scheduled_for"),
    )

    @property
    def natural_key(self):
        return (self.scheduled_dose_id, self.scheduled_for)


class DispatchReceipt(Base):
    """Durable proof that a notification leg was (or is being) sent"""
    __tablename__ = "dispatch_receipts"

    id = Column(Integer, primary_key=True, index=True)
    scheduled_dose_id = Column(Integer, nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    kind = Column(String(30), nullable=False)
    recipient = Column(String(50), nullable=False)  # "user:1", "caregiver:7", "contact:3"

    user_id = Column(Integer, nullable=False)
    destination = Column(String(50))  # phone number for SMS legs
    status = Column(String(20), nullable=False, default=DispatchStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    claimed_at = Column(DateTime)
    sent_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("scheduled_dose_id", "scheduled_for", "kind", "recipient", name="uq_dispatch_receipt"),
        Index("ix_dispatch_receipts_kind_status", "kind", "status"),
    )


# ==================== REWARD ECONOMY ====================

class RewardAccount(Base):
    """Per-user reward state; written under optimistic locking"""
    __tablename__ = "user_rewards"

    user_id = Column(Integer, primary_key=True)
    coins = Column(Integer, nullable=False, default=0)
    available_spins = Column(Integer, nullable=False, default=1)
    total_spins_used = Column(Integer, nullable=False, default=0)
    streak_multiplier = Column(Float, nullable=False, default=1.0)
    streak_shield_active = Column(Boolean, nullable=False, default=False)
    streak_shield_expires_at = Column(DateTime)
    last_spin_date = Column(Date)
    spin_locked_at = Column(DateTime)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("coins >= 0", name="ck_rewards_coins_non_negative"),
        CheckConstraint("available_spins >= 0", name="ck_rewards_spins_non_negative"),
        CheckConstraint("streak_multiplier >= 1.0 AND streak_multiplier <= 3.0", name="ck_rewards_multiplier_bounds"),
    )

    def shield_is_active(self, now: datetime) -> bool:
        if not self.streak_shield_active:
            return False
        return self.streak_shield_expires_at is None or self.streak_shield_expires_at > now


class AdherenceStreak(Base):
    """Consecutive adherent days"""
    __tablename__ = "adherence_streaks"

    user_id = Column(Integer, primary_key=True)
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_adherent_date = Column(Date)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SpinHistory(Base):
    """Resolved spin; written before the prize is applied"""
    __tablename__ = "spin_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    symbols = Column(JSON, nullable=False)
    match_kind = Column(String(10), nullable=False)
    prize_type = Column(String(20), nullable=False)
    base_value = Column(Float, nullable=False)
    prize_value = Column(Float, nullable=False)  # after the streak multiplier
    prize_name = Column(String(100))
    badge_type = Column(String(50))
    coins_doubled = Column(Boolean, nullable=False, default=False)

    applied = Column(Boolean, nullable=False, default=False)
    applied_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_spin_history_user_applied", "user_id", "applied"),
    )


class UserBadge(Base):
    """Earned achievement"""
    __tablename__ = "user_badges"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    badge_type = Column(String(50), nullable=False)
    badge_name = Column(String(100), nullable=False)
    badge_description = Column(Text)
    earned_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "badge_type", name="uq_user_badge"),
    )


class WeeklyChallenge(Base):
    """Challenge definition, reset every ISO week"""
    __tablename__ = "weekly_challenges"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    challenge_type = Column(String(30), nullable=False)
    target_count = Column(Integer, nullable=False)
    reward_coins = Column(Integer, nullable=False, default=0)
    reward_spins = Column(Integer, nullable=False, default=0)
    time_of_day = Column(String(20))
    is_active = Column(Boolean, default=True)


class UserChallenge(Base):
    """Weekly challenge progress for a user"""
    __tablename__ = "user_challenges"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    challenge_id = Column(Integer, ForeignKey("weekly_challenges.id"), nullable=False)
    week_start = Column(Date, nullable=False)

    current_progress = Column(Integer, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    reward_claimed = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime)

    challenge = relationship("WeeklyChallenge")

    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", "week_start", name="uq_user_challenge_week"),
        Index("ix_user_challenges_user_week", "user_id", "week_start"),
    )


class ShopItem(Base):
    """Item purchasable with coins"""
    __tablename__ = "shop_items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    category = Column(String(20), nullable=False)
    item_type = Column(String(50), nullable=False)
    price = Column(Integer, nullable=False)
    duration_hours = Column(Integer)
    is_active = Column(Boolean, default=True)


class InventoryItem(Base):
    """Owned shop item; time-limited effects carry an expiry"""
    __tablename__ = "user_inventory"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    item_id = Column(Integer, ForeignKey("shop_items.id"), nullable=False)
    purchased_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime)
    is_equipped = Column(Boolean, nullable=False, default=False)
    # "<user_id>:<item_type>" for cosmetics, NULL for repeatable power-ups
    owned_key = Column(String(120), unique=True)

    item = relationship("ShopItem")

    __table_args__ = (
        Index("ix_user_inventory_user", "user_id"),
    )

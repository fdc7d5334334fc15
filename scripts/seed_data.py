#!/usr/bin/env python
"""
Seed Data
Script to seed the database with a demo user, weekly challenges and shop items
"""

import sys
import os
import argparse
import logging
from typing import List

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func, select

from database import SessionLocal, init_db, drop_db
from models import (
    UserProfile, Medication, ScheduledDose, CaregiverRelationship, EmergencyContact,
    WeeklyChallenge, ShopItem, ChallengeType, ShopCategory, TimeOfDay,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEMO_USER_ID = 1
DEMO_CAREGIVER_ID = 2


def seed_demo_user(db) -> UserProfile:
    """Create the demo user with medications, schedules and contacts"""
    logger.info("Creating demo user...")

    existing = db.get(UserProfile, DEMO_USER_ID)
    if existing:
        logger.info("Demo user already exists")
        return existing

    profile = UserProfile(user_id=DEMO_USER_ID, display_name="John")
    db.add(profile)

    schedule_times = {
        ("Metformin", "500mg"): [("08:00", TimeOfDay.MORNING), ("18:00", TimeOfDay.EVENING)],
        ("Lisinopril", "20mg"): [("08:00", TimeOfDay.MORNING)],
        ("Atorvastatin", "40mg"): [("21:00", TimeOfDay.BEDTIME)],
    }

    for (name, strength), times in schedule_times.items():
        medication = Medication(user_id=DEMO_USER_ID, name=name, strength=strength, form="tablet", active=True)
        db.add(medication)
        db.flush()

        for scheduled_time, time_of_day in times:
            db.add(ScheduledDose(
                user_id=DEMO_USER_ID,
                medication_id=medication.id,
                scheduled_time=scheduled_time,
                time_of_day=time_of_day.value,
                days_of_week=[],
                is_active=True,
            ))
        logger.info(f"  Added: {name} {strength} at {', '.join(t for t, _ in times)}")

    db.add(CaregiverRelationship(patient_id=DEMO_USER_ID, caregiver_id=DEMO_CAREGIVER_ID, can_receive_alerts=True))
    db.add(EmergencyContact(
        user_id=DEMO_USER_ID,
        name="Jane Doe",
        phone="+15551234567",
        relationship_label="spouse",
        notify_on_missed_dose=True,
    ))
    db.flush()
    return profile


def seed_challenges(db) -> List[WeeklyChallenge]:
    """Add the weekly challenge catalog"""
    logger.info("Adding weekly challenges...")

    challenges_data = [
        ("Morning Champion", "Take 5 morning doses on time", ChallengeType.TIME_STREAK, 5, 100, 2, TimeOfDay.MORNING),
        ("Night Owl", "Take 5 bedtime doses on time", ChallengeType.TIME_STREAK, 5, 100, 2, TimeOfDay.BEDTIME),
        ("Perfect Week", "Seven perfect days in a row", ChallengeType.PERFECT_WEEK, 7, 300, 5, None),
        ("No Snooze", "Take 10 doses without snoozing", ChallengeType.NO_SNOOZE, 10, 150, 3, None),
        ("Early Riser", "Take 3 doses before their scheduled time", ChallengeType.EARLY_DOSE, 3, 75, 1, None),
    ]

    existing = {c.name for c in db.execute(select(WeeklyChallenge)).scalars()}
    created = []
    for name, description, challenge_type, target, coins, spins, time_of_day in challenges_data:
        if name in existing:
            continue
        challenge = WeeklyChallenge(
            name=name,
            description=description,
            challenge_type=challenge_type.value,
            target_count=target,
            reward_coins=coins,
            reward_spins=spins,
            time_of_day=time_of_day.value if time_of_day else None,
            is_active=True,
        )
        db.add(challenge)
        created.append(challenge)
        logger.info(f"  Added challenge: {name}")

    db.flush()
    return created


def seed_shop_items(db) -> List[ShopItem]:
    """Add power-ups and cosmetics"""
    logger.info("Adding shop items...")

    items_data = [
        ("Double Coins", "Double all coin rewards for 24 hours", ShopCategory.POWERUP, "double_coins_24h", 200, 24),
        ("Streak Shield", "Protect your streak from one missed day", ShopCategory.POWERUP, "shield_24h", 150, 24),
        ("Triple Spins", "Three extra spins", ShopCategory.POWERUP, "triple_spins", 100, None),
        ("Ocean Theme", "Calm blues for your dashboard", ShopCategory.THEME, "theme_ocean", 300, None),
        ("Forest Theme", "Deep greens for your dashboard", ShopCategory.THEME, "theme_forest", 300, None),
        ("Astronaut", "Explorer avatar", ShopCategory.AVATAR, "avatar_astronaut", 250, None),
        ("Wizard", "Spell-casting avatar", ShopCategory.AVATAR, "avatar_wizard", 250, None),
    ]

    existing = {i.item_type for i in db.execute(select(ShopItem)).scalars()}
    created = []
    for name, description, category, item_type, price, duration_hours in items_data:
        if item_type in existing:
            continue
        item = ShopItem(
            name=name,
            description=description,
            category=category.value,
            item_type=item_type,
            price=price,
            duration_hours=duration_hours,
            is_active=True,
        )
        db.add(item)
        created.append(item)
        logger.info(f"  Added item: {name} ({price} coins)")

    db.flush()
    return created


def count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def seed_all(clear_existing: bool = False):
    """Run all seed operations"""

    print("\n" + "="*60)
    print("Database Seeding")
    print("="*60)

    if clear_existing:
        drop_db()
    init_db()

    db = SessionLocal()

    try:
        seed_demo_user(db)
        db.commit()

        seed_challenges(db)
        db.commit()

        seed_shop_items(db)
        db.commit()

        print("\n" + "="*60)
        print("Seeding Complete!")
        print("="*60)
        print(f"\nDatabase Statistics:")
        print(f"  Medications: {count(db, Medication)}")
        print(f"  Scheduled Doses: {count(db, ScheduledDose)}")
        print(f"  Weekly Challenges: {count(db, WeeklyChallenge)}")
        print(f"  Shop Items: {count(db, ShopItem)}")
        print(f"\nDemo User ID: {DEMO_USER_ID}")

    except Exception as e:
        db.rollback()
        logger.error(f"Error during seeding: {e}")
        raise
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed the database with demo data"
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Drop all tables before seeding"
    )

    args = parser.parse_args()

    seed_all(clear_existing=args.clear)


if __name__ == "__main__":
    main()

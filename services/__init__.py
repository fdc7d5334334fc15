"""
Services Module
Business logic layer for the Adherence & Reward Engine
"""

from services.dose_ledger import DoseLedger, UpsertOutcome, dose_ledger, with_retry
from services.dose_state_machine import Actor, DoseStateMachine, TimingClassification, dose_state_machine
from services.dispatch_receipts import DispatchLeg, DispatchReceiptStore, dispatch_receipts
from services.catalog import MedicationCatalog, CaregiverDirectory, medication_catalog, caregiver_directory
from services.badge_service import BadgeAwarder, badge_awarder
from services.streak_economy import StreakEconomyManager, CoinCredit, streak_economy
from services.challenge_service import ChallengeTracker, ClaimResult, DoseEvent
from services.reward_service import RewardEngine, SpinResult
from services.shop_service import ShopService, PurchaseResult
from services.adherence_service import AdherenceService, DoseActionResult
from services.sweep_report import SweepReport


__all__ = [
    # Service classes
    "DoseLedger",
    "DoseStateMachine",
    "DispatchReceiptStore",
    "MedicationCatalog",
    "CaregiverDirectory",
    "BadgeAwarder",
    "StreakEconomyManager",
    "ChallengeTracker",
    "RewardEngine",
    "ShopService",
    "AdherenceService",
    # Result types
    "UpsertOutcome",
    "TimingClassification",
    "DispatchLeg",
    "CoinCredit",
    "ClaimResult",
    "DoseEvent",
    "SpinResult",
    "PurchaseResult",
    "DoseActionResult",
    "SweepReport",
    "Actor",
    # Helpers and singleton instances
    "with_retry",
    "dose_ledger",
    "dose_state_machine",
    "dispatch_receipts",
    "medication_catalog",
    "caregiver_directory",
    "badge_awarder",
    "streak_economy",
]

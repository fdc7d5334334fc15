"""
Reward Schemas
Pydantic models for reward account, spin, badge, challenge and shop endpoints
"""

from typing import Optional, List
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict


# ==================== ACCOUNT ====================

class RewardAccountResponse(BaseModel):
    """Reward account snapshot"""
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    coins: int
    available_spins: int
    total_spins_used: int
    streak_multiplier: float
    streak_shield_active: bool
    streak_shield_expires_at: Optional[datetime] = None
    last_spin_date: Optional[date] = None
    current_streak: int = 0
    longest_streak: int = 0
    double_coins_active: bool = False


class SpinResponse(BaseModel):
    """Resolved spin and the account state after it"""
    model_config = ConfigDict(from_attributes=True)

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
    badges: List[str] = []
    coins: int
    available_spins: int
    streak_multiplier: float
    streak_shield_active: bool
    streak_shield_expires_at: Optional[datetime] = None


class SpinHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    symbols: List[str]
    match_kind: str
    prize_type: str
    prize_value: float
    prize_name: Optional[str] = None
    applied: bool
    created_at: Optional[datetime] = None


class BadgeResponse(BaseModel):
    """Earned badge"""
    model_config = ConfigDict(from_attributes=True)

    badge_type: str
    badge_name: str
    badge_description: Optional[str] = None
    earned_at: Optional[datetime] = None


class BadgeList(BaseModel):
    user_id: int
    total: int
    badges: List[BadgeResponse]


# ==================== CHALLENGES ====================

class ChallengeProgressResponse(BaseModel):
    """Weekly challenge progress"""
    id: int
    challenge_id: int
    name: str
    description: Optional[str] = None
    challenge_type: str
    time_of_day: Optional[str] = None
    target_count: int
    current_progress: int
    is_completed: bool
    completed_at: Optional[datetime] = None
    reward_claimed: bool
    reward_coins: int
    reward_spins: int
    week_start: date


class ChallengeList(BaseModel):
    user_id: int
    week_start: date
    challenges: List[ChallengeProgressResponse]


class ClaimResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_challenge_id: int
    coins_awarded: int
    spins_awarded: int
    doubled: bool
    coins_balance: int
    spins_balance: int
    milestone: Optional[int] = None


# ==================== SHOP ====================

class PurchaseRequest(BaseModel):
    item_id: int = Field(..., gt=0)


class PurchaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    inventory_id: int
    item_type: str
    price: int
    expires_at: Optional[datetime] = None
    coins_balance: int
    spins_balance: int
    shield_expires_at: Optional[datetime] = None


class EquipRequest(BaseModel):
    inventory_id: int = Field(..., gt=0)


class EquipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    inventory_id: int
    item_type: str
    category: str
    is_equipped: bool


class ShopItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    category: str
    item_type: str
    price: int
    duration_hours: Optional[int] = None


class InventoryEntryResponse(BaseModel):
    """Owned, unexpired shop item"""
    id: int
    item_id: int
    item_type: str
    category: str
    purchased_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_equipped: bool

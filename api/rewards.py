"""
Rewards API Router
Endpoints for reward accounts, spins and badges
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.deps import get_db, get_services, pagination_params, ServiceContainer
from api.schemas.rewards import (
    RewardAccountResponse,
    SpinResponse,
    SpinHistoryEntry,
    BadgeResponse,
    BadgeList,
)


router = APIRouter(prefix="/rewards", tags=["rewards"])


@router.get("/{user_id}", response_model=RewardAccountResponse)
async def get_reward_account(
    user_id: int,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Get a user's reward account, creating it on first access"""
    now = services.clock.now()
    account = services.economy.get_or_create_account(db, user_id, now)
    db.commit()

    streak = services.adherence.get_streak(db, user_id)
    response = RewardAccountResponse.model_validate(account)
    response.current_streak = streak.current_streak if streak else 0
    response.longest_streak = streak.longest_streak if streak else 0
    response.double_coins_active = services.economy.double_coins_active(db, user_id, now)
    return response


@router.post("/{user_id}/spin", response_model=SpinResponse)
async def spin(
    user_id: int,
    services: ServiceContainer = Depends(get_services),
):
    """Spin the slot machine; 409 when no spin is available"""
    result = await services.rewards.spin(user_id)
    return SpinResponse.model_validate(result)


@router.get("/{user_id}/spins", response_model=list[SpinHistoryEntry])
async def get_spin_history(
    user_id: int,
    pagination: dict = Depends(pagination_params),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Most recent spins first"""
    entries = services.rewards.history(db, user_id, limit=pagination["skip"] + pagination["limit"])
    return [SpinHistoryEntry.model_validate(e) for e in entries[pagination["skip"]:]]


@router.get("/{user_id}/badges", response_model=BadgeList)
async def get_badges(
    user_id: int,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Earned badges, oldest first"""
    badges = services.badges.list_badges(db, user_id)
    return BadgeList(
        user_id=user_id,
        total=len(badges),
        badges=[BadgeResponse.model_validate(b) for b in badges],
    )

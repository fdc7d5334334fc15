"""
Challenges API Router
Endpoints for weekly challenge progress and reward claims
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_services, ServiceContainer
from api.schemas.rewards import ChallengeList, ChallengeProgressResponse, ClaimResponse
from services.challenge_service import week_start_for


router = APIRouter(prefix="/challenges", tags=["challenges"])


@router.get("", response_model=ChallengeList)
async def get_challenges(
    user_id: int = Query(..., gt=0),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """This week's challenges for a user"""
    now = services.clock.now()
    services.challenges.ensure_week(db, user_id, now)
    db.commit()

    rows = services.challenges.list_for_week(db, user_id, now)
    return ChallengeList(
        user_id=user_id,
        week_start=week_start_for(now),
        challenges=[
            ChallengeProgressResponse(
                id=row.id,
                challenge_id=row.challenge_id,
                name=row.challenge.name,
                description=row.challenge.description,
                challenge_type=row.challenge.challenge_type,
                time_of_day=row.challenge.time_of_day,
                target_count=row.challenge.target_count,
                current_progress=row.current_progress,
                is_completed=row.is_completed,
                completed_at=row.completed_at,
                reward_claimed=row.reward_claimed,
                reward_coins=row.challenge.reward_coins,
                reward_spins=row.challenge.reward_spins,
                week_start=row.week_start,
            )
            for row in rows
        ],
    )


@router.post("/{user_challenge_id}/claim", response_model=ClaimResponse)
async def claim_challenge_reward(
    user_challenge_id: int,
    services: ServiceContainer = Depends(get_services),
):
    """Claim a completed challenge's reward; 409 when already claimed"""
    result = await services.challenges.claim_reward(user_challenge_id)
    return ClaimResponse.model_validate(result)

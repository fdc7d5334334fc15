"""
API Module
FastAPI routers for the Adherence & Reward Engine
"""

from api.doses import router as doses_router
from api.rewards import router as rewards_router
from api.challenges import router as challenges_router
from api.shop import router as shop_router
from api.sweeps import router as sweeps_router

from api.deps import (
    get_db,
    get_services,
    pagination_params,
    services,
    ServiceContainer,
)


__all__ = [
    # Routers
    "doses_router",
    "rewards_router",
    "challenges_router",
    "shop_router",
    "sweeps_router",
    # Dependencies
    "get_db",
    "get_services",
    "pagination_params",
    "services",
    "ServiceContainer",
]


def include_routers(app, prefix: str = "/api/v1"):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(doses_router, prefix=prefix)
    app.include_router(rewards_router, prefix=prefix)
    app.include_router(challenges_router, prefix=prefix)
    app.include_router(shop_router, prefix=prefix)
    app.include_router(sweeps_router, prefix=prefix)

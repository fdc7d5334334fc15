"""
Adherence & Reward Engine Backend
Main FastAPI application: dose tracking, missed-dose alerting and rewards
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configuration and database
from config import settings
from database import init_db, DatabaseHealthCheck

from api import include_routers, services
from actions.sweep_scheduler import start_scheduler, shutdown_scheduler
from exceptions import (
    EngineError,
    ValidationError,
    NotFoundError,
    ConflictError,
    TransientStorageError,
    NoSpinsAvailableError,
    AlreadyClaimedError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


# ==================== LIFESPAN ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENV}")

    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    # Finish spins interrupted by a previous crash before serving requests
    reconciled = await services.rewards.reconcile_unapplied()
    if reconciled:
        logger.warning(f"Reconciled {reconciled} unapplied spins at startup")

    if settings.SCHEDULER_ENABLED:
        start_scheduler(services.reminders, services.missed, services.challenges)

    yield

    # Shutdown
    shutdown_scheduler()
    close = getattr(services.transport, "close", None)
    if close is not None:
        await close()
    logger.info(f"Shutting down {settings.APP_NAME}")


# ==================== APP INITIALIZATION ====================

app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## Adherence & Reward Engine API

    Tracks medication dose obligations and rewards adherence.

    ### Features
    - **Dose Ledger**: one record per scheduled dose, idempotent take / skip / snooze
    - **Reminders**: at most one pre-dose reminder per obligation
    - **Missed Doses**: grace-window detection with user, caregiver and SMS alerts
    - **Rewards**: slot spins, streak multipliers, shields, badges and weekly challenges
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Attach modular API routers (prefix /api/v1)
include_routers(app, prefix=settings.API_PREFIX)


# ==================== EXCEPTION HANDLERS ====================

def error_response(status_code: int, message: str, error_type: str = None) -> JSONResponse:
    content = {
        "error": True,
        "message": message,
        "status_code": status_code,
        "timestamp": datetime.utcnow().isoformat()
    }
    if error_type:
        content["type"] = error_type
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, exc.detail)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(404, str(exc), type(exc).__name__)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(422, str(exc), type(exc).__name__)


@app.exception_handler(NoSpinsAvailableError)
async def no_spins_handler(request: Request, exc: NoSpinsAvailableError):
    return error_response(409, str(exc), type(exc).__name__)


@app.exception_handler(AlreadyClaimedError)
async def already_claimed_handler(request: Request, exc: AlreadyClaimedError):
    return error_response(409, str(exc), type(exc).__name__)


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return error_response(409, str(exc), type(exc).__name__)


@app.exception_handler(TransientStorageError)
async def transient_storage_handler(request: Request, exc: TransientStorageError):
    logger.error(f"Storage unavailable: {exc}")
    return error_response(503, "Storage temporarily unavailable, retry later", type(exc).__name__)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.error(f"Unhandled engine error: {exc}")
    return error_response(400, str(exc), type(exc).__name__)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return error_response(500, "An unexpected error occurred" if not settings.DEBUG else str(exc))


# ==================== HEALTH ENDPOINTS ====================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - basic health check"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check endpoint"""
    db_connected = DatabaseHealthCheck.is_connected()

    return {
        "status": "healthy" if db_connected else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {
                "status": "up" if db_connected else "down",
                "type": "sqlite" if "sqlite" in settings.DATABASE_URL else "postgresql"
            },
            "scheduler": {
                "enabled": settings.SCHEDULER_ENABLED,
            },
            "sms": {
                "configured": bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN)
            }
        },
        "config": {
            "reminder_window_minutes": [settings.REMINDER_WINDOW_START_MINUTES, settings.REMINDER_WINDOW_END_MINUTES],
            "missed_grace_minutes": settings.MISSED_GRACE_MINUTES,
            "missed_lookback_minutes": settings.MISSED_LOOKBACK_MINUTES
        },
        "version": settings.APP_VERSION,
        "environment": settings.ENV
    }


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )

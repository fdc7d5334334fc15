"""
Configuration management for the Adherence & Reward Engine
"""

import json
import logging
from pathlib import Path
from typing import Optional, Dict, List
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings
from functools import lru_cache


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "AdherenceRewardEngine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"
    APP_TZ: str = "UTC"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./adherence_rewards.db"
    DATABASE_ECHO: bool = False

    # Periodic workers
    SCHEDULER_ENABLED: bool = True
    REMINDER_SWEEP_INTERVAL_MINUTES: int = 5
    MISSED_DOSE_SWEEP_INTERVAL_MINUTES: int = 5
    WEEKLY_ROLLOVER_CRON: str = "5 0 * * mon"

    # Dose timing (product constants, kept configurable)
    REMINDER_WINDOW_START_MINUTES: int = 5
    REMINDER_WINDOW_END_MINUTES: int = 15
    MISSED_GRACE_MINUTES: int = 30
    MISSED_LOOKBACK_MINUTES: int = 120
    SNOOZE_MINUTES: int = 10
    ON_TIME_WINDOW_MINUTES: int = 30
    EARLY_WINDOW_MINUTES: int = 5

    # Retry / locking
    LEDGER_RETRY_ATTEMPTS: int = 3
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.2
    DISPATCH_CLAIM_TIMEOUT_SECONDS: int = 300
    MAX_ALERT_ATTEMPTS: int = 3
    SPIN_LOCK_TIMEOUT_SECONDS: int = 60

    # Reward tables (JSON file overriding the defaults below)
    REWARD_TABLES_PATH: Optional[str] = None

    # Notifications
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    TWILIO_API_URL: str = "https://api.twilio.com/2010-04-01"

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# ==================== REWARD TABLES ====================

class PrizeDefinition(BaseModel):
    """One entry of the prize table"""
    type: str  # coins, multiplier, shield, badge, bonus_spin, jackpot
    value: float
    name: str
    badge: Optional[str] = None


class BadgeDefinition(BaseModel):
    name: str
    description: str
    icon: str = ""


class RewardTables(BaseModel):
    """
    Read-only reward economy configuration.

    Symbol weights: higher weight = more common. Triple prizes are keyed by
    symbol; "pair" and "none" cover the remaining outcomes.
    """
    symbol_weights: Dict[str, int] = Field(default_factory=lambda: {
        "pill": 30,
        "heart": 25,
        "star": 20,
        "trophy": 12,
        "diamond": 8,
        "target": 3,
        "fire": 2,
    })
    triple_prizes: Dict[str, PrizeDefinition] = Field(default_factory=lambda: {
        "pill": PrizeDefinition(type="coins", value=50, name="50 Coins!"),
        "heart": PrizeDefinition(type="coins", value=100, name="100 Coins!"),
        "star": PrizeDefinition(type="multiplier", value=1.5, name="1.5x Streak Multiplier!"),
        "trophy": PrizeDefinition(type="shield", value=24, name="24hr Streak Shield!"),
        "diamond": PrizeDefinition(type="bonus_spin", value=3, name="3 Bonus Spins!"),
        "target": PrizeDefinition(type="badge", value=1, name="Sharpshooter Badge!", badge="sharpshooter"),
        "fire": PrizeDefinition(type="jackpot", value=500, name="JACKPOT! 500 Coins!"),
    })
    pair_prize: PrizeDefinition = PrizeDefinition(type="coins", value=25, name="25 Coins")
    none_prize: PrizeDefinition = PrizeDefinition(type="coins", value=10, name="10 Coins")

    max_streak_multiplier: float = 3.0
    coin_milestones: List[int] = Field(default_factory=lambda: [500, 1000, 2500, 5000])

    starting_spins: int = 1
    dose_reward_spins: int = 1
    dose_reward_coins: int = 10
    perfect_day_spins: int = 2
    early_bird_target: int = 10
    high_roller_coins: int = 1000
    # streak day -> bonus spins; multiples of the last key repeat its bonus
    streak_bonus_spins: Dict[int, int] = Field(default_factory=lambda: {7: 3, 14: 5, 30: 10})

    badges: Dict[str, BadgeDefinition] = Field(default_factory=lambda: {
        "first_dose": BadgeDefinition(name="First Step", description="Took your first dose on time", icon="🌟"),
        "week_streak": BadgeDefinition(name="Week Warrior", description="7-day streak achieved", icon="🗓️"),
        "month_streak": BadgeDefinition(name="Monthly Master", description="30-day streak achieved", icon="📅"),
        "perfect_day": BadgeDefinition(name="Perfect Day", description="All doses on time in one day", icon="✨"),
        "early_bird": BadgeDefinition(name="Early Bird", description="Took 10 morning doses on time", icon="🐦"),
        "sharpshooter": BadgeDefinition(name="Sharpshooter", description="Won the sharpshooter jackpot", icon="🎯"),
        "high_roller": BadgeDefinition(name="High Roller", description="Accumulated 1000 coins", icon="💰"),
        "lucky_spin": BadgeDefinition(name="Lucky Spin", description="Won the grand jackpot", icon="🎰"),
        "collector": BadgeDefinition(name="Collector", description="Earned 5 different badges", icon="🏅"),
    })
    # derived badge -> number of distinct badges required
    derived_badges: Dict[str, int] = Field(default_factory=lambda: {"collector": 5})


def load_reward_tables(path: Optional[str] = None) -> RewardTables:
    """Load reward tables from a JSON file, falling back to defaults"""
    path = path or get_settings().REWARD_TABLES_PATH
    if not path:
        return RewardTables()

    raw = Path(path).read_text(encoding="utf-8")
    tables = RewardTables.model_validate(json.loads(raw))
    logger.info(f"Loaded reward tables from {path}")
    return tables


@lru_cache()
def get_reward_tables() -> RewardTables:
    """Get reward tables, loaded once per process"""
    return load_reward_tables()


settings = get_settings()

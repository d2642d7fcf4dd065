"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Reminisce configuration. All values come from environment variables."""

    # Master switch
    memory_enabled: bool = Field(default=True)

    # Database
    database_path: Path = Field(default=Path("data/reminisce.db"))

    # Turso (hosted libSQL); when set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Analyzer
    cache_complexity_threshold: int = Field(default=3)
    compound_complexity_threshold: int = Field(default=6)

    # Recall
    recall_confidence_threshold: float = Field(default=0.7)
    recall_limit: int = Field(default=10)
    template_similarity_threshold: float = Field(default=0.8)

    # Learning defaults
    default_confidence: float = Field(default=0.8)
    default_importance: float = Field(default=0.5)
    default_tier: str = Field(default="medium")

    # Tier time-to-live in days (0 means no expiry)
    short_tier_days: int = Field(default=3)
    medium_tier_days: int = Field(default=14)
    long_tier_days: int = Field(default=0)
    volatile_expiry_hours: int = Field(default=1)

    # Usage-based promotion (a unit moves up when either limit is exceeded)
    short_promotion_access_count: int = Field(default=5)
    short_promotion_age_days: int = Field(default=3)
    medium_promotion_access_count: int = Field(default=20)
    medium_promotion_age_days: int = Field(default=30)

    # Invalidation
    reduced_confidence: float = Field(default=0.5)

    # Context chain tracker
    context_max_age_minutes: int = Field(default=30)
    context_max_count: int = Field(default=100)

    # Decay scheduler
    expired_sweep_interval_seconds: int = Field(default=3600)
    stale_sweep_interval_seconds: int = Field(default=86400)
    stats_interval_seconds: int = Field(default=300)
    expired_confidence_floor: float = Field(default=0.3)
    downgrade_extension_days: int = Field(default=7)
    stale_after_days: int = Field(default=90)
    stale_confidence_threshold: float = Field(default=0.5)
    scheduler_timezone: str = Field(default="UTC")

    # Statistics
    high_confidence_threshold: float = Field(default=0.8)
    low_confidence_threshold: float = Field(default=0.5)
    estimated_ms_saved_per_hit: int = Field(default=250)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def tier_days(self, tier: str) -> int | None:
        """Return the default time-to-live for *tier* in days, or None for no expiry."""
        days = {
            "short": self.short_tier_days,
            "medium": self.medium_tier_days,
            "long": self.long_tier_days,
        }.get(tier, 0)
        return days or None


settings = Settings()

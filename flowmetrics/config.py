"""
Engine settings read from the environment with pydantic-settings.

Product rules that deployments may tune (rolling window, stale thresholds,
percentile target) live here next to the logging switches.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Date period resolution
    default_rolling_window_days: int = Field(
        default=30, ge=1, description="Fallback rolling window when no setting resolves"
    )
    default_timezone: str = Field(default="UTC", description="Timezone used when none is requested")
    default_aggregation: str = Field(
        default="week", description="Aggregation used when none is requested"
    )

    # Stale work thresholds (days since last change)
    stale_portfolio_days: int = Field(default=30, ge=0, description="Portfolio level threshold")
    stale_team_days: int = Field(default=7, ge=0, description="Team level threshold")
    stale_individual_contributor_days: int = Field(
        default=3, ge=0, description="Individual Contributor level threshold"
    )

    # Calculation windows
    percentile_target: int = Field(
        default=85, ge=1, le=100, description="Percentile used for lead time and WIP age"
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")

    @field_validator("default_aggregation")
    @classmethod
    def normalise_aggregation(cls, v: str) -> str:
        """Lower-case the configured aggregation."""
        return v.strip().lower()

    @property
    def stale_thresholds(self) -> dict[str, int]:
        """Stale thresholds keyed by work item type level."""
        return {
            "Portfolio": self.stale_portfolio_days,
            "Team": self.stale_team_days,
            "Individual Contributor": self.stale_individual_contributor_days,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()

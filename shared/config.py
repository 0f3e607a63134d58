"""
Shared configuration management for the entitlement reconciliation engine.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RECON_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment label")
    log_level: str = Field(default="info", description="Log level for structlog and stdlib logging")


class EngineConfig(BaseConfig):
    """Reconciliation engine settings."""

    # Identity
    multi_instance_product_codes: List[str] = Field(
        default_factory=lambda: ["IC-DATABRIDGE"],
        description="App product codes a tenant may hold several concurrent instances of"
    )

    # Expiration monitor
    expiration_window_days: int = Field(default=30, ge=0, description="Days ahead to look for expirations")
    expiration_lookback_years: int = Field(default=5, ge=1, description="Years of requests considered for extensions")

    # Package change analytics
    package_change_lookback_years: int = Field(default=2, ge=1, description="Years of requests aggregated")
    recent_changes_limit: int = Field(default=20, ge=0, description="Default cap for the recent changes feed")
    skip_overlapping_app_dates: bool = Field(default=True, description="Skip requests with overlapping app date ranges")
    collapse_repeated_transitions: bool = Field(default=True, description="Drop repeated transitions to the same package")


@lru_cache()
def get_config() -> EngineConfig:
    """Get the process-wide engine configuration."""
    return EngineConfig()

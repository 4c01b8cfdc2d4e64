"""Application configuration via Pydantic BaseSettings.

Settings are read once at the entry point. Governance components never call
get_settings() themselves -- they receive an immutable GovernanceConfig
built from Settings through their constructors.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class GovernanceConfig(BaseModel):
    """Checkpoint and auto-send limits consumed by the governance core.

    Frozen so that one value can be shared by every component of a run
    without any of them mutating it.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(
        default=True,
        description="Global switch; when False every checkpoint is a silent no-op",
    )
    offer_approval_threshold: float = Field(
        default=15000,
        ge=0,
        description="Offers at or above this amount require human approval",
    )
    viewing_requires_approval: bool = Field(
        default=True,
        description="Whether scheduling an in-person viewing requires approval",
    )
    max_auto_followups: int = Field(
        default=3,
        ge=0,
        description="Follow-ups the agent may send before a human must decide",
    )
    portfolio_exposure_alert: float | None = Field(
        default=None,
        ge=0,
        description="Alert threshold for total exposure across active deals (None disables)",
    )
    max_exchanges: int = Field(
        default=6,
        ge=1,
        description="Exchanges after which drafted messages are no longer auto-sent",
    )
    max_offer_fraction: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Fraction of the walk-away price above which offers are not auto-sent",
    )
    approval_ttl_hours: int | None = Field(
        default=None,
        ge=1,
        description="Lifetime of an approval request before it is considered expired",
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    DATABASE_URL: str = "sqlite:///data/carsearch.db"

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Governance checkpoints
    CHECKPOINTS_ENABLED: bool = True
    OFFER_APPROVAL_THRESHOLD: float = 15000
    VIEWING_REQUIRES_APPROVAL: bool = True
    MAX_AUTO_FOLLOWUPS: int = 3
    PORTFOLIO_EXPOSURE_ALERT: float | None = None
    APPROVAL_TTL_HOURS: int | None = None

    # Negotiation auto-send gate
    MAX_EXCHANGES: int = 6
    MAX_OFFER_FRACTION: float = 0.95

    def governance_config(self) -> GovernanceConfig:
        """Build the immutable configuration value injected into governance."""
        return GovernanceConfig(
            enabled=self.CHECKPOINTS_ENABLED,
            offer_approval_threshold=self.OFFER_APPROVAL_THRESHOLD,
            viewing_requires_approval=self.VIEWING_REQUIRES_APPROVAL,
            max_auto_followups=self.MAX_AUTO_FOLLOWUPS,
            portfolio_exposure_alert=self.PORTFOLIO_EXPOSURE_ALERT,
            max_exchanges=self.MAX_EXCHANGES,
            max_offer_fraction=self.MAX_OFFER_FRACTION,
            approval_ttl_hours=self.APPROVAL_TTL_HOURS,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance (entry points only)."""
    return Settings()

"""Core configuration settings.

Centralized configuration using Pydantic Settings for environment
variable management with sensible defaults.
"""

import logging
import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Security features:
    - Debug mode validation (cannot be True in production)
    - Automation credentials are never echoed in logs
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # =========================================================================
    # Environment Detection
    # =========================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
    )

    # Application
    app_name: str = "M365 Assessment Platform"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/assessment.db"

    # =========================================================================
    # Platform Automation Identity
    # =========================================================================

    # Service principal used to create app registrations in customer tenants.
    # Needs Application.ReadWrite.All on Microsoft Graph.
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    # Key Vault (for per-customer client secrets)
    key_vault_url: str | None = None

    # =========================================================================
    # Provisioning
    # =========================================================================

    consent_redirect_uri: str = Field(
        default="https://portal.azure.com/",
        alias="CONSENT_REDIRECT_URI",
    )
    app_registration_prefix: str = "M365-Security-Assessment"
    secret_validity_days: int = Field(default=730, alias="SECRET_VALIDITY_DAYS")
    # A Provisioning record older than this is left over from a dead attempt
    provisioning_stale_after_seconds: float = Field(
        default=900.0, alias="PROVISIONING_STALE_AFTER_SECONDS"
    )

    # =========================================================================
    # External Calls
    # =========================================================================

    retry_max_attempts: int = Field(default=4, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=1.0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=30.0, alias="RETRY_MAX_DELAY_SECONDS")
    external_call_timeout_seconds: float = Field(
        default=30.0, alias="EXTERNAL_CALL_TIMEOUT_SECONDS"
    )
    assessment_deadline_seconds: float | None = Field(
        default=120.0, alias="ASSESSMENT_DEADLINE_SECONDS"
    )

    # =========================================================================
    # Assessment Scoring
    # =========================================================================

    degraded_assessment_score: int = Field(default=0, alias="DEGRADED_ASSESSMENT_SCORE")
    # (utilization percentage strictly above, score) pairs
    license_score_thresholds: list[tuple[float, int]] = Field(
        default_factory=lambda: [(80.0, 85), (60.0, 75), (40.0, 65)],
        alias="LICENSE_SCORE_THRESHOLDS",
    )
    license_score_floor: int = Field(default=50, alias="LICENSE_SCORE_FLOOR")

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("environment", mode="before")
    @classmethod
    def detect_environment(cls, v: str | None) -> str:
        """Auto-detect environment from common environment variables."""
        if v:
            return v.lower()

        if os.getenv("PRODUCTION") or os.getenv("PROD"):
            return "production"
        if os.getenv("STAGING"):
            return "staging"

        return "development"

    @model_validator(mode="after")
    def validate_debug_mode(self):
        """CRITICAL: Prevent debug mode in production."""
        if self.environment == "production" and self.debug:
            logger.error(
                "CRITICAL SECURITY ERROR: DEBUG mode cannot be enabled in production! "
                "Set DEBUG=false or ENVIRONMENT=development"
            )
            raise ValueError("DEBUG cannot be True in production environment")
        return self

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("license_score_thresholds")
    @classmethod
    def sort_license_thresholds(
        cls, v: list[tuple[float, int]]
    ) -> list[tuple[float, int]]:
        """Order thresholds from highest to lowest utilization."""
        return sorted(v, key=lambda pair: pair[0], reverse=True)

    @field_validator("retry_max_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1")
        return v

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_configured(self) -> bool:
        """Check if the platform automation identity is configured."""
        return all([
            self.azure_tenant_id,
            self.azure_client_id,
            self.azure_client_secret,
        ])

    @property
    def vault_configured(self) -> bool:
        """Check if a Key Vault is configured for secret custody."""
        return bool(self.key_vault_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

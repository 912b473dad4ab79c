"""
Configuration module for the OIDC Bridge service.

This module uses Pydantic Settings to load and validate environment variables
for session JWT issuance, outbound HTTP behaviour towards the identity
provider, CORS and logging.

The OIDC provider configuration itself (issuer, client credentials, policy)
is runtime data owned by the ConfigStore and edited through the admin API;
it is not read from the environment.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # =========================================================================
    # Session JWT Configuration
    # =========================================================================

    SESSION_JWT_SECRET: str = Field(
        ...,
        description="Secret key for signing session JWTs (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm (HS256, HS384, or HS512)",
    )

    SESSION_JWT_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Session JWT expiry time in minutes",
        ge=5,
        le=1440,  # Max 24 hours
    )

    JWT_ISSUER: str = Field(
        default="oidc-bridge",
        description="Issuer claim written into (and required on) session JWTs",
    )

    # =========================================================================
    # Identity Provider HTTP Configuration
    # =========================================================================

    OIDC_HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for discovery, token, JWKS and userinfo requests",
        gt=0,
        le=120,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    APP_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the service",
    )

    APP_PORT: int = Field(
        default=8080,
        description="Port to bind the service",
        ge=1,
        le=65535,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """CORS origins from ALLOWED_ORIGINS; empty when CORS is off."""
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("SESSION_JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Validate JWT algorithm is one of the supported HMAC algorithms.

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Settings for the running process, read from the environment once.

    Raises:
        ValidationError: If SESSION_JWT_SECRET is missing or a value is invalid
    """
    return Settings()

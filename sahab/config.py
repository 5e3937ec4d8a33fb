"""
Configuration management for the Sahab billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Relational datastore configuration (SQLite bootstrap, PostgreSQL later)."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = Field(default="./data/sahab.db", description="Path to SQLite database file")
    busy_timeout_seconds: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="How long a writer waits for a competing transaction to finish",
    )
    seed_plans_on_startup: bool = Field(
        default=True, description="Insert the reference plan catalog at startup if missing"
    )


class PaymobConfig(BaseSettings):
    """
    Paymob payment gateway configuration.

    Security: API key and HMAC secret are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="PAYMOB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Paymob merchant API key")
    integration_id: str = Field(default="", description="Card payment integration id")
    iframe_id: str = Field(default="", description="Hosted payment iframe id")
    hmac_secret: str = Field(default="", description="Shared secret for webhook HMAC")

    base_url: str = Field(
        default="https://accept.paymobsolutions.com/api",
        description="Paymob REST API base URL",
    )
    iframe_base_url: str = Field(
        default="https://accept.paymobsolutions.com/api/acceptance/iframes",
        description="Base URL of the hosted payment iframe",
    )
    currency: str = Field(default="EGP", min_length=3, max_length=3)

    request_timeout_seconds: float = Field(
        default=15.0, ge=1.0, le=120.0, description="Timeout for every gateway call"
    )
    auth_token_ttl_seconds: int = Field(
        default=50 * 60,
        ge=60,
        le=60 * 60,
        description="How long a gateway auth token is reused (Paymob tokens live 1 hour)",
    )
    auth_max_retries: int = Field(
        default=3, ge=1, le=5, description="Attempts for the idempotent auth call"
    )

    # Deliveries without a signature header are accepted (with a warning) unless set
    require_signature: bool = Field(
        default=False, description="Reject webhook deliveries that carry no HMAC"
    )

    @field_validator("api_key", "hmac_secret")
    @classmethod
    def validate_secret_security(cls, v: str, info) -> str:
        """
        Security: Validate secret format and prevent common mistakes.

        Never expose secrets in logs or errors.
        """
        if not v:
            return ""

        placeholder_patterns = [
            "your-api-key-here",
            "your-hmac-secret",
            "example",
            "dummy",
            "changeme",
        ]

        v_lower = v.lower()
        if any(pattern in v_lower for pattern in placeholder_patterns):
            logging.warning(
                f"PAYMOB {info.field_name} appears to be a placeholder - payments will be disabled"
            )
            return ""

        return v

    @property
    def is_configured(self) -> bool:
        """Check if enough credentials are present to open payment sessions."""
        return bool(self.api_key and self.integration_id and self.iframe_id)


class IdentityConfig(BaseSettings):
    """Identity provider configuration (session token verification + backend API)."""

    model_config = SettingsConfigDict(
        env_prefix="IDENTITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_url: str = Field(
        default="https://api.clerk.com/v1", description="Identity provider backend API"
    )
    secret_key: str = Field(default="", description="Backend API secret key")

    jwt_key: str = Field(
        default="",
        description="Key used to verify session tokens (PEM public key or shared secret)",
    )
    jwt_algorithms: str = Field(
        default="RS256", description="Comma-separated list of accepted JWT algorithms"
    )
    jwt_issuer: str | None = Field(default=None, description="Expected token issuer")
    token_cache_ttl_seconds: int = Field(default=300, ge=0, le=3600)
    token_cache_max_size: int = Field(default=10_000, ge=1)

    request_timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)

    @property
    def algorithms_list(self) -> list[str]:
        """Parse comma-separated algorithms into list."""
        return [alg.strip() for alg in self.jwt_algorithms.split(",") if alg.strip()]

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


class QuotaConfig(BaseSettings):
    """Quota accounting policy."""

    model_config = SettingsConfigDict(env_prefix="QUOTA_")

    video_transformation_units: int = Field(
        default=3,
        ge=0,
        le=100,
        description="Transformation units reserved by one video upload (derived renditions)",
    )
    warning_threshold_percent: float = Field(default=80.0, ge=0.0, le=100.0)
    critical_threshold_percent: float = Field(default=95.0, ge=0.0, le=100.0)

    analytics_default_months: int = Field(default=6, ge=1, le=24)
    analytics_max_months: int = Field(default=24, ge=1, le=120)

    subscription_period_months: int = Field(
        default=1, ge=1, le=12, description="Length of one paid subscription period"
    )

    @field_validator("critical_threshold_percent")
    @classmethod
    def validate_thresholds(cls, v: float, info) -> float:
        """Critical threshold must not be below the warning threshold."""
        warning = info.data.get("warning_threshold_percent")
        if warning is not None and v < warning:
            raise ValueError(
                f"critical_threshold_percent ({v}) must be >= "
                f"warning_threshold_percent ({warning})"
            )
        return v


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    # Request size limits (DoS protection)
    max_request_body_size: int = Field(
        default=1 * 1024 * 1024,  # 1MB, bodies are JSON only
        ge=1024,
        description="Maximum request body size in bytes (default: 1MB)",
    )

    frontend_url: str = Field(
        default="http://localhost:3000",
        description="Base URL used for notification action links",
    )


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_")

    allowed_origins: str = Field(
        default="*", description="Comma-separated list of allowed origins (* for all, ONLY for dev)"
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,PATCH,DELETE,OPTIONS")
    allowed_headers: str = Field(default="*")
    max_age: int = Field(default=600, ge=0, description="Preflight cache duration in seconds")

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    @property
    def headers_list(self) -> list[str]:
        if self.allowed_headers == "*":
            return ["*"]
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(default=False, description="Colorize console output (development)")

    slow_request_warning_ms: float = Field(default=250.0, ge=0.0)
    slow_request_error_ms: float = Field(default=2000.0, ge=0.0)

    # Service metadata (injected into all logs)
    service_name: str = Field(default="sahab-billing")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class RateLimitConfig(BaseSettings):
    """Per-user rate limits for expensive endpoints."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    enabled: bool = Field(default=True)
    payment_initiate: str = Field(
        default="10/minute", description="slowapi limit string for POST /payment/initiate"
    )


class Settings(BaseSettings):
    """Root configuration for the Sahab billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    paymob: PaymobConfig = Field(default_factory=PaymobConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.paymob.is_configured:
            logging.warning("Paymob credentials not configured - payment initiation will fail")

        if not self.paymob.hmac_secret:
            logging.warning(
                "PAYMOB_HMAC_SECRET not configured - webhook signatures cannot be verified"
            )
        elif not self.paymob.require_signature:
            logging.warning(
                "Unsigned webhook deliveries are accepted - set PAYMOB_REQUIRE_SIGNATURE=true "
                "once the gateway is configured to sign callbacks"
            )

        if not self.identity.jwt_key:
            logging.warning("IDENTITY_JWT_KEY not configured - all authenticated calls will fail")

        if not self.identity.is_configured:
            logging.warning(
                "IDENTITY_SECRET_KEY not configured - subscription metadata will not propagate"
            )

        if self.quota.analytics_default_months > self.quota.analytics_max_months:
            logging.warning(
                f"analytics_default_months ({self.quota.analytics_default_months}) exceeds "
                f"analytics_max_months ({self.quota.analytics_max_months}) - it will be clamped"
            )

        if self.logging.environment == "production" and "*" in self.cors.origins_list:
            logging.warning("CORS allows all origins in production")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment (tests)."""
    global _settings
    _settings = None

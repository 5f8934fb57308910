"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


# Namespace defaults used when configured values are missing or invalid
DEFAULT_PROCESSING_LIMIT = 10
DEFAULT_HEALTH_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 60 * 60

REDIS_URL_SCHEMES = ("redis", "rediss", "unix")


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    """Build rate limit settings from environment."""

    return RateLimitSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    """Build logging settings from environment."""

    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key: str | None = Field(
        None,
        description="Shared secret required by the public processing API",
        validation_alias=AliasChoices("APP_API_KEY", "API_KEY"),
    )
    max_dimension_px: int = Field(
        10000,
        description="Upper bound for chunkHeight and resizeWidth in pixels",
        ge=1,
    )
    image_fetch_timeout_seconds: float = Field(
        15.0,
        description="Timeout for each image download attempt in seconds",
        gt=0,
    )
    image_fetch_retry_delay_seconds: float = Field(
        1.0,
        description="Pause between image download attempts in seconds",
        ge=0,
    )
    image_processing_timeout_seconds: float = Field(
        60.0,
        description="Timeout for decoding, resizing and slicing one image",
        gt=0,
    )
    cors_allowed_origins: str = Field(
        "http://localhost:3001",
        description="Comma-separated list of origins allowed by CORS",
    )
    cors_allow_origin_regex: str | None = Field(
        r"https://.*\.vercel\.app",
        description="Optional regex of additional origins allowed by CORS",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
        populate_by_name=True,
    )


class RateLimitSettings(BaseSettings):
    """Rate limiting configuration for the processing and health namespaces.

    Limits and windows are validated leniently: a missing, non-numeric or
    non-positive value is replaced by the namespace default instead of failing
    startup or producing a limit that would deny all traffic.

    The remote counter store is used only when both ``redis_url`` and
    ``redis_token`` are set. The Upstash REST variable names are accepted too,
    but the store speaks the Redis protocol: an ``https://`` REST endpoint is
    dropped with a warning and the in-process store is used.
    """

    enabled: bool = Field(
        True,
        description="Enable per-client rate limiting",
    )
    processing_limit: int = Field(
        DEFAULT_PROCESSING_LIMIT,
        description="Maximum processing requests per window (per client)",
        validation_alias=AliasChoices("RATE_LIMIT_PROCESSING_LIMIT", "RATE_LIMIT_PER_HOUR"),
    )
    processing_window_seconds: int = Field(
        DEFAULT_WINDOW_SECONDS,
        description="Processing window size in seconds",
    )
    health_limit: int = Field(
        DEFAULT_HEALTH_LIMIT,
        description="Maximum health check requests per window (per client)",
        validation_alias=AliasChoices(
            "RATE_LIMIT_HEALTH_LIMIT", "HEALTH_CHECK_RATE_LIMIT_PER_HOUR"
        ),
    )
    health_window_seconds: int = Field(
        DEFAULT_WINDOW_SECONDS,
        description="Health check window size in seconds",
    )
    redis_url: str | None = Field(
        None,
        description="Connection URL of the shared Redis-protocol counter store",
        validation_alias=AliasChoices(
            "RATE_LIMIT_REDIS_URL", "UPSTASH_REDIS_URL", "UPSTASH_REDIS_REST_URL"
        ),
    )
    redis_token: str | None = Field(
        None,
        description="Auth token (password) for the shared counter store",
        validation_alias=AliasChoices(
            "RATE_LIMIT_REDIS_TOKEN", "UPSTASH_REDIS_TOKEN", "UPSTASH_REDIS_REST_TOKEN"
        ),
    )
    redis_timeout_seconds: float = Field(
        2.0,
        description="Upper bound for each counter store call in seconds",
        gt=0,
    )
    key_prefix: str = Field(
        "ratelimit",
        description="Prefix for counter keys in the shared store",
    )
    fail_open: bool = Field(
        True,
        description="Forward requests when the limiter itself fails unexpectedly",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
        populate_by_name=True,
    )

    @field_validator(
        "processing_limit",
        "processing_window_seconds",
        "health_limit",
        "health_window_seconds",
        mode="before",
    )
    @classmethod
    def _fallback_to_namespace_default(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(value).strip())
        except (TypeError, ValueError):
            parsed = 0

        if parsed < 1:
            logger.warning(
                "config.invalid_rate_limit_value",
                extra={
                    "field": info.field_name,
                    "configured": str(value)[:32],
                    "default": default,
                },
            )
            return default
        return parsed

    @field_validator("redis_url", mode="before")
    @classmethod
    def _require_redis_protocol_url(cls, value: Any) -> str | None:
        if value is None or not str(value).strip():
            return None
        url = str(value).strip()
        try:
            scheme = urlsplit(url).scheme.lower()
        except ValueError:
            scheme = ""
        if scheme not in REDIS_URL_SCHEMES:
            # Upstash REST endpoints (https://...) do not speak the Redis protocol
            logger.warning(
                "config.unsupported_redis_url",
                extra={
                    "scheme": scheme or None,
                    "supported": ", ".join(REDIS_URL_SCHEMES),
                    "hint": "use the rediss:// endpoint of the Upstash database",
                },
            )
            return None
        return url

    @property
    def remote_configured(self) -> bool:
        """Whether connection parameters for the shared store are present."""
        return bool(self.redis_url and self.redis_token)


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()

"""Configuration module for BuildPilot settings.

Settings are read from ``BUILDPILOT_*`` environment variables (and an optional
``.env`` file). Components never read the environment directly; they take
explicit arguments and expose ``from_settings()`` constructors instead.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDPILOT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Job queue
    queue_concurrency: int = Field(default=2, ge=1)
    queue_default_max_attempts: int = Field(default=3, ge=1)
    queue_job_timeout_seconds: float = Field(default=600.0, gt=0)
    queue_retention_seconds: float = Field(default=86400.0, gt=0)

    # Circuit breaker guarding the AI generation phase
    generation_breaker_failure_threshold: int = Field(default=3, ge=1)
    generation_breaker_reset_timeout_seconds: float = Field(default=60.0, gt=0)
    generation_breaker_request_timeout_seconds: float = Field(default=120.0, gt=0)

    # Retry backoff
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    # Device cloud
    device_cloud_poll_interval_seconds: float = Field(default=10.0, gt=0)
    device_cloud_session_timeout_seconds: float = Field(default=600.0, gt=0)
    device_cloud_default_provider: Optional[str] = None

    # Provider credentials; a provider without credentials is simply not registered
    browserstack_username: Optional[str] = None
    browserstack_access_key: Optional[str] = None
    browserstack_project: str = "buildpilot"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-west-2"
    aws_device_farm_project_arn: Optional[str] = None
    firebase_project_id: Optional[str] = None
    firebase_service_account_key: Optional[str] = None
    maestro_cloud_api_key: Optional[str] = None
    sauce_username: Optional[str] = None
    sauce_access_key: Optional[str] = None
    sauce_region: Literal["us-west-1", "eu-central-1"] = "us-west-1"
    lambdatest_username: Optional[str] = None
    lambdatest_access_key: Optional[str] = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["text", "json"] = "text"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process settings, loading them on first use."""
    return Settings()

"""
Configuration management for ratequeue.

Supports environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ratequeue.queue.rate_limiter import AdmissionMode, RateLimitConfig


class QueueSettings(BaseSettings):
    """Queue and logging settings."""

    model_config = SettingsConfigDict(
        env_prefix="RATEQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Admission
    max_requests_per_minute: int = Field(default=60, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)
    admission_mode: AdmissionMode = AdmissionMode.RESERVED

    # Status reporting
    report_interval_seconds: float = Field(default=60.0, gt=0)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v

    def to_rate_limit_config(self) -> RateLimitConfig:
        """Build the immutable queue configuration."""
        return RateLimitConfig(
            max_requests_per_minute=self.max_requests_per_minute,
            window_seconds=self.window_seconds,
            report_interval_seconds=self.report_interval_seconds,
            admission_mode=self.admission_mode,
        )


@lru_cache()
def get_settings() -> QueueSettings:
    """Get cached settings."""
    return QueueSettings()

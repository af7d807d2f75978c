"""
Configuration management.

Centralized environment variable management and validation.
"""

from typing import Literal, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from shared.errors import ConfigError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # Allow case-insensitive env var matching
        extra="ignore"
    )

    # Environment
    environment: Literal["development", "staging", "production", "test"] = "development"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    # LOG_FILE: Optional path for a rotating JSON log file (stdout only when unset)
    log_file: Optional[str] = None

    # Persistence
    # PERSISTENCE_BACKEND: "memory" keeps workflows/jobs in-process, "redis" makes them durable
    persistence_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379"
    redis_key_prefix: str = "scriptflow:"

    # Job scheduler
    job_batch_size: int = 3
    job_batch_delay_seconds: float = 1.0
    job_retention_hours: float = 24.0
    # Failed jobs are kept for diagnostics; the durable backend expires them after this TTL
    failed_job_ttl_hours: float = 168.0
    job_cleanup_interval_minutes: float = 30.0

    # Job poll loops (workflow steps waiting on jobs)
    image_poll_interval_seconds: float = 5.0
    video_poll_interval_seconds: float = 10.0
    image_poll_initial_delay_seconds: float = 3.0
    video_poll_initial_delay_seconds: float = 5.0
    job_poll_max_attempts: int = 720

    # Narration integrity gate
    min_audio_bytes: int = 1000
    audio_duration_tolerance_seconds: float = 1.0

    # Persistence retry policy
    persistence_max_attempts: int = 2
    persistence_base_delay_seconds: float = 0.5
    rate_limit_backoff_multiplier: float = 4.0

    # Event channels
    event_queue_size: int = 100

    # Step defaults
    default_voice: str = "alloy"
    default_audio_model: str = "gpt-4o-mini-tts"
    default_style: str = "cinematic"

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v:
            raise ConfigError("REDIS_URL is required")
        if not v.startswith(("redis://", "rediss://")):
            raise ConfigError("REDIS_URL must start with redis:// or rediss://")
        return v

    @field_validator("job_batch_size", "job_poll_max_attempts", "persistence_max_attempts", "event_queue_size")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Counts and sizes must be at least 1."""
        if v < 1:
            raise ConfigError(f"Value must be >= 1, got {v}")
        return v

    @field_validator(
        "job_batch_delay_seconds",
        "image_poll_interval_seconds",
        "video_poll_interval_seconds",
        "image_poll_initial_delay_seconds",
        "video_poll_initial_delay_seconds",
        "persistence_base_delay_seconds",
    )
    @classmethod
    def validate_non_negative_delay(cls, v: float) -> float:
        """Delays cannot be negative."""
        if v < 0:
            raise ConfigError(f"Delay must be >= 0, got {v}")
        return v

    @field_validator("rate_limit_backoff_multiplier")
    @classmethod
    def validate_rate_limit_multiplier(cls, v: float) -> float:
        """Rate-limit backoff must be at least as long as the generic backoff."""
        if v < 1:
            raise ConfigError("RATE_LIMIT_BACKOFF_MULTIPLIER must be >= 1")
        return v

    @property
    def job_retention_seconds(self) -> float:
        return self.job_retention_hours * 3600

    @property
    def failed_job_ttl_seconds(self) -> int:
        return int(self.failed_job_ttl_hours * 3600)


# Singleton instance
try:
    settings = Settings()
except Exception as e:
    # Re-raise as ConfigError for consistency
    if isinstance(e, ConfigError):
        raise
    raise ConfigError(f"Failed to load configuration: {str(e)}") from e

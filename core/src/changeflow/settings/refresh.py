from datetime import timedelta
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from .base import ChangeFlowBaseSettings


class RefreshSettings(ChangeFlowBaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHANGEFLOW_REFRESH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum number of worker threads refreshing independent dynamic tables"
    )

    refresh_timeout_seconds: Optional[float] = Field(
        default=3600.0,
        gt=0,
        description="Budget for a single refresh; a refresh exceeding it is cancelled and retried next tick"
    )

    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum number of retry attempts for transient refresh failures"
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Initial delay between retry attempts in seconds"
    )
    max_retry_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=600.0,
        description="Upper bound for the exponential retry delay in seconds"
    )

    cancellation_check_interval: int = Field(
        default=1000,
        ge=1,
        description="Rows processed between cancellation checks during a refresh"
    )

    default_target_lag: timedelta = Field(
        default=timedelta(minutes=1),
        description="Target lag applied when a dynamic table does not declare one"
    )

    @model_validator(mode='after')
    def validate_retry_delays(self) -> 'RefreshSettings':
        """Validate retry delay relationships."""
        if self.max_retry_delay_seconds < self.retry_delay_seconds:
            raise ValueError(
                f"max_retry_delay_seconds ({self.max_retry_delay_seconds}) must be >= "
                f"retry_delay_seconds ({self.retry_delay_seconds})"
            )
        return self

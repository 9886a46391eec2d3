from datetime import timedelta

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from .base import ChangeFlowBaseSettings
from changeflow.constants import Edition, RETENTION_CEILING_DAYS


class RetentionSettings(ChangeFlowBaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHANGEFLOW_RETENTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    edition: Edition = Field(
        default=Edition.STANDARD,
        description="Service edition; bounds the longest retention window a table may request"
    )

    default_retention: timedelta = Field(
        default=timedelta(days=1),
        description="Retention window applied to tables without an explicit setting"
    )

    max_extension: timedelta = Field(
        default=timedelta(0),
        description=(
            "Extra time an idle cursor keeps protecting its unconsumed history "
            "beyond the retention window before compaction marks it stale"
        )
    )

    compaction_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Interval at which the external scheduler is expected to run compaction sweeps"
    )

    @property
    def retention_ceiling(self) -> timedelta:
        """Longest retention window allowed for the configured edition."""
        return timedelta(days=RETENTION_CEILING_DAYS[Edition(self.edition)])

    @model_validator(mode='after')
    def validate_windows(self) -> 'RetentionSettings':
        """Validate retention relationships."""
        if self.default_retention < timedelta(0):
            raise ValueError("default_retention must not be negative")
        if self.max_extension < timedelta(0):
            raise ValueError("max_extension must not be negative")
        if self.default_retention > self.retention_ceiling:
            raise ValueError(
                f"default_retention ({self.default_retention}) exceeds the "
                f"{Edition(self.edition).value} edition ceiling ({self.retention_ceiling})"
            )
        return self

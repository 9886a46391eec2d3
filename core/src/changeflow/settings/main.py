from typing import Optional

from pydantic import Field, field_validator

from .base import ChangeFlowBaseSettings
from .refresh import RefreshSettings
from .retention import RetentionSettings


class _Settings(ChangeFlowBaseSettings):

    service_name: str = Field(
        default="changeflow",
        description="Service name reported to OpenTelemetry"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level used by setup_logging()"
    )

    retention: RetentionSettings = Field(
        default_factory=RetentionSettings,
        description="Change log retention and compaction configuration"
    )
    refresh: RefreshSettings = Field(
        default_factory=RefreshSettings,
        description="Dynamic table refresh configuration"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


# Singleton instance
_settings: Optional[_Settings] = None


def get_settings(force_reload: bool = False) -> _Settings:
    """Get the singleton settings instance for the application.

    Settings are loaded from environment variables (``CHANGEFLOW_*``) and an
    optional ``.env`` file on first access.

    Args:
        force_reload: If True, creates a new Settings instance even if
                     one already exists.

    Returns:
        Settings: The singleton Settings instance

    Example:
        ```python
        settings = get_settings()
        assert settings is get_settings()

        # Force reload to pick up environment changes
        new_settings = get_settings(force_reload=True)
        assert new_settings is not settings
        ```
    """
    global _settings

    if _settings is None or force_reload:
        _settings = _Settings()

    return _settings


def _reload_settings() -> _Settings:
    """Force reload of settings.

    This is primarily for testing purposes where you need to reset
    the singleton instance.
    """
    global _settings
    _settings = None
    return get_settings(force_reload=True)

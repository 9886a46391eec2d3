"""Settings module providing configuration management for changeflow.

Settings are built on Pydantic Settings and organized by domain:

    1. Base Layer (base.py):
       - ChangeFlowBaseSettings: common configuration and env handling

    2. Domain Settings:
       - retention.py: retention windows, edition ceilings, compaction
       - refresh.py: dynamic table refresh workers, timeouts and retries

    3. Main Aggregator (main.py):
       - _Settings: aggregates all domain settings
       - get_settings(): singleton factory function
       - _reload_settings(): force reload from environment

Configuration Sources (precedence order):
    1. Environment Variables (highest priority)
    2. ``.env`` file
    3. Default Values in code (lowest priority)

Environment Variable Naming:
    - CHANGEFLOW_LOG_LEVEL, CHANGEFLOW_APP_ENV
    - CHANGEFLOW_RETENTION_EDITION, CHANGEFLOW_RETENTION_DEFAULT_RETENTION
    - CHANGEFLOW_REFRESH_MAX_WORKERS, CHANGEFLOW_REFRESH_REFRESH_TIMEOUT_SECONDS

Quick Start:
    >>> from changeflow.settings import get_settings
    >>> settings = get_settings()
    >>> settings.retention.retention_ceiling
    datetime.timedelta(days=1)
"""

from .main import _Settings, get_settings, _reload_settings
from .base import ChangeFlowBaseSettings
from .refresh import RefreshSettings
from .retention import RetentionSettings

__all__ = [
    "get_settings",
    "ChangeFlowBaseSettings",
    "RefreshSettings",
    "RetentionSettings",
]

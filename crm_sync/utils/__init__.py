"""
crm_sync.utils - Utility module

Common utilities: retry/backoff, time helpers, paths and logging configuration.
"""

from crm_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir
from crm_sync.utils.retry import RetryableError, retry_with_backoff
from crm_sync.utils.timing import format_duration, start_of_day_utc

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "RetryableError",
    "format_duration",
    "resolve_config_dir",
    "retry_with_backoff",
    "start_of_day_utc",
]

"""CLI package for crm_sync."""

from crm_sync.cli.formatters import show_status_report, show_sync_result
from crm_sync.cli.main import build_engine, cli, get_config_dir, open_database
from crm_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "build_engine",
    "cli",
    "get_config_dir",
    "open_database",
    "show_status_report",
    "show_sync_result",
]

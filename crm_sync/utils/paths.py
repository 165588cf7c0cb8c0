"""
Where crm-sync keeps its files.

Everything lives under one directory (``~/.crm-sync`` unless overridden):

    config.yaml     settings, see ``crm-sync init-config``
    crm_sync.db     the local contact store and job ledger
    logs/           daily crm_sync_YYYYMMDD.log files

``db_path`` and ``log_dir`` in config.yaml move the store or the logs
elsewhere; the directory itself moves with --config-dir or
CRM_SYNC_CONFIG_DIR.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".crm-sync"

CONFIG_DIR_ENV_VAR = "CRM_SYNC_CONFIG_DIR"

DEFAULT_DB_FILE = "crm_sync.db"

DEFAULT_LOG_SUBDIR = "logs"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Absolute config directory: the explicit argument, then
    CRM_SYNC_CONFIG_DIR, then ~/.crm-sync.
    """
    if config_dir is None:
        config_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    return Path(config_dir or DEFAULT_CONFIG_DIR).expanduser().resolve()


def resolve_db_path(config_dir: Path, db_path: str | None = None) -> Path:
    """The configured db_path (with ~ expanded), else crm_sync.db in config_dir."""
    if db_path:
        return Path(db_path).expanduser()
    return config_dir / DEFAULT_DB_FILE


def resolve_log_dir(config_dir: Path, log_dir: str | None = None) -> Path:
    """The configured log_dir (with ~ expanded), else logs/ in config_dir."""
    if log_dir:
        return Path(log_dir).expanduser()
    return config_dir / DEFAULT_LOG_SUBDIR

"""
Configuration file generator for CRM contact synchronization.

Provides functionality to generate default configuration files with
documentation for all available options.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Every option is commented out, so the generated file loads as an
    empty configuration and the built-in defaults apply.

    Returns:
        String containing YAML configuration with comments

    Example:
        config_yaml = generate_default_config()
        with open("config.yaml", "w") as f:
            f.write(config_yaml)
    """
    return """# CRM Contact Sync Configuration
# ==============================
#
# Default options for crm-sync. CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.crm-sync/config.yaml (or under $CRM_SYNC_CONFIG_DIR)
#   2. Uncomment and modify options as needed
#   3. Export the CRM access token: export CRM_SYNC_ACCESS_TOKEN=...
#
# The access token is never read from this file.

# Logging Options
# ---------------

# Enable verbose (DEBUG) console output
# Default: false
# verbose: false

# Directory for daily log files
# Default: ~/.crm-sync/logs
# log_dir: /var/log/crm-sync

# Number of daily log files to keep when running cleanup
# Default: 10
# log_retention_count: 10


# Local Store
# -----------

# SQLite database file
# Default: ~/.crm-sync/crm_sync.db
# db_path: /path/to/crm_sync.db

# Rows per query when loading existing contacts
# Default: 1000
# store_page_size: 1000


# Sync Behavior
# -------------

# Mode used when `crm-sync sync` is run without --mode
# Options:
#   - insert: only add contacts that are not stored yet
#   - sync: full listing, merge every contact
#   - incremental: only contacts modified since the last synced day
#   - customers: only add contacts in a customer lifecycle stage
# Default: sync
# default_mode: sync

# Seconds to wait between page requests
# Default: 0.15
# request_delay: 0.15

# Records per write statement
# Default: 50
# upsert_batch_size: 50

# What to do with a write batch that keeps failing
# Options:
#   - batch: count every record of the batch as failed
#   - batch_then_row: retry the batch one record at a time
# Default: batch
# upsert_policy: batch

# Record ceilings for a single run (page caps are derived from these)
# Default: 300000 / 10000 / 10000
# max_records_full: 300000
# max_records_incremental: 10000
# max_records_customers: 10000

# Incremental runs whose search matches more contacts than this
# fall back to a full sync
# Default: 10000
# search_result_limit: 10000

# Extra lifecycle stage labels (code: label), added to the built-in table
# lifecycle_stage_labels:
#   "123456789": Partner

# Lifecycle stage codes fetched by customers mode
# Default: [customer, dnc, active]
# customer_lifecycle_stages: [customer, dnc, active]

# Look up the company of each newly inserted contact and store its id
# (needs the companies read scope on the access token)
# Default: true
# fetch_company_associations: true


# CRM API
# -------

# Default: https://api.hubapi.com
# crm_base_url: https://api.hubapi.com

# Contacts per page (max 100)
# Default: 100
# crm_page_size: 100

# Request timeout in seconds
# Default: 30
# crm_timeout: 30

# Attempts per request or write batch, and backoff delays in seconds
# Default: 3 / 1.0 / 60.0
# max_retries: 3
# initial_retry_delay: 1.0
# max_retry_delay: 60.0

# Environment variable that holds the access token
# Default: CRM_SYNC_ACCESS_TOKEN
# access_token_env: CRM_SYNC_ACCESS_TOKEN
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and saves
    the configuration with secure permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success, error_message); error_message is None on success
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)

"""
Configuration loader module for CRM contact synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of known keys, types and value ranges
- Merging file values over built-in defaults
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from crm_sync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Built-in defaults for every supported key
DEFAULTS: dict[str, Any] = {
    # Logging
    "verbose": False,
    "log_dir": None,
    "log_retention_count": 10,
    # Store
    "db_path": None,
    "store_page_size": 1000,
    # Sync
    "default_mode": "sync",
    "request_delay": 0.15,
    "upsert_batch_size": 50,
    "upsert_policy": "batch",
    "max_records_full": 300_000,
    "max_records_incremental": 10_000,
    "search_result_limit": 10_000,
    "lifecycle_stage_labels": {},
    "customer_lifecycle_stages": ["customer", "dnc", "active"],
    "max_records_customers": 10_000,
    "fetch_company_associations": True,
    # CRM API
    "crm_base_url": "https://api.hubapi.com",
    "crm_page_size": 100,
    "crm_timeout": 30.0,
    "max_retries": 3,
    "initial_retry_delay": 1.0,
    "max_retry_delay": 60.0,
    "access_token_env": "CRM_SYNC_ACCESS_TOKEN",
}

VALID_MODES = ["insert", "sync", "incremental", "customers"]
VALID_UPSERT_POLICIES = ["batch", "batch_then_row"]

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML configuration file loader.

    Handles loading and validation of YAML configuration files
    for the crm-sync application.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        config = loader.load_and_validate()

        # Defaults with file values applied on top
        settings = loader.with_defaults(config)
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        config_file: str = DEFAULT_CONFIG_FILE,
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.crm-sync/ or $CRM_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        """Full path to the configuration file."""
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist, allowing
        graceful operation with defaults.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are logged and ignored.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        valid_keys: dict[str, type[Any] | tuple[type[Any], ...]] = {
            # Logging options
            "verbose": bool,
            "log_dir": str,
            "log_retention_count": int,
            # Store options
            "db_path": str,
            "store_page_size": int,
            # Sync options
            "default_mode": str,
            "request_delay": (int, float),
            "upsert_batch_size": int,
            "upsert_policy": str,
            "max_records_full": int,
            "max_records_incremental": int,
            "search_result_limit": int,
            "lifecycle_stage_labels": dict,
            "customer_lifecycle_stages": list,
            "max_records_customers": int,
            "fetch_company_associations": bool,
            # CRM API options
            "crm_base_url": str,
            "crm_page_size": int,
            "crm_timeout": (int, float),
            "max_retries": int,
            "initial_retry_delay": (int, float),
            "max_retry_delay": (int, float),
            "access_token_env": str,
        }

        for key, value in config.items():
            if key not in valid_keys:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue

            expected_type = valid_keys[key]
            # bool is an int subclass; only accept it where bool is expected
            wrong_bool = isinstance(value, bool) and expected_type is not bool
            if wrong_bool or not isinstance(value, expected_type):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        if "default_mode" in config and config["default_mode"] not in VALID_MODES:
            raise ConfigError(
                f"Invalid default_mode '{config['default_mode']}'. "
                f"Must be one of: {', '.join(VALID_MODES)}"
            )

        if (
            "upsert_policy" in config
            and config["upsert_policy"] not in VALID_UPSERT_POLICIES
        ):
            raise ConfigError(
                f"Invalid upsert_policy '{config['upsert_policy']}'. "
                f"Must be one of: {', '.join(VALID_UPSERT_POLICIES)}"
            )

        # Positive integer values
        positive_int_keys = [
            "log_retention_count",
            "store_page_size",
            "upsert_batch_size",
            "max_records_full",
            "max_records_incremental",
            "search_result_limit",
            "max_records_customers",
            "crm_page_size",
            "max_retries",
        ]
        for key in positive_int_keys:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        if "crm_page_size" in config and config["crm_page_size"] > 100:
            raise ConfigError(
                f"crm_page_size must be <= 100, got {config['crm_page_size']}"
            )

        # Positive float values (delays and timeouts)
        positive_float_keys = [
            "crm_timeout",
            "initial_retry_delay",
            "max_retry_delay",
        ]
        for key in positive_float_keys:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "request_delay" in config and config["request_delay"] < 0:
            raise ConfigError(
                f"request_delay must be >= 0, got {config['request_delay']}"
            )

        labels = config.get("lifecycle_stage_labels") or {}
        for code, label in labels.items():
            if not isinstance(label, str):
                raise ConfigError(
                    f"Lifecycle stage label for '{code}' must be a string, "
                    f"got {type(label).__name__}"
                )

        if "customer_lifecycle_stages" in config:
            stages = config["customer_lifecycle_stages"]
            if not stages:
                raise ConfigError("customer_lifecycle_stages must not be empty")
            for stage in stages:
                if not isinstance(stage, str) or not stage:
                    raise ConfigError(
                        "Customer lifecycle stage must be a non-empty string, "
                        f"got {stage!r}"
                    )

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config

    @staticmethod
    def with_defaults(config: dict[str, Any]) -> dict[str, Any]:
        """Return DEFAULTS overlaid with the known keys of config."""
        settings = dict(DEFAULTS)
        settings.update({k: v for k, v in config.items() if k in DEFAULTS})
        return settings

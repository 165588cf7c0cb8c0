"""
crm_sync.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from crm_sync.config.generator import generate_default_config, save_config_file
from crm_sync.config.loader import DEFAULTS, ConfigError, ConfigLoader

__all__ = [
    "DEFAULTS",
    "ConfigError",
    "ConfigLoader",
    "generate_default_config",
    "save_config_file",
]

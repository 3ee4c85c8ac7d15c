"""
Nexus - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables over built-in defaults.

Author: Nexus contributors
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions install tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    ASSISTANT_DEFAULT_MODEL,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_HOST,
    DEFAULT_RELAY_PORT,
    DEFAULT_STUN_SERVERS,
    GATHERING_TIMEOUT,
    LOCALHOST,
    MAX_FRAME_SIZE,
    RATE_LIMIT_MESSAGES_BURST,
    RATE_LIMIT_MESSAGES_PER_MINUTE,
    ROOM_HISTORY_CAPACITY,
    SEND_QUEUE_MAX_SIZE,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "NEXUS"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "relay": {
        "host": DEFAULT_HOST,
        "connect_host": LOCALHOST,
        "port": DEFAULT_RELAY_PORT,
        "send_queue_size": SEND_QUEUE_MAX_SIZE,
    },
    "direct": {
        "stun_servers": list(DEFAULT_STUN_SERVERS),
        "gathering_timeout": GATHERING_TIMEOUT,
    },
    "limits": {
        "max_message_size": MAX_FRAME_SIZE,
        "history_capacity": ROOM_HISTORY_CAPACITY,
        "rate_limit_per_minute": RATE_LIMIT_MESSAGES_PER_MINUTE,
        "rate_limit_burst": RATE_LIMIT_MESSAGES_BURST,
    },
    "assistant": {
        "api_key": "",
        "model": ASSISTANT_DEFAULT_MODEL,
    },
    "logging": {
        "level": "INFO",
        "file": "",
        "console": True,
    },
}


class Config:
    """Configuration manager for Nexus.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If the configuration file cannot be parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: NEXUS_SECTION_KEY
        For example: NEXUS_RELAY_PORT=3002. List values are comma-separated.

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in list(settings.items()):
                env_value = os.environ.get(f"{ENV_PREFIX}_{section.upper()}_{key.upper()}")
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        settings[key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        settings[key] = int(env_value)
                    elif isinstance(current, float):
                        settings[key] = float(env_value)
                    elif isinstance(current, list):
                        settings[key] = [item.strip() for item in env_value.split(",") if item.strip()]
                    else:
                        settings[key] = env_value
                except ValueError:
                    # Keep original value if conversion fails
                    pass

        return config

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get a copy of a whole configuration section."""
        return dict(self.data.get(section, {}))


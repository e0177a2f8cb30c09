"""
Configuration management for templatemix.

Loads TOML config and validates it against fixed bounds.
All tunable parameters are bounded and validated at startup.
"""

import copy
import os
from pathlib import Path
from typing import Dict, Any, Optional
import toml
import logging

from .errors import TemplateMixError

logger = logging.getLogger(__name__)


class ConfigError(TemplateMixError):
    """Raised when config validation fails."""
    pass


class Config:
    """Configuration loader and validator."""

    PARAM_BOUNDS = {
        "render": {
            "background_gain": (0.0, 1.0),
            "sample_rate": (8000, 192000),
            "write_tags": None,  # bool
        },
        "loader": {
            "timeout_seconds": (1, 300),
            "max_workers": (1, 32),
            "ffmpeg_binary": None,  # str
        },
        "live": {
            "missing_asset_delay_seconds": (0.0, 5.0),
            "log_history": (10, 10000),
        },
    }

    DEFAULT_CONFIG = {
        "config_version": "1.0",
        "render": {
            "background_gain": 0.3,
            "sample_rate": 44100,
            "write_tags": False,
        },
        "loader": {
            "timeout_seconds": 30,
            "max_workers": 8,
            "ffmpeg_binary": "ffmpeg",
        },
        "live": {
            "missing_asset_delay_seconds": 0.1,
            "log_history": 100,
        },
    }

    def __init__(self, config_dict: Dict[str, Any]):
        """Initialize config from dictionary."""
        self.data = config_dict
        self._validate()

    @classmethod
    def defaults(cls) -> "Config":
        """Config built purely from DEFAULT_CONFIG."""
        return cls(copy.deepcopy(cls.DEFAULT_CONFIG))

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """
        Load config from TOML file.

        Args:
            config_path: Path to templatemix.toml. If None, uses
                        TEMPLATEMIX_CONFIG_PATH env var or defaults to
                        configs/templatemix.toml.

        Returns:
            Config instance.

        Raises:
            ConfigError: If config is invalid or unreadable.
        """
        if config_path is None:
            config_path = os.getenv("TEMPLATEMIX_CONFIG_PATH", "configs/templatemix.toml")

        config_path = Path(config_path)

        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}. Using defaults.")
            return cls.defaults()

        try:
            config_dict = toml.load(config_path)
        except (OSError, toml.TomlDecodeError) as e:
            raise ConfigError(f"Failed to load config from {config_path}: {e}")

        logger.info(f"Loaded config from {config_path}")
        return cls(config_dict)

    def _validate(self) -> None:
        """
        Validate all config parameters against PARAM_BOUNDS.

        Raises:
            ConfigError: If any parameter is out of bounds.
        """
        for section, params in self.PARAM_BOUNDS.items():
            if section not in self.data:
                logger.warning(f"Missing config section: {section}. Using defaults.")
                self.data[section] = copy.deepcopy(self.DEFAULT_CONFIG.get(section, {}))
                continue

            section_data = self.data[section]

            for param, bounds in params.items():
                if param not in section_data:
                    default_val = self.DEFAULT_CONFIG.get(section, {}).get(param)
                    if default_val is not None:
                        logger.warning(f"Missing param {section}.{param}. Using default: {default_val}")
                        section_data[param] = default_val
                    continue

                value = section_data[param]

                # Non-numeric params (no bounds check needed)
                if bounds is None:
                    continue

                min_val, max_val = bounds
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigError(
                        f"Parameter {section}.{param}={value!r} is not a number"
                    )
                if not (min_val <= value <= max_val):
                    raise ConfigError(
                        f"Parameter {section}.{param}={value} out of bounds "
                        f"[{min_val}, {max_val}]"
                    )

        logger.debug("Config validation passed")

    def get(self, section: str, param: str, default: Any = None) -> Any:
        """Get a config parameter safely."""
        return self.data.get(section, {}).get(param, default)

    def __getitem__(self, section: str) -> Dict[str, Any]:
        """Allow dict-like access: config["render"]"""
        return self.data.get(section, {})

    def __repr__(self) -> str:
        version = self.data.get('config_version', 'unknown')
        return f"Config(version={version})"

"""
Configuration management for the colorquant command line.
Handles loading, saving, and merging user defaults.
"""

import copy
import json
import logging
import os
from typing import Any, Dict

from colorquant_lib import ERROR_GAIN

logger = logging.getLogger(__name__)

__all__ = [
    'ConfigManager',
]


class ConfigManager:
    """Manages user defaults for the command line."""

    DEFAULT_CONFIG = {
        # Default processing settings
        "defaults": {
            "palette_size": 256,
            "kernel": "floyd_steinberg",
            "dither": True,
            "gain": ERROR_GAIN,
            "indexed": False,
            "palette_source": "median_cut"
        },

        # Output settings
        "output": {
            "directory": "output",
            "type": "png",  # "png" or "jpg"
            "compression": 100
        },

        # Custom palette library
        "palettes_file": "palette.json"
    }

    def __init__(self, config_file: str = "colorquant.json"):
        """
        Initialize config manager.

        Args:
            config_file: Path to config file
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file, or fall back to defaults if missing or unreadable."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if not os.path.exists(self.config_file):
            return defaults
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config {self.config_file}: {e}")
            return defaults
        if not isinstance(loaded, dict):
            logger.error(f"Error loading config {self.config_file}: top level must be an object")
            return defaults
        # Merge with defaults to handle new settings
        return self._merge_configs(defaults, loaded)

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def save(self):
        """Save current config to file."""
        with open(self.config_file, 'w', encoding='utf-8') as f:
            json.dump(self.config, f, indent=4)

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Look up a nested value, e.g. get("output", "type") -> "png".
        Returns `default` when any key along the path is missing.
        """
        node = self.config
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def set(self, *keys: str, value: Any):
        """
        Store a nested value, creating intermediate sections as needed,
        e.g. set("defaults", "kernel", value="atkinson").

        Raises:
            ValueError: If no key is given or a path element is not a section
        """
        if not keys:
            raise ValueError("set() needs at least one key")
        node = self.config
        for key in keys[:-1]:
            node = node.setdefault(key, {})
            if not isinstance(node, dict):
                raise ValueError(f"Config key '{key}' is not a section")
        node[keys[-1]] = value

"""
Configuration management for the thermal print studio.
Handles loading, saving, and managing user preferences.
"""

import copy
import json
import logging
import os
from typing import Any, Dict

from dithering_lib import DitherParams

logger = logging.getLogger('thermal_studio.config')

__all__ = [
    'ConfigManager',
]


class ConfigManager:
    """Manages application configuration and user preferences."""

    DEFAULT_CONFIG = {
        # Canvas settings
        "canvas": {
            "height": 800
        },

        # Default dithering settings for new image layers
        "defaults": {
            "dither_method": "floyd-steinberg",
            "threshold": 128,
            "brightness": 128,
            "contrast": 100,
            "invert": False,
            "bayer_matrix_size": 4,
            "halftone_cell_size": 4
        },

        # Printer settings
        "printer": {
            "intensity": 0x5D
        },

        # Recent projects (keep last 10)
        "recent_projects": []
    }

    def __init__(self, config_file: str = "thermal_studio.json"):
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
            logger.warning("Error loading config %s, using defaults: %s", self.config_file, e)
            return defaults
        if not isinstance(loaded, dict):
            logger.warning("Config %s is not a JSON object, using defaults", self.config_file)
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

    def save(self) -> bool:
        """Save current config to file. Returns False if it could not be written."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.error("Error saving config to %s: %s", self.config_file, e)
            return False
        return True

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Example:
            config.get("canvas", "height")  # Returns 800
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Example:
            config.set("printer", "intensity", value=120)
        """
        if len(keys) == 0:
            return

        # Navigate to the parent dict
        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def default_dither_params(self) -> DitherParams:
        """Dither parameters for a newly added image layer."""
        d = self.get("defaults", default={})
        return DitherParams(
            method=d.get("dither_method", "floyd-steinberg"),
            threshold=d.get("threshold", 128),
            brightness=d.get("brightness", 128),
            contrast=d.get("contrast", 100),
            invert=d.get("invert", False),
            bayer_matrix_size=d.get("bayer_matrix_size", 4),
            halftone_cell_size=d.get("halftone_cell_size", 4),
        )

    def save_dither_defaults(self, params: DitherParams):
        values = params.to_dict()
        values["dither_method"] = values.pop("method").value
        self.set("defaults", value=values)

    def add_recent_project(self, filepath: str, max_recent: int = 10):
        """
        Add a project to the recent projects list (most recent first).
        """
        recent = list(self.get("recent_projects", default=[]))

        if filepath in recent:
            recent.remove(filepath)

        recent.insert(0, filepath)
        self.set("recent_projects", value=recent[:max_recent])

    def get_recent_projects(self, max_count: int = 10) -> list:
        """
        Get list of recent projects that still exist.
        """
        recent = self.get("recent_projects", default=[])
        existing = [f for f in recent if os.path.exists(f)]
        return existing[:max_count]

    def clear_recent_projects(self):
        self.set("recent_projects", value=[])

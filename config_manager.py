"""
Configuration management for the pixel art application.
Handles loading, saving, and managing user preferences.
"""

import copy
import json
import logging
import os
from typing import Any, Optional, Dict
from pathlib import Path

from pixelart_lib import PixelArtSettings

__all__ = [
    'ConfigManager',
    'DEFAULT_CONFIG_FILE',
]

DEFAULT_CONFIG_FILE = "pixel_pie_config.json"

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages application configuration and user preferences."""

    DEFAULT_CONFIG = {
        # Default processing settings (reset values of the editor)
        "defaults": {
            "max_size": 400,
            "settings": PixelArtSettings().to_dict(),
            "final_resize_enabled": False,
            "final_resize_multiplier": 2
        },

        # Last used paths
        "paths": {
            "last_image_dir": None,
            "last_save_dir": None
        },

        # Recent files (keep last 10)
        "recent_files": []
    }

    def __init__(self, config_file: str = DEFAULT_CONFIG_FILE, create: bool = True):
        """
        Initialize config manager.

        Args:
            config_file: Path to config file
            create: Write a default config file when none exists
        """
        self.config_file = config_file
        self.config = self._load_config(create)

    def _load_config(self, create: bool) -> Dict:
        """Load config from file, or create default if not exists."""
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                # Merge with defaults to handle new settings
                return self._merge_configs(copy.deepcopy(self.DEFAULT_CONFIG), loaded)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error loading config: {e}")
                return copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            self.config = copy.deepcopy(self.DEFAULT_CONFIG)
            if create:
                self.save()
            return self.config

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        if not isinstance(loaded, dict):
            return default
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def save(self):
        """Save current config to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.error(f"Error saving config: {e}")

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "defaults", "max_size")
            default: Default value if key not found

        Returns:
            Config value or default

        Example:
            config.get("defaults", "max_size")  # Returns 400
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

        Args:
            *keys: Nested keys (e.g., "defaults", "max_size")
            value: Value to set

        Example:
            config.set("defaults", "max_size", value=256)
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

    def get_default_settings(self) -> PixelArtSettings:
        """Stored default pipeline settings, normalized."""
        return PixelArtSettings.from_dict(self.get("defaults", "settings", default={}))

    def save_default_settings(self, settings: PixelArtSettings):
        self.set("defaults", "settings", value=settings.to_dict())

    def update_last_path(self, path_type: str, filepath: str):
        """
        Update last used directory for a path type.

        Args:
            path_type: "image" or "save"
            filepath: File path to extract directory from
        """
        if filepath:
            directory = str(Path(filepath).parent)
            self.set("paths", f"last_{path_type}_dir", value=directory)

    def get_last_path(self, path_type: str) -> Optional[str]:
        """
        Get last used directory for a path type.

        Args:
            path_type: "image" or "save"

        Returns:
            Directory path or None
        """
        return self.get("paths", f"last_{path_type}_dir")

    def add_recent_file(self, filepath: str, max_recent: int = 10):
        """
        Add file to recent files list.

        Args:
            filepath: File path to add
            max_recent: Maximum number of recent files to keep
        """
        recent = list(self.get("recent_files", default=[]))

        if filepath in recent:
            recent.remove(filepath)

        recent.insert(0, filepath)
        self.set("recent_files", value=recent[:max_recent])

    def get_recent_files(self, max_count: int = 10) -> list:
        """
        Get list of recent files that still exist.

        Args:
            max_count: Maximum number to return

        Returns:
            List of file paths
        """
        recent = self.get("recent_files", default=[])
        existing = [f for f in recent if os.path.exists(f)]
        return existing[:max_count]

    def clear_recent_files(self):
        """Clear all recent files."""
        self.set("recent_files", value=[])

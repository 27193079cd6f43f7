"""Streaming core settings management.

This module handles loading, saving, and accessing the tunables of the
streaming core with atomic file operations and automatic backup.
"""

import json
import os
import sys
import shutil
import logging
from typing import Dict, Any, Optional
from pathlib import Path

from .constants import (
    BAUD_DEFAULT,
    CONFIRM_TIMEOUT_DEFAULT,
    ESTIMATE_DEFAULT_FEED,
    ESTIMATE_RAPID_RATE,
    MOTION_EXTENSION_DEFAULT,
    MOTION_IDLE_THRESHOLD_DEFAULT,
    MOTION_MAX_EXTENSIONS_DEFAULT,
    MOTION_TIMEOUT_DEFAULT,
    OVERRIDE_DEBOUNCE,
    PROBE_WAIT_DEFAULT,
    READY_TIMEOUT_DEFAULT,
    SETTINGS_FILENAME,
    SETTINGS_BACKUP_SUFFIX,
    SETTINGS_TEMP_SUFFIX,
    STATUS_POLL_DEFAULT,
    STATUS_QUERY_FAILURE_LIMIT_DEFAULT,
    STATUS_QUERY_FAILURE_LIMIT_MAX,
    STATUS_QUERY_FAILURE_LIMIT_MIN,
    VALID_BAUD_RATES,
)
from .exceptions import (
    SettingsLoadError,
    SettingsSaveError,
    SettingsValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "baud_rate": BAUD_DEFAULT,
    "last_port": "",
    "status_poll_interval": STATUS_POLL_DEFAULT,
    "status_query_failure_limit": STATUS_QUERY_FAILURE_LIMIT_DEFAULT,
    "confirm_timeout": CONFIRM_TIMEOUT_DEFAULT,
    "ready_timeout": READY_TIMEOUT_DEFAULT,
    "motion": {
        "timeout": MOTION_TIMEOUT_DEFAULT,
        "idle_threshold": MOTION_IDLE_THRESHOLD_DEFAULT,
        "max_extensions": MOTION_MAX_EXTENSIONS_DEFAULT,
        "extension": MOTION_EXTENSION_DEFAULT,
    },
    "override_debounce": OVERRIDE_DEBOUNCE,
    "estimate": {
        "default_feed": ESTIMATE_DEFAULT_FEED,
        "rapid_rate": ESTIMATE_RAPID_RATE,
    },
    "probe_wait": PROBE_WAIT_DEFAULT,
}


def _deep_merge_defaults(defaults: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for key, default_val in defaults.items():
        if key in loaded:
            loaded_val = loaded[key]
            if isinstance(default_val, dict) and isinstance(loaded_val, dict):
                merged[key] = _deep_merge_defaults(default_val, loaded_val)
            else:
                merged[key] = loaded_val
        else:
            merged[key] = json.loads(json.dumps(default_val))
    for key, loaded_val in loaded.items():
        if key not in merged:
            merged[key] = loaded_val
    return merged


def get_default_settings_dir() -> str:
    """Get default directory for settings storage.

    Returns:
        Path to settings directory
    """
    # Check environment variable first
    env_dir = os.getenv("CNC_SENDER_CONFIG_DIR")
    if env_dir:
        return env_dir

    # Platform-specific defaults
    if sys.platform.startswith("win"):
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
    else:
        base = os.getenv("XDG_CONFIG_HOME")

    if not base:
        base = os.path.expanduser("~")

    return os.path.join(base, "CncSender")


def get_settings_path() -> str:
    """Get path to settings file.

    Creates directory if it doesn't exist.
    Falls back to a dot directory in home if creation fails.

    Returns:
        Full path to settings file
    """
    base_dir = get_default_settings_dir()

    try:
        os.makedirs(base_dir, exist_ok=True)
    except OSError as e:
        logger.warning(f"Failed to create settings directory: {e}")
        fallback_dir = os.path.join(os.path.expanduser("~"), ".cnc_sender")
        try:
            os.makedirs(fallback_dir, exist_ok=True)
            base_dir = fallback_dir
        except OSError:
            base_dir = os.getcwd()

    return os.path.join(base_dir, SETTINGS_FILENAME)


class Settings:
    """Streaming core settings manager.

    Example:
        settings = Settings()
        settings.load()
        settings.set("motion.idle_threshold", 3)
        settings.save()
    """

    def __init__(self, filepath: Optional[str] = None):
        """Initialize settings manager.

        Args:
            filepath: Optional custom settings file path
        """
        self.filepath = filepath or get_settings_path()
        self.data: Dict[str, Any] = self._get_defaults()
        logger.info(f"Settings file: {self.filepath}")

    def _get_defaults(self) -> Dict[str, Any]:
        return _deep_merge_defaults(DEFAULT_SETTINGS, {})

    def load(self) -> bool:
        """Load settings from file.

        Returns:
            True if loaded, False if no file exists (defaults kept)

        Raises:
            SettingsLoadError: If the file exists but cannot be read
        """
        if not os.path.exists(self.filepath):
            logger.info("No settings file found, using defaults")
            return False

        try:
            with open(self.filepath, "r", encoding="utf-8") as f:
                loaded_data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in settings file: {e}")
            raise SettingsLoadError(f"Invalid JSON: {e}")
        except OSError as e:
            logger.error(f"Failed to read settings file: {e}")
            raise SettingsLoadError(f"Failed to read file: {e}")

        if not isinstance(loaded_data, dict):
            raise SettingsLoadError("Settings file must contain a JSON object")

        # Merge with defaults (in case new settings were added)
        self.data = _deep_merge_defaults(self._get_defaults(), loaded_data)
        logger.info("Settings loaded successfully")
        return True

    def save(self) -> None:
        """Save settings to file atomically.

        Raises:
            SettingsSaveError: If save fails
        """
        filepath = Path(self.filepath)
        temp_path = Path(str(filepath) + SETTINGS_TEMP_SUFFIX)
        backup_path = Path(str(filepath) + SETTINGS_BACKUP_SUFFIX)

        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)

            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(self.data, f, indent=2, sort_keys=True)

            if filepath.exists():
                try:
                    shutil.copy2(filepath, backup_path)
                except OSError as e:
                    logger.warning(f"Failed to create backup: {e}")

            temp_path.replace(filepath)
            logger.info("Settings saved successfully")

        except OSError as e:
            logger.error(f"Failed to write settings: {e}")
            if backup_path.exists():
                try:
                    shutil.copy2(backup_path, filepath)
                    logger.info("Settings restored from backup")
                except OSError as restore_exc:
                    logger.error(f"Failed to restore settings backup: {restore_exc}")
            raise SettingsSaveError(f"Failed to save: {e}")

        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    logger.debug(f"Could not remove temp settings file {temp_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get setting value.

        Args:
            key: Setting key (supports dot notation for nested keys)
            default: Default value if key not found

        Returns:
            Setting value or default
        """
        value: Any = self.data
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set setting value.

        Args:
            key: Setting key (supports dot notation for nested keys)
            value: Value to set
        """
        keys = key.split(".")
        current = self.data
        for k in keys[:-1]:
            if k not in current or not isinstance(current[k], dict):
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value

    def get_all(self) -> Dict[str, Any]:
        """Get a copy of all settings."""
        return json.loads(json.dumps(self.data))

    def reset_to_defaults(self) -> None:
        """Reset all settings to defaults."""
        self.data = self._get_defaults()
        logger.info("Settings reset to defaults")

    def validate(self) -> bool:
        """Validate current settings.

        Returns:
            True if valid

        Raises:
            SettingsValidationError: If validation fails
        """
        if not isinstance(self.data, dict):
            raise SettingsValidationError("Settings must be a dictionary")

        baud = self.get("baud_rate")
        if baud not in VALID_BAUD_RATES:
            raise SettingsValidationError(f"Invalid baud rate: {baud}")

        for key in ("status_poll_interval", "confirm_timeout", "ready_timeout", "probe_wait",
                    "motion.timeout", "motion.extension", "override_debounce",
                    "estimate.default_feed", "estimate.rapid_rate"):
            value = self.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                raise SettingsValidationError(f"Invalid {key}: {value}")

        limit = self.get("status_query_failure_limit")
        if not isinstance(limit, int) or not (
            STATUS_QUERY_FAILURE_LIMIT_MIN <= limit <= STATUS_QUERY_FAILURE_LIMIT_MAX
        ):
            raise SettingsValidationError(f"Invalid status query failure limit: {limit}")

        threshold = self.get("motion.idle_threshold")
        if not isinstance(threshold, int) or threshold < 1:
            raise SettingsValidationError(f"Invalid idle threshold: {threshold}")

        extensions = self.get("motion.max_extensions")
        if not isinstance(extensions, int) or extensions < 0:
            raise SettingsValidationError(f"Invalid max extensions: {extensions}")

        return True

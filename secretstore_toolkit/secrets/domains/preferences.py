"""Persistent user preferences for secretstore-toolkit.

Stored as JSON in the XDG config directory:
~/.config/secretstore-toolkit/preferences.json

Known preferences:
    config_path - config file to load instead of the default location
    backend     - backend used when neither the config file nor the
                  environment names one
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PREFERENCES_DIR = Path.home() / ".config" / "secretstore-toolkit"
PREFERENCES_FILE = PREFERENCES_DIR / "preferences.json"

KNOWN_PREFERENCES = ("config_path", "backend")


def _load_preferences() -> Dict[str, Any]:
    """Return stored preferences; an unreadable file counts as empty."""
    if not PREFERENCES_FILE.exists():
        return {}

    try:
        with open(PREFERENCES_FILE, 'r') as f:
            preferences = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Ignoring unreadable preferences file {PREFERENCES_FILE}: {e}")
        return {}

    if not isinstance(preferences, dict):
        logger.error(f"Ignoring preferences file {PREFERENCES_FILE}: expected a JSON object")
        return {}
    return preferences


def _save_preferences(preferences: Dict[str, Any]) -> None:
    PREFERENCES_DIR.mkdir(parents=True, exist_ok=True)
    tmp_file = PREFERENCES_FILE.with_name(PREFERENCES_FILE.name + ".tmp")
    with open(tmp_file, 'w') as f:
        json.dump(preferences, f, indent=2, sort_keys=True)
    os.replace(tmp_file, PREFERENCES_FILE)


def get_preference(key: str) -> Optional[str]:
    """Get preference value by key, or None if unset."""
    return _load_preferences().get(key)


def set_preference(key: str, value: str) -> None:
    """
    Set preference value.

    Raises:
        KeyError: If key is not a known preference
    """
    if key not in KNOWN_PREFERENCES:
        raise KeyError(f"Unknown preference '{key}'. Known preferences: {', '.join(KNOWN_PREFERENCES)}")
    preferences = _load_preferences()
    preferences[key] = value
    _save_preferences(preferences)
    logger.info(f"Preference '{key}' set to: {value}")


def clear_preference(key: str) -> None:
    """Remove a preference. Clearing an unset preference is a no-op."""
    preferences = _load_preferences()
    if preferences.pop(key, None) is None:
        logger.debug(f"Preference '{key}' not set, nothing to clear")
        return
    _save_preferences(preferences)
    logger.info(f"Preference '{key}' cleared")


def get_all_preferences() -> Dict[str, Any]:
    """Get all preferences."""
    return _load_preferences()

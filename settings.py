#!/usr/bin/env python3
"""
Shared runtime settings.

A single ``RuntimeSettings`` instance is shared between the sync engine thread
and the presentation layer. Reads go through ``snapshot()``, which returns an
immutable copy, and writes through ``update()``. The lock is only held while
copying or mutating, never across file or network I/O.

Settings are loaded once at startup from a YAML file and written back on
shutdown. A missing or malformed file falls back to defaults; that is logged
but never reported to the user.
"""

from dataclasses import dataclass, asdict, replace
from os import makedirs, path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

from config import config, get_logger
from errors import ConfigError, FilesystemError

logger = get_logger("settings")

MIN_CONCURRENT_REQUESTS = 1
MAX_CONCURRENT_REQUESTS = 10


@dataclass(frozen=True)
class SettingsSnapshot:
    """Point-in-time copy of the runtime settings."""

    show_search_in_feed: bool = False
    auto_dismiss_on_open: bool = False
    max_allowed_concurrent_requests: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULTS = SettingsSnapshot()


def clamp_concurrency(value: int) -> int:
    """Force a concurrency ceiling into the supported range."""
    return max(MIN_CONCURRENT_REQUESTS, min(MAX_CONCURRENT_REQUESTS, int(value)))


def _coerce(data: Dict[str, Any]) -> SettingsSnapshot:
    """Build a snapshot from a loaded mapping, field by field.

    Unknown keys are ignored. A key with the wrong type keeps its default so a
    single bad entry does not throw away the rest of the file.
    """
    values: Dict[str, Any] = {}
    for key in ("show_search_in_feed", "auto_dismiss_on_open"):
        raw = data.get(key, getattr(DEFAULTS, key))
        if isinstance(raw, bool):
            values[key] = raw
        else:
            logger.warning(f"Ignoring non-boolean {key}={raw!r} in settings file")

    raw_limit = data.get("max_allowed_concurrent_requests", DEFAULTS.max_allowed_concurrent_requests)
    if isinstance(raw_limit, int) and not isinstance(raw_limit, bool):
        limit = clamp_concurrency(raw_limit)
        if limit != raw_limit:
            logger.warning(
                f"max_allowed_concurrent_requests={raw_limit} out of range "
                f"[{MIN_CONCURRENT_REQUESTS}, {MAX_CONCURRENT_REQUESTS}], using {limit}"
            )
        values["max_allowed_concurrent_requests"] = limit
    else:
        logger.warning(f"Ignoring invalid max_allowed_concurrent_requests={raw_limit!r} in settings file")

    return replace(DEFAULTS, **values)


def read_settings_file(file_path: str) -> Optional[SettingsSnapshot]:
    """Parse a settings file.

    Returns:
        The parsed snapshot, or None when the file does not exist.

    Raises:
        ConfigError: the file exists but is unreadable or malformed.
    """
    try:
        data = config._safe_read_yaml(file_path, config.SETTINGS_FILE_SIZE_LIMIT_KB * 1024, "settings")
    except yaml.YAMLError as e:
        raise ConfigError(str(e)) from e
    except OSError as e:
        raise ConfigError(str(e), description="Failed to read settings file") from e

    if data is None:
        if path.isfile(file_path):
            # Present but empty
            return DEFAULTS
        return None
    if not isinstance(data, dict):
        raise ConfigError(f"expected a mapping at the top level, got {type(data).__name__}")
    return _coerce(data)


class RuntimeSettings:
    """Lock-guarded settings shared between the engine and the presentation layer."""

    def __init__(self, initial: Optional[SettingsSnapshot] = None):
        self._lock = Lock()
        self._current = initial or DEFAULTS

    @classmethod
    def from_file(cls, file_path: Optional[str] = None) -> "RuntimeSettings":
        """Load settings, falling back to defaults on a missing or corrupt file."""
        file_path = file_path or config.SETTINGS_PATH
        try:
            loaded = read_settings_file(file_path)
        except ConfigError as e:
            logger.error(f"{e.description} ({file_path}): {e.message}")
            logger.info("Using default settings")
            return cls()
        if loaded is None:
            logger.info("Using default settings")
            return cls()
        logger.info(f"Loaded application settings from {file_path}")
        return cls(loaded)

    def snapshot(self) -> SettingsSnapshot:
        with self._lock:
            return self._current

    def update(self, **changes: Any) -> SettingsSnapshot:
        """Apply changes in place and return the new snapshot.

        Raises:
            TypeError: an unknown setting name was given.
        """
        unknown = set(changes) - set(DEFAULTS.to_dict())
        if unknown:
            raise TypeError(f"Unknown settings: {', '.join(sorted(unknown))}")
        if "max_allowed_concurrent_requests" in changes:
            changes["max_allowed_concurrent_requests"] = clamp_concurrency(changes["max_allowed_concurrent_requests"])
        with self._lock:
            self._current = replace(self._current, **changes)
            current = self._current
        logger.debug(f"Settings updated: {changes}")
        return current

    @property
    def max_allowed_concurrent_requests(self) -> int:
        return self.snapshot().max_allowed_concurrent_requests

    @property
    def auto_dismiss_on_open(self) -> bool:
        return self.snapshot().auto_dismiss_on_open

    @property
    def show_search_in_feed(self) -> bool:
        return self.snapshot().show_search_in_feed

    def save(self, file_path: Optional[str] = None) -> None:
        """Persist the current settings as YAML.

        Raises:
            FilesystemError: the file could not be written.
        """
        file_path = file_path or config.SETTINGS_PATH
        data = self.snapshot().to_dict()
        try:
            directory = path.dirname(file_path)
            if directory:
                makedirs(directory, exist_ok=True)
            with open(file_path, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        except OSError as e:
            raise FilesystemError(str(e), description="Failed to save settings") from e
        logger.info(f"Saved application settings to {file_path}")

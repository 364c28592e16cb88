#!/usr/bin/env python3
"""
Configuration management for FeedSync.

This module centralizes process-level configuration loading and validation:
the application directory, database and settings file locations, and HTTP
behaviour. It also configures logging once for the whole application.

User-facing runtime settings (concurrency, auto-dismiss, search toggle) live in
settings.py; they are mutated at runtime and persisted on shutdown, while the
values here are read once from the environment.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # Third-party chatter stays at WARNING unless we are debugging
    for name in ("aiohttp.access", "opentelemetry"):
        getLogger(name).setLevel(WARNING if level != DEBUG else DEBUG)

    return getLogger("FeedSync")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "engine", "fetcher", "models")

    Returns:
        A logger named "FeedSync.{name}"
    """
    return getLogger(f"FeedSync.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for FeedSync.

    Values come from environment variables, optionally seeded from a ``.env``
    file that sits next to the sources. ``.env`` never overrides variables
    that are already set in the process environment.
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Application directory: database and settings live here
        self.DATA_PATH = environ.get("DATA_PATH", path.join(path.expanduser("~"), ".config", "feedsync"))
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_PATH, "feedsync.db"))
        self.SETTINGS_PATH = environ.get("SETTINGS_PATH", path.join(self.DATA_PATH, "config.yml"))
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", self._find_schema_file(base_dir))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)
        self.SETTINGS_FILE_SIZE_LIMIT_KB = self._validate_positive_int("SETTINGS_FILE_SIZE_LIMIT_KB", 64, 1)

        # HTTP request configuration
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedSync/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Probe connectivity before a refresh so offline runs report one error, not N
        self.CHECK_CONNECTIVITY = environ.get("CHECK_CONNECTIVITY", "false").lower() == "true"
        self.CONNECTIVITY_TIMEOUT = self._validate_positive_int("CONNECTIVITY_TIMEOUT", 3, 1)

    def _find_schema_file(self, base_dir: str) -> str:
        """schema.sql sits next to the sources, or under sys.prefix for wheel installs."""
        candidates = [path.join(base_dir, "schema.sql"), path.join(sys.prefix, "schema.sql")]
        for candidate in candidates:
            if path.isfile(candidate):
                return candidate
        return candidates[0]

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'settings')

        Returns:
            Parsed YAML (mapping/list/primitive) or None when the file is absent.

        Raises:
            OSError: the file exists but cannot be read or is too large.
            yaml.YAMLError: the file is not valid YAML.
        """
        if not path.isfile(file_path):
            logger.info(f"{kind.capitalize()} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            raise PermissionError(f"No read permission for {kind} file at {file_path}")
        size = path.getsize(file_path)
        if size > max_size:
            raise OSError(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
        with open(file_path, 'r') as f:
            return yaml.safe_load(f)

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "data_path": self.DATA_PATH,
            "database_path": self.DATABASE_PATH,
            "settings_path": self.SETTINGS_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "check_connectivity": self.CHECK_CONNECTIVITY,
        }


# Global configuration instance
config = Config()

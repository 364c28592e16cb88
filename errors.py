#!/usr/bin/env python3
"""Common error types shared across modules.

Every failure the sync engine can report to the presentation layer is one of
these kinds. Each carries a short human ``description`` plus the underlying
``message`` so the engine can turn it into a ``WorkerError`` event unchanged.
"""

from typing import Any, Optional


class FeedSyncError(Exception):
    """Base class for reportable engine failures.

    Attributes:
        description: Short summary suitable for a notice title.
        message: Underlying error text (usually ``str()`` of the cause).
    """

    default_description = "Operation failed"

    def __init__(self, message: str = "", description: Optional[str] = None):
        super().__init__(message)
        self.description = description or self.default_description
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return f"{self.description}: {self.message}"
        return self.description


class NetworkError(FeedSyncError):
    """Transport failure, timeout, or non-success HTTP status."""

    default_description = "Web request failed"


class ParseError(FeedSyncError):
    """Malformed feed or outline document."""

    default_description = "Failed to parse document"


class StorageError(FeedSyncError):
    """Schema or query failure in the persistent store."""

    default_description = "Database operation failed"


class FilesystemError(FeedSyncError):
    """Directory or file I/O failure."""

    default_description = "Filesystem operation failed"


class ConfigError(FeedSyncError):
    """Malformed settings file. Recovered by falling back to defaults."""

    default_description = "Invalid settings file"


class FetchError(FeedSyncError):
    """A single fetch target failed.

    Wraps the ``NetworkError`` or ``ParseError`` that caused it so a batch can
    report the failure and carry on with the remaining targets.
    """

    def __init__(self, target: Any, url: str, cause: FeedSyncError):
        super().__init__(cause.message, description=cause.description)
        self.target = target
        self.url = url
        self.cause = cause


__all__ = [
    "FeedSyncError",
    "NetworkError",
    "ParseError",
    "StorageError",
    "FilesystemError",
    "ConfigError",
    "FetchError",
]

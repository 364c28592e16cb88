#!/usr/bin/env python3
"""
Utility functions shared by the engine, fetcher and CLI.

This module contains URL validation, display formatting helpers and the
connectivity probe used before a refresh.
"""

from asyncio import TimeoutError, open_connection, wait_for
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse

from config import config, get_logger

# Module-specific logger
logger = get_logger("utils")

# Captive-portal endpoints that answer plain TCP on port 80
CONNECTIVITY_HOSTS: Tuple[Tuple[str, int], ...] = (
    ("clients3.google.com", 80),
    ("detectportal.firefox.com", 80),
)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL is http(s) with a host, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url or any(ch.isspace() for ch in url):
        return False

    parsed = urlparse(url)
    return parsed.scheme in ('http', 'https') and bool(parsed.hostname)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


async def is_online(hosts: Iterable[Tuple[str, int]] = CONNECTIVITY_HOSTS,
                    timeout: Optional[float] = None) -> bool:
    """Return True as soon as any probe host accepts a TCP connection."""
    timeout = timeout if timeout is not None else config.CONNECTIVITY_TIMEOUT
    for host, port in hosts:
        try:
            _, writer = await wait_for(open_connection(host, port), timeout=timeout)
        except (OSError, TimeoutError) as e:
            logger.debug(f"Connectivity probe to {host}:{port} failed: {e}")
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
    logger.warning("No connectivity probe host was reachable")
    return False

"""
SparkChat - Utility functions.

Provides the clock, formatting helpers and input validation.
"""

import logging
import time
from datetime import datetime
from typing import Optional, Sequence
from urllib.parse import urlsplit

from .constants import MAX_USERNAME_LENGTH

logger = logging.getLogger(__name__)

SUPPORTED_BROKER_SCHEMES = ("mqtt", "mqtts", "tcp", "ssl", "ws", "wss")


def now_ms() -> int:
    """Current Unix time in milliseconds (the wire timestamp unit)."""
    return int(time.time() * 1000)


def format_typing_summary(names: Sequence[str]) -> Optional[str]:
    """
    Describe who is typing.

    Pure function of the snapshot it is given:
    - no names      -> None (no indicator)
    - one name      -> "alice is typing…"
    - two names     -> "alice and bob are typing…"
    - three or more -> "alice, bob, and 2 others are typing…"

    Args:
        names: Display names currently typing, in a stable order

    Returns:
        Summary text, or None when nobody is typing
    """
    if not names:
        return None
    if len(names) == 1:
        return f"{names[0]} is typing…"
    if len(names) == 2:
        return f"{names[0]} and {names[1]} are typing…"
    return f"{names[0]}, {names[1]}, and {len(names) - 2} others are typing…"


def format_timestamp(timestamp_ms: int, format_str: str = "%H:%M") -> str:
    """
    Format a millisecond timestamp in local time.

    Args:
        timestamp_ms: Unix time in milliseconds
        format_str: strftime format string

    Returns:
        Formatted time, or the raw value if it cannot be converted
    """
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000).strftime(format_str)
    except (ValueError, OverflowError, OSError, TypeError) as e:
        logger.debug(f"Failed to format timestamp {timestamp_ms!r}: {e}")
        return str(timestamp_ms)


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


def format_fingerprint(fingerprint: str, groups: int = 4) -> str:
    """
    Format the start of a fingerprint for display, 4 characters per group.

    Args:
        fingerprint: Hex fingerprint string
        groups: Number of 4-character groups to keep

    Returns:
        Formatted fingerprint, e.g. "1a2b 3c4d 5e6f 7a8b"
    """
    head = fingerprint[: groups * 4]
    return " ".join(head[i : i + 4] for i in range(0, len(head), 4))


def validate_port(port: int) -> bool:
    """Validate a broker port number."""
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535


def validate_broker_url(url: str) -> bool:
    """
    Validate a broker URL such as "wss://test.mosquitto.org".

    Returns:
        True if the scheme is supported and a host is present
    """
    if not isinstance(url, str) or not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in SUPPORTED_BROKER_SCHEMES and bool(parts.hostname)


def validate_username(username: str) -> bool:
    """Validate a display name: non-blank and not too long."""
    return (
        isinstance(username, str)
        and bool(username.strip())
        and len(username.strip()) <= MAX_USERNAME_LENGTH
    )

"""
SparkChat - Typing presence.

Tracks which peers are typing. The transport is unreliable, so a peer's
typing-stop signal may never arrive; entries therefore expire once they
are older than the expiry window.
"""

import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class TypingState:
    """Display name -> timestamp (ms) of the last typing-start signal."""

    def __init__(self):
        self._entries: Dict[str, int] = {}

    def set(self, username: str, timestamp: int) -> None:
        """Create or refresh a typing entry."""
        self._entries[username] = timestamp

    def remove(self, username: str) -> bool:
        """Remove a typing entry. Returns True if one existed."""
        return self._entries.pop(username, None) is not None

    def expire(self, now: int, window: int) -> List[str]:
        """
        Remove entries older than the expiry window.

        Args:
            now: Current time (ms)
            window: Maximum age of an entry (ms)

        Returns:
            Names whose entries were removed
        """
        expired = [name for name, ts in self._entries.items() if now - ts > window]
        for name in expired:
            del self._entries[name]
        if expired:
            logger.debug(f"Typing expired for: {', '.join(expired)}")
        return expired

    def snapshot(self, now: Optional[int] = None, window: Optional[int] = None) -> List[str]:
        """
        Names currently typing, in the order they started.

        With now and window given, entries the next expire() would remove
        are left out.
        """
        if now is None or window is None:
            return list(self._entries)
        return [name for name, ts in self._entries.items() if now - ts <= window]

    def timestamp(self, username: str) -> int:
        """Timestamp of a typing entry (KeyError if absent)."""
        return self._entries[username]

    def clear(self) -> None:
        """Remove every entry."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, username: object) -> bool:
        return username in self._entries

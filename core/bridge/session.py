"""
Session resolution

Maps a platform conversation to the session key the agent gateway uses:

- "larksuite:{conversation_id}"            until the first reset
- "larksuite:{conversation_id}:{suffix}"   after a reset

A reset stores a fresh suffix for the conversation; it is the only mutation
and entries never expire. State lives for the process lifetime only.
"""

import time
from typing import Callable, Dict, Optional, Set

from logger import get_logger

logger = get_logger("bridge.session")

SESSION_PREFIX = "larksuite"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    """Lower-case base-36 rendering of a non-negative integer."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def build_base_key(conversation_id: str) -> str:
    """Session key of a conversation that was never reset."""
    return f"{SESSION_PREFIX}:{conversation_id}"


class SessionResolver:
    """
    Owns the conversation → reset-suffix map.

    Args:
        millis: epoch-milliseconds source used for reset suffixes
    """

    def __init__(self, millis: Optional[Callable[[], int]] = None) -> None:
        self._millis = millis or _epoch_millis
        self._suffixes: Dict[str, str] = {}
        self._used: Dict[str, Set[str]] = {}

    def lookup(self, conversation_id: str) -> Optional[str]:
        """Stored reset suffix, if any."""
        return self._suffixes.get(conversation_id)

    def resolve_key(self, conversation_id: str) -> str:
        """Effective session key for *conversation_id*."""
        suffix = self._suffixes.get(conversation_id)
        base = build_base_key(conversation_id)
        return f"{base}:{suffix}" if suffix else base

    def current_key(self, conversation_id: str) -> str:
        """Read-only alias of resolve_key for status reporting."""
        return self.resolve_key(conversation_id)

    def apply_reset(self, conversation_id: str) -> str:
        """
        Start a new session for *conversation_id*.

        The suffix is time based. A suffix already used for this
        conversation is bumped forward so keys never repeat.

        Returns:
            the new suffix
        """
        used = self._used.setdefault(conversation_id, set())
        stamp = self._millis()
        suffix = to_base36(stamp)
        while suffix in used:
            stamp += 1
            suffix = to_base36(stamp)

        used.add(suffix)
        self._suffixes[conversation_id] = suffix
        logger.info(
            "Session reset",
            extra={"conversation_id": conversation_id, "suffix": suffix},
        )
        return suffix

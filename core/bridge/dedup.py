"""
Event deduplication

The platform retries webhook deliveries it considers unacknowledged, so the
same message id can arrive more than once. Ids are remembered for a fixed TTL;
expired records are swept on every lookup.

Process-local and best-effort: duplicates across restarts are not caught.
"""

import time
from typing import Callable, Dict, Optional

from logger import get_logger

logger = get_logger("bridge.dedup")

DEFAULT_TTL_SECONDS = 10 * 60

Clock = Callable[[], float]


class Deduplicator:
    """
    Bounded-time set of recently seen event ids.

    Args:
        ttl_seconds: how long an id is remembered
        clock: seconds source, injectable for tests
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock: Clock = clock or time.monotonic
        self._seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, event_id: str) -> bool:
        return self.lookup(event_id) is not None

    def lookup(self, event_id: str) -> Optional[float]:
        """First-seen timestamp of *event_id*, or None."""
        return self._seen.get(event_id)

    def insert(self, event_id: str) -> None:
        """Remember *event_id*; an existing record is never refreshed."""
        self._seen.setdefault(event_id, self._clock())

    def purge(self) -> int:
        """Drop records older than the TTL. Returns how many were dropped."""
        now = self._clock()
        expired = [k for k, ts in self._seen.items() if now - ts > self._ttl]
        for key in expired:
            del self._seen[key]
        return len(expired)

    def is_duplicate(self, event_id: Optional[str]) -> bool:
        """
        Check and record an event id.

        Empty ids cannot be deduplicated and are always let through.

        Args:
            event_id: platform message id

        Returns:
            True when the id was already seen within the TTL
        """
        self.purge()
        if not event_id:
            return False
        if event_id in self._seen:
            logger.info("Duplicate event skipped", extra={"event_id": event_id})
            return True
        self.insert(event_id)
        return False

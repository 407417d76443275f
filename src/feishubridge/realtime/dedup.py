"""Time-bounded cache of inbound event identifiers."""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional

DEDUP_TTL_SECONDS = 60 * 60
DEDUP_PRUNE_THRESHOLD = 200


class DedupCache:
    """Remembers message ids for ``ttl_seconds`` so redeliveries are dropped.

    Expired entries are only purged when the cache grows past
    ``prune_threshold`` after an insert.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEDUP_TTL_SECONDS,
        prune_threshold: int = DEDUP_PRUNE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._prune_threshold = prune_threshold
        self._clock = clock
        self._seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen

    def check_and_record(self, key: str, now: Optional[float] = None) -> bool:
        """Record ``key`` and return True if it was not already present."""
        if key in self._seen:
            return False
        ts = self._clock() if now is None else now
        self._seen[key] = ts
        if len(self._seen) > self._prune_threshold:
            self.prune(ts)
        return True

    def prune(self, now: Optional[float] = None) -> int:
        """Drop every entry older than the TTL. Returns the number removed."""
        ts = self._clock() if now is None else now
        expired = [key for key, seen_at in self._seen.items() if ts - seen_at > self._ttl]
        for key in expired:
            del self._seen[key]
        return len(expired)

    def clear(self) -> None:
        self._seen.clear()

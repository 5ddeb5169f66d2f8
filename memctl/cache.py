"""In-memory freshness cache for GET responses.

Entries past the freshness window are not evicted. They stay readable as
stale (for stale-while-revalidate) and keep their ETag (for conditional
revalidation) until replaced.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, NamedTuple, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Last known response for a request key."""

    data: Any
    etag: Optional[str]
    stored_at: float


class CachedValue(NamedTuple):
    data: Any
    etag: Optional[str]
    stale: bool


def cache_key(method: str, path: str) -> str:
    return f"{method.upper()}:{path}"


class FreshnessCache:
    """Per-process cache keyed by ``METHOD:path``."""

    def __init__(
        self,
        fresh_window: float = 30.0,
        stale_window: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize cache.

        Args:
            fresh_window: Seconds an entry is served without revalidation
            stale_window: Seconds past the fresh window an entry may still be
                served stale; None keeps it until replaced
            clock: Monotonic time source
        """
        self.fresh_window = fresh_window
        self.stale_window = stale_window
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        # Bumped on every invalidation so in-flight reads can tell they raced one
        self.generation = 0

    def get(self, key: str) -> Optional[CachedValue]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        age = self._clock() - entry.stored_at
        if age < self.fresh_window:
            return CachedValue(entry.data, entry.etag, stale=False)

        if self.stale_window is not None and age >= self.fresh_window + self.stale_window:
            # Too old to serve, but the ETag is still useful for revalidation
            return None

        return CachedValue(entry.data, entry.etag, stale=True)

    def get_etag(self, key: str) -> Optional[str]:
        """Stored ETag for ``key``, even if the entry has expired."""
        entry = self._entries.get(key)
        return entry.etag if entry else None

    def peek(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(self, key: str, data: Any, etag: Optional[str] = None) -> None:
        self._entries[key] = CacheEntry(data=data, etag=etag, stored_at=self._clock())

    def touch(self, key: str) -> bool:
        """Restart the freshness window of an existing entry (after a 304).

        Returns:
            True if the entry existed
        """
        entry = self._entries.get(key)
        if entry is None:
            return False
        self._entries[key] = replace(entry, stored_at=self._clock())
        return True

    def invalidate(self, key: str) -> None:
        self.generation += 1
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``.

        Returns:
            Number of entries removed
        """
        self.generation += 1
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries under {prefix}")
        return len(doomed)

    def clear(self) -> None:
        self.generation += 1
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

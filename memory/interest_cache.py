"""Bounded in-memory cache for user interest profiles.

Interest profiles are read on every run and written back at the end of
it. The durable copy lives in SQLite; this cache sits in front of it so
repeated runs for the same user inside one process skip the read.

Entries expire after a TTL and the cache holds at most max_entries
profiles, evicting the least recently used one when full. Values are
copied on the way in and out so callers cannot mutate cached state.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    weights: dict[str, float]
    expires_at: float


class InterestCache:
    """TTL + LRU cache mapping user_id to topic weights.

    Example:
        >>> cache = InterestCache(ttl_seconds=60, max_entries=2)
        >>> cache.put("u1", {"sports": 0.4})
        >>> cache.get("u1")
        {'sports': 0.4}
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, user_id: str) -> dict[str, float] | None:
        """Return cached weights, or None if absent or expired."""
        entry = self._entries.get(user_id)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[user_id]
            self.misses += 1
            return None
        self._entries.move_to_end(user_id)
        self.hits += 1
        return dict(entry.weights)

    def put(self, user_id: str, weights: dict[str, float]) -> None:
        """Store weights, evicting the least recently used entry if full."""
        self._entries[user_id] = _Entry(dict(weights), self._clock() + self.ttl_seconds)
        self._entries.move_to_end(user_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("Interest cache eviction | user=%s size=%d", evicted, len(self._entries))

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def purge_expired(self) -> int:
        """Drop all expired entries; returns how many were removed."""
        now = self._clock()
        expired = [uid for uid, e in self._entries.items() if e.expires_at <= now]
        for uid in expired:
            del self._entries[uid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        entry = self._entries.get(user_id)
        return entry is not None and entry.expires_at > self._clock()

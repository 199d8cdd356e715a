"""In-process memory for per-user state.

InterestCache:
    TTL + LRU bounded cache of user interest weights, placed in front of
    the SQLite profile store.

Configure via:
    INTEREST_CACHE_TTL_SECONDS=3600
    INTEREST_CACHE_MAX_ENTRIES=1024

Example:
    >>> from memory import InterestCache
    >>> cache = InterestCache(ttl_seconds=600, max_entries=100)
"""

from memory.interest_cache import InterestCache

__all__ = [
    "InterestCache",
]

"""User interest tracking and topic assignment.

Each user has a weight per topic. Requesting a topic bumps its weight
(+0.1, capped at 1.0) and slowly decays every other topic (-0.02, floored
at 0.1). Ranked topics drive the "suggested topics" line of the digest.

Profiles are read through an InterestCache in front of the SQLite store
so repeated runs in one process do not hit the database for every read.
"""

import logging
import re

from database import Database
from memory.interest_cache import InterestCache
from models.digest import DigestItem

logger = logging.getLogger(__name__)

DEFAULT_INTERESTS: dict[str, float] = {
    "national": 0.3,
    "international": 0.3,
    "sports": 0.2,
    "technology": 0.2,
    "all": 0.5,
}

BUMP = 0.1
DECAY = 0.02
MAX_WEIGHT = 1.0
MIN_WEIGHT = 0.1
NEW_TOPIC_WEIGHT = 0.5

# Keyword hints used to tag items when the request covers all topics
TOPIC_KEYWORDS: dict[str, list[str]] = {
    "sports": [
        "cricket", "football", "match", "tournament", "olympic", "league",
        "world cup", "ipl", "tennis", "hockey", "athlete", "fifa",
    ],
    "technology": [
        "tech", "ai", "artificial intelligence", "software", "startup", "app",
        "smartphone", "google", "apple", "microsoft", "cyber", "chip",
    ],
    "international": [
        "un", "united nations", "us", "china", "russia", "ukraine", "europe",
        "israel", "gaza", "pakistan", "global", "foreign", "summit",
    ],
    "national": [
        "india", "delhi", "parliament", "lok sabha", "modi", "supreme court",
        "state", "minister", "rbi", "election commission",
    ],
}

_KEYWORD_PATTERNS = {
    topic: re.compile(r"\b(" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE)
    for topic, keywords in TOPIC_KEYWORDS.items()
}


def bump_interests(interests: dict[str, float], topic: str) -> dict[str, float]:
    """Return new weights after a request for topic."""
    updated = dict(interests)
    updated[topic] = min(MAX_WEIGHT, updated.get(topic, NEW_TOPIC_WEIGHT) + BUMP)
    for key in updated:
        if key != topic:
            updated[key] = max(MIN_WEIGHT, updated[key] - DECAY)
    return {k: round(v, 4) for k, v in updated.items()}


def rank_topics(interests: dict[str, float]) -> list[str]:
    """Topics ordered by weight, highest first (ties by name)."""
    return [t for t, _ in sorted(interests.items(), key=lambda kv: (-kv[1], kv[0]))]


def assign_topic(item: DigestItem, request_topic: str) -> str:
    """Topic label for an item.

    A specific request topic applies to every item. For "all", the item
    text is matched against keyword hints; the best match wins and
    unmatched items stay under "all".
    """
    if request_topic and request_topic != "all":
        return request_topic
    text = f"{item.title} {item.summary}"
    best, best_hits = "all", 0
    for topic, pattern in _KEYWORD_PATTERNS.items():
        hits = len(pattern.findall(text))
        if hits > best_hits:
            best, best_hits = topic, hits
    return best


class InterestTracker:
    """Reads and updates interest profiles through the cache.

    Example:
        >>> tracker = InterestTracker(db, InterestCache())
        >>> tracker.record_request("u1", "sports", ["Match report"])
        ['all', 'sports', 'international', 'national', 'technology']
    """

    def __init__(self, db: Database, cache: InterestCache):
        self.db = db
        self.cache = cache

    def load(self, user_id: str) -> dict[str, float]:
        """Current weights (cache, then store, then defaults)."""
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached
        stored = self.db.get_interests(user_id)
        interests = stored if stored else dict(DEFAULT_INTERESTS)
        self.cache.put(user_id, interests)
        return dict(interests)

    def record_request(self, user_id: str, topic: str, titles: list[str] | None = None) -> list[str]:
        """Update weights and history for a request; return ranked topics.

        Args:
            user_id: User making the request
            topic: Requested topic
            titles: Article titles delivered in this digest

        Returns:
            Topics ranked by updated weight
        """
        interests = bump_interests(self.load(user_id), topic)
        self.db.save_interests(user_id, interests, commit=False)
        if titles:
            self.db.add_history(user_id, titles, commit=False)
        self.db.commit()
        self.cache.put(user_id, interests)
        ranked = rank_topics(interests)
        logger.debug("Interests updated | user=%s topic=%s top=%s", user_id, topic, ranked[:3])
        return ranked

"""Raw feed item model.

RawSourceItem is what the feed collector produces before any generative
step touches it. Items are ephemeral: they live for one pipeline run and
are never persisted.

Deduplication Strategy:
    Items are keyed by their link when present, otherwise by the
    normalized title. Two feeds syndicating the same article collapse to
    one item; the first one seen wins.
"""

import re
import unicodedata
from datetime import datetime

from pydantic import BaseModel, Field


class RawSourceItem(BaseModel):
    """A single entry parsed from an RSS/Atom feed.

    Attributes:
        title: Entry headline (required, non-empty after parsing)
        link: Article URL, if the feed provided one
        description: HTML/text body from the feed entry
        published_at: Publication timestamp in UTC, if known
        source: URL of the feed this entry came from
    """

    title: str = Field(description="Entry headline")
    link: str | None = Field(default=None, description="Article URL")
    description: str = Field(default="", description="HTML/text from the feed entry")
    published_at: datetime | None = Field(default=None, description="Publication time (UTC)")
    source: str | None = Field(default=None, description="Feed URL")

    @property
    def dedup_key(self) -> str:
        """Key used to collapse duplicates: link, falling back to title."""
        if self.link:
            return self.link.strip()
        normalized = unicodedata.normalize("NFKC", self.title.lower())
        return re.sub(r"\s+", " ", normalized).strip()

    @property
    def plain_description(self) -> str:
        """Description with HTML tags and extra whitespace stripped."""
        text = re.sub(r"<[^>]+>", " ", self.description or "")
        return re.sub(r"\s+", " ", text).strip()

    def __str__(self) -> str:
        return f"RawSourceItem('{self.title[:50]}')"

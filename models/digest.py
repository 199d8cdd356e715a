"""Curated digest item model.

DigestItem is the unit the rest of the pipeline works with once the
curator's output has been recovered. Items are immutable: enrichment
produces new copies via ``enriched()`` rather than editing in place.

The curator is asked to answer in a camelCase JSON shape, so the model
accepts ``pubDate`` and ``sentimentScore`` as aliases alongside the
snake_case field names.
"""

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5


class Sentiment(str, Enum):
    """Sentiment label attached to each digest item."""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class DigestItem(BaseModel):
    """A curated headline with a short summary and sentiment.

    Attributes:
        title: Headline (non-empty)
        link: Article URL, if known
        summary: One or two sentence summary (non-empty)
        source: Outlet or feed the item came from
        published_at: Publication time as reported by the curator
        sentiment: positive / negative / neutral (default neutral)
        sentiment_score: Positivity in [0, 1] (default 0.5)
        topic: Topic assigned during enrichment
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str = Field(min_length=1, description="Headline")
    link: str | None = Field(default=None, description="Article URL")
    summary: str = Field(min_length=1, description="Short summary")
    source: str | None = Field(default=None, description="Outlet or feed")
    published_at: str | None = Field(default=None, alias="pubDate", description="Publication time")
    sentiment: Sentiment = Field(default=Sentiment.NEUTRAL, description="Sentiment label")
    sentiment_score: float = Field(
        default=NEUTRAL_SCORE,
        ge=0.0,
        le=1.0,
        alias="sentimentScore",
        description="Positivity score 0-1",
    )
    topic: str | None = Field(default=None, description="Assigned topic")

    @field_validator("title", "summary", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        """Strip whitespace so blank strings fail the length check."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("link", "source", "published_at", mode="before")
    @classmethod
    def coerce_optional_text(cls, v: Any) -> str | None:
        """Treat empty strings and non-strings as missing."""
        if v is None:
            return None
        if not isinstance(v, str):
            v = str(v)
        v = v.strip()
        return v or None

    @field_validator("sentiment", mode="before")
    @classmethod
    def normalize_sentiment(cls, v: Any) -> Sentiment:
        """Map loose model output ("Positive", "mixed", None) to a label."""
        if isinstance(v, Sentiment):
            return v
        if isinstance(v, str):
            try:
                return Sentiment(v.strip().lower())
            except ValueError:
                logger.debug("Unknown sentiment label '%s', using neutral", v)
        return Sentiment.NEUTRAL

    @field_validator("sentiment_score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> float:
        """Clamp scores into [0, 1]; unparseable values become neutral."""
        if v is None:
            return NEUTRAL_SCORE
        try:
            score = float(v)
        except (TypeError, ValueError):
            return NEUTRAL_SCORE
        return max(0.0, min(1.0, score))

    def enriched(
        self,
        sentiment: Sentiment | None = None,
        sentiment_score: float | None = None,
        topic: str | None = None,
    ) -> "DigestItem":
        """Return a copy carrying enrichment results.

        Fields passed as None keep their current value.
        """
        update: dict[str, Any] = {}
        if sentiment is not None:
            update["sentiment"] = sentiment
        if sentiment_score is not None:
            update["sentiment_score"] = max(0.0, min(1.0, sentiment_score))
        if topic is not None:
            update["topic"] = topic
        return self.model_copy(update=update)

    def with_text(self, title: str, summary: str) -> "DigestItem":
        """Return a copy with translated title and summary."""
        return self.model_copy(update={
            "title": title.strip() or self.title,
            "summary": summary.strip() or self.summary,
        })

    def __str__(self) -> str:
        return f"DigestItem('{self.title[:50]}', {self.sentiment.value})"

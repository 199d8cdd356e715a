"""Markdown document rendering for a digest.

The document is the readable companion to the audio: every item with its
summary and sentiment, a sentiment distribution, and a per-topic
sentiment breakdown. Layout is plain Markdown so any mail client or
editor can open the attachment.
"""

import logging
from collections import Counter
from datetime import datetime, timezone

from models.context import PipelineContext
from models.digest import DigestItem, Sentiment
from tools.utils import language_name

logger = logging.getLogger(__name__)

DOCUMENT_MIME = "text/markdown"
DOCUMENT_EXTENSION = "md"

_SENTIMENT_ORDER = (Sentiment.POSITIVE, Sentiment.NEUTRAL, Sentiment.NEGATIVE)


def _percent(part: int, total: int) -> str:
    return f"{(part / total * 100):.1f}%" if total else "0.0%"


def _bar(part: int, total: int, width: int = 20) -> str:
    filled = round(part / total * width) if total else 0
    return "█" * filled + "░" * (width - filled)


def sentiment_counts(items: list[DigestItem]) -> dict[Sentiment, int]:
    counts = Counter(item.sentiment for item in items)
    return {s: counts.get(s, 0) for s in _SENTIMENT_ORDER}


def topic_breakdown(items: list[DigestItem]) -> dict[str, dict[Sentiment, int]]:
    """Sentiment counts per topic, topics ordered by item count."""
    by_topic: dict[str, list[DigestItem]] = {}
    for item in items:
        by_topic.setdefault(item.topic or "all", []).append(item)
    ordered = sorted(by_topic.items(), key=lambda kv: (-len(kv[1]), kv[0]))
    return {topic: sentiment_counts(group) for topic, group in ordered}


def render_markdown(items: list[DigestItem], ctx: PipelineContext) -> str:
    """Render the digest document as Markdown text."""
    request = ctx.request
    generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    sources = {item.source for item in items if item.source}
    counts = sentiment_counts(items)
    total = len(items)
    leader = max(_SENTIMENT_ORDER, key=lambda s: counts[s])

    title = f"News Digest: {request.topic.title()}"
    if request.region:
        title += f" ({request.region})"
    lines = [
        f"# {title}",
        "",
        f"**Generated:** {generated}",
        f"**Language:** {language_name(request.language)}",
        f"**Articles:** {total}",
    ]
    if request.user_name:
        lines.append(f"**Prepared for:** {request.user_name}")

    lines.extend([
        "",
        "## Overview",
        "",
        f"This digest covers {total} articles from {len(sources) or 'unnamed'} sources. "
        f"Coverage is predominantly {leader.value} ({_percent(counts[leader], total)}).",
    ])

    lines.extend(["", "## Sentiment", "", "| Sentiment | Count | Share | |", "|---|---|---|---|"])
    for s in _SENTIMENT_ORDER:
        lines.append(f"| {s.value.title()} | {counts[s]} | {_percent(counts[s], total)} | {_bar(counts[s], total)} |")

    breakdown = topic_breakdown(items)
    if breakdown:
        lines.extend(["", "## Topics", "", "| Topic | Positive | Negative | Neutral |", "|---|---|---|---|"])
        for topic, tc in breakdown.items():
            lines.append(
                f"| {topic} | {tc[Sentiment.POSITIVE]} | {tc[Sentiment.NEGATIVE]} | {tc[Sentiment.NEUTRAL]} |"
            )

    lines.extend(["", "## Articles"])
    for i, item in enumerate(items, start=1):
        lines.extend(["", f"### {i}. {item.title}", ""])
        meta = [f"*{item.sentiment.value.upper()}* ({item.sentiment_score:.2f})"]
        if item.topic:
            meta.append(f"Topic: {item.topic}")
        if item.source:
            meta.append(f"Source: {item.source}")
        if item.published_at:
            meta.append(f"Published: {item.published_at}")
        lines.append(" | ".join(meta))
        lines.extend(["", item.summary])
        if item.link:
            lines.extend(["", f"[Read more]({item.link})"])

    if ctx.suggested_topics:
        lines.extend(["", "## Suggested Topics", ""])
        lines.extend(f"- {topic}" for topic in ctx.suggested_topics[:5])

    if ctx.synthesis is not None and ctx.synthesis.has_fallback:
        lines.extend([
            "",
            "---",
            "",
            f"_Note: {ctx.synthesis.fallback_chunks} of {len(ctx.synthesis.outcomes)} narration "
            "segments could not be voiced and contain silence._",
        ])

    return "\n".join(lines) + "\n"


def render(items: list[DigestItem], ctx: PipelineContext) -> bytes | None:
    """Render the document as UTF-8 bytes, or None when there is nothing to render."""
    if not items:
        logger.debug("Render skipped, no items")
        return None
    document = render_markdown(items, ctx).encode("utf-8")
    logger.info("Document rendered | items=%d bytes=%d", len(items), len(document))
    return document

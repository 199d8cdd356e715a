"""Curator agent: picks and summarizes headlines from raw feed items.

The curator answers in free text that is supposed to be a JSON object of
the form ``{"date", "language", "topic", "items": [...]}``. The text is
returned as-is; turning it into DigestItems is the job of recovery.py,
which tolerates the formatting mistakes models make here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic_ai import Agent, RunContext, UsageLimits

from agents.base import create_model
from config import Config
from models.source import RawSourceItem
from tools.utils import language_name

logger = logging.getLogger(__name__)

DESCRIPTION_CHARS = 500

CURATOR_PROMPT = """You are a precise multilingual news curator. IMPORTANT: Return ONLY valid JSON, no markdown, no code blocks, no extra text.

From the articles provided, select up to {max_items} of the most important and recent headlines.
For each article, STRICTLY provide these fields:
- title: brief headline string in {language}
- link: original URL string or null
- summary: 100-150 word summary string in {language}, WITHOUT newlines, with special characters properly escaped
- source: news source name string or null
- pubDate: publication date string or null

CRITICAL JSON FORMATTING RULES:
1. Use ONLY double quotes for all strings
2. Escape ALL quotes inside strings with backslash: \\"
3. NO newlines inside any string values - convert to spaces
4. Escape ALL backslashes as \\\\
5. NO trailing commas before ] or }}
6. Return ONLY the JSON object, nothing else

Valid JSON example format:
{{"date":"{date}","language":"{language}","topic":"{topic}","items":[{{"title":"Example Title","link":null,"summary":"Example summary text.","source":"Example Source","pubDate":null}}]}}"""


@dataclass
class CuratorContext:
    """Runtime context passed to the curator agent.

    Attributes:
        topic: Requested feed topic
        language: Output language name (e.g. 'Hindi')
        max_items: Maximum headlines to select
        date: Today's date (YYYY-MM-DD)
    """

    topic: str = "all"
    language: str = "English"
    max_items: int = 15
    date: str = ""


def _create_agent(model: str) -> Agent[CuratorContext, str]:
    """Create the underlying PydanticAI agent for curation (plain text output)."""
    agent = Agent(
        create_model(model),
        output_type=str,
        deps_type=CuratorContext,
        retries=2,
    )

    @agent.system_prompt
    def dynamic_prompt(ctx: RunContext[CuratorContext]) -> str:
        return CURATOR_PROMPT.format(
            max_items=ctx.deps.max_items,
            language=ctx.deps.language,
            topic=ctx.deps.topic,
            date=ctx.deps.date,
        )

    return agent


def build_articles_message(items: list[RawSourceItem], topic: str, language: str) -> str:
    """Render raw items as the numbered list the curator reads."""
    lines = [
        f"Today's date is {datetime.now(timezone.utc).date().isoformat()}.",
        f"User requested topic: {topic}",
        f"Language: {language}",
        "",
        "Raw Articles to Process:",
    ]
    for i, item in enumerate(items, start=1):
        pub = item.published_at.isoformat() if item.published_at else ""
        lines.extend([
            "",
            f"{i}. Title: {item.title}",
            f"Link: {item.link or ''}",
            f"Source: {item.source or ''}",
            f"PubDate: {pub}",
            f"Description: {item.plain_description[:DESCRIPTION_CHARS]}",
        ])
    return "\n".join(lines)


class CuratorAgent:
    """Selects the most relevant headlines and writes short summaries.

    Example:
        >>> curator = CuratorAgent(config)
        >>> text = await curator.curate(raw_items, topic="sports", language="hi")
        >>> result = recover(text)
    """

    def __init__(self, config: Config):
        """Initialize the curator agent.

        Args:
            config: Application configuration with model settings
        """
        self.config = config
        self._agent = _create_agent(config.curator_model)

    async def curate(self, items: list[RawSourceItem], topic: str, language: str) -> str:
        """Ask the model to curate the given items.

        Args:
            items: Deduplicated, newest-first raw items
            topic: Requested topic
            language: Output language (name or code)

        Returns:
            The model's raw text answer
        """
        lang = language_name(language)
        deps = CuratorContext(
            topic=topic,
            language=lang,
            max_items=self.config.max_digest_items,
            date=datetime.now(timezone.utc).date().isoformat(),
        )
        result = await self._agent.run(
            build_articles_message(items, topic, lang),
            deps=deps,
            usage_limits=UsageLimits(request_limit=3),
        )
        usage = result.usage()
        logger.info(
            "Curation complete | items_in=%d chars_out=%d requests=%d",
            len(items), len(result.output), usage.requests,
        )
        return result.output

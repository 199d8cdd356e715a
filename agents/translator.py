"""Translator agent for digest items.

Items are translated in small batches. The model answers in a numbered
plain-text format::

    1. TITLE: <translated title>
    SUMMARY: <translated summary>

which survives far better than JSON for non-Latin scripts. Entries the
parser cannot find keep their original text.

Error Handling:
    - Quota/rate-limit failures raise TranslationQuotaError immediately;
      the pipeline then continues with untranslated items.
    - Any other batch failure keeps that batch's originals and moves on.
"""

import asyncio
import logging
import re
from dataclasses import dataclass

from pydantic_ai import Agent, RunContext

from agents.base import create_model, is_rate_limited
from config import Config
from errors import TranslationQuotaError
from models.digest import DigestItem
from tools.utils import iso_code, language_name

logger = logging.getLogger(__name__)

BATCH_SIZE = 3

TRANSLATOR_PROMPT = """You are a professional news translator. Translate the news articles you receive to {language}. Keep meanings intact and maintain a professional tone.

Return the translations in this exact format (NO other text):
1. TITLE: [translated title]
SUMMARY: [translated summary]
2. TITLE: [translated title]
SUMMARY: [translated summary]
etc."""

_ENTRY_PATTERN = re.compile(
    r"^\s*(\d+)\.\s*TITLE:\s*(.+?)\s*\n\s*SUMMARY:\s*(.+?)(?=\n\s*\d+\.\s*TITLE:|\Z)",
    re.MULTILINE | re.DOTALL,
)


@dataclass
class TranslatorContext:
    language: str = "English"


@dataclass
class TranslationResult:
    """Translated items plus how many actually changed language."""

    items: list[DigestItem]
    translated: int = 0
    failed_batches: int = 0


def parse_translations(text: str) -> dict[int, tuple[str, str]]:
    """Parse numbered TITLE/SUMMARY entries into {number: (title, summary)}."""
    entries = {}
    for match in _ENTRY_PATTERN.finditer(text):
        title = " ".join(match.group(2).split())
        summary = " ".join(match.group(3).split())
        if title and summary:
            entries[int(match.group(1))] = (title, summary)
    return entries


def _create_agent(model: str) -> Agent[TranslatorContext, str]:
    agent = Agent(
        create_model(model),
        output_type=str,
        deps_type=TranslatorContext,
        retries=1,
    )

    @agent.system_prompt
    def dynamic_prompt(ctx: RunContext[TranslatorContext]) -> str:
        return TRANSLATOR_PROMPT.format(language=ctx.deps.language)

    return agent


class TranslatorAgent:
    """Translates digest item titles and summaries."""

    def __init__(self, config: Config):
        self.config = config
        self._agent = _create_agent(config.translator_model)

    @staticmethod
    def needs_translation(language: str) -> bool:
        return iso_code(language) != "en"

    async def translate(self, items: list[DigestItem], language: str) -> TranslationResult:
        """Translate items to the target language.

        Args:
            items: Items to translate
            language: Target language (name or code)

        Returns:
            TranslationResult; items are returned unchanged for English

        Raises:
            TranslationQuotaError: If the model reports quota exhaustion
        """
        if not self.needs_translation(language):
            return TranslationResult(items=list(items))

        deps = TranslatorContext(language=language_name(language))
        output: list[DigestItem] = []
        translated = 0
        failed = 0

        for start in range(0, len(items), BATCH_SIZE):
            batch = items[start:start + BATCH_SIZE]
            message = "\n---\n".join(
                f"{i}. Title: {item.title}\nSummary: {item.summary}"
                for i, item in enumerate(batch, start=1)
            )
            try:
                result = await self._agent.run(f"Articles:\n{message}", deps=deps)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if is_rate_limited(e):
                    logger.warning("Translation quota exhausted | batch_start=%d error=%s", start, e)
                    raise TranslationQuotaError(str(e)) from e
                logger.warning("Translation batch failed, using originals | batch_start=%d error=%s", start, e)
                failed += 1
                output.extend(batch)
                continue

            entries = parse_translations(result.output)
            for i, item in enumerate(batch, start=1):
                if i in entries:
                    output.append(item.with_text(*entries[i]))
                    translated += 1
                else:
                    output.append(item)

        logger.info(
            "Translation complete | language=%s items=%d translated=%d failed_batches=%d",
            deps.language, len(items), translated, failed,
        )
        return TranslationResult(items=output, translated=translated, failed_batches=failed)

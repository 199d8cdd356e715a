"""Script writer agent: turns digest items into a spoken narration."""

import json
import logging
import re
from dataclasses import dataclass

from pydantic_ai import Agent, RunContext, UsageLimits

from agents.base import create_model
from config import Config
from models.digest import DigestItem
from tools.utils import language_name

logger = logging.getLogger(__name__)

SCRIPT_PROMPT = """Create a concise audio script for a news podcast in {language}. The script should be natural, engaging, and take approximately {duration} minutes to read at a normal pace.

IMPORTANT: Write the ENTIRE script ONLY in {language}.

Generate a script that:
- Opens with a greeting in {language}
- Summarizes each article in 30-40 seconds in {language}
- Maintains a professional yet engaging tone
- Includes smooth transitions between topics
- Closes with a sign-off in {language}

Return ONLY the script text in {language}, no markdown or extra formatting."""

_MARKDOWN_NOISE = re.compile(r"[*_#`>]+")


@dataclass
class ScriptContext:
    language: str = "English"
    duration_minutes: int = 5


def clean_script(text: str) -> str:
    """Strip markdown markers the model sometimes adds anyway."""
    text = _MARKDOWN_NOISE.sub("", text)
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def fallback_script(items: list[DigestItem], user_name: str | None = None) -> str:
    """Deterministic narration used when the model is unavailable.

    Reads each headline and its summary in order with a short greeting
    and sign-off. Always in the items' own language.
    """
    greeting = f"Hello {user_name}, here" if user_name else "Hello, here"
    parts = [f"{greeting} is your news digest with {len(items)} stories."]
    for i, item in enumerate(items, start=1):
        summary = item.summary.rstrip()
        if summary and summary[-1] not in ".!?।":
            summary += "."
        parts.append(f"Story {i}. {item.title.rstrip('.')}. {summary}")
    parts.append("That's all for today. Thank you for listening.")
    return " ".join(parts)


def _create_agent(model: str) -> Agent[ScriptContext, str]:
    agent = Agent(
        create_model(model),
        output_type=str,
        deps_type=ScriptContext,
        retries=2,
    )

    @agent.system_prompt
    def dynamic_prompt(ctx: RunContext[ScriptContext]) -> str:
        return SCRIPT_PROMPT.format(
            language=ctx.deps.language,
            duration=ctx.deps.duration_minutes,
        )

    return agent


class ScriptWriterAgent:
    """Writes a podcast-style narration script for a set of items."""

    def __init__(self, config: Config, duration_minutes: int = 5):
        self.config = config
        self.duration_minutes = duration_minutes
        self._agent = _create_agent(config.script_model)

    async def write(self, items: list[DigestItem], language: str) -> str:
        """Generate the narration script.

        Args:
            items: Items to narrate (already in the target language)
            language: Target language (name or code)

        Returns:
            Plain-text script

        Raises:
            ValueError: If the model returned an empty script
        """
        articles = [
            {"title": item.title, "summary": item.summary, "source": item.source}
            for item in items
        ]
        deps = ScriptContext(language=language_name(language), duration_minutes=self.duration_minutes)
        result = await self._agent.run(
            "Articles:\n" + json.dumps(articles, ensure_ascii=False, indent=2),
            deps=deps,
            usage_limits=UsageLimits(request_limit=3),
        )
        script = clean_script(result.output)
        if not script:
            raise ValueError("Model returned an empty script")
        logger.info("Script generated | items=%d chars=%d language=%s", len(items), len(script), deps.language)
        return script

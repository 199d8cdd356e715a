"""Structured output recovery for curator responses.

Generative models are asked for strict JSON but regularly answer with
markdown fences, unescaped quotes inside summaries, raw newlines in
strings, or trailing commas. This module turns such text into a list of
validated DigestItem records without ever raising.

Recovery Tiers (tried in order, first schema-valid result wins):
    1. fenced_json: drop ``` fence lines, locate the outermost JSON object or
       array with a string-aware brace scan, parse it as-is.
    2. repaired_json: single-pass repair of string contents (stray quotes,
       bad escapes, raw control characters) and trailing commas, then parse.
    3. title_salvage: regex out every "title" value and build a minimal
       item per title (title doubles as a truncated summary).
    4. Nothing extractable: empty result, logged as RECOVERY_DEGRADED.

A tier counts as successful only when it produces a record list in which
at least one record validates as a DigestItem (or the list is empty).
Invalid records are dropped. No deduplication happens here.

Example:
    >>> result = recover('{"items": [{"title": "A", "summary": "B"}]}')
    >>> result.tier, len(result.items), result.degraded
    ('fenced_json', 1, False)
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from errors import RECOVERY_DEGRADED
from models.digest import DigestItem

logger = logging.getLogger(__name__)

SALVAGE_SUMMARY_CHARS = 150
SALVAGE_MAX_ITEMS = 15

_FENCE_LINE = re.compile(r"^[ \t]*```(?:json|JSON)?[ \t]*\r?$", re.MULTILINE)
_TITLE_PATTERN = re.compile(r'"title"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_VALID_ESCAPES = set('"\\/bfnrtu')
_STRUCTURAL_AFTER_STRING = set(",}]:")
_HEX_DIGITS = set("0123456789abcdefABCDEF")


@dataclass(frozen=True)
class RecoveryResult:
    """Validated items plus which tier produced them.

    Attributes:
        items: Validated digest items (possibly empty)
        tier: Name of the strategy that succeeded, None if all failed
        degraded: True unless the first tier parsed the text directly
    """

    items: tuple[DigestItem, ...]
    tier: str | None
    degraded: bool

    @classmethod
    def empty(cls) -> "RecoveryResult":
        return cls(items=(), tier=None, degraded=True)


def strip_fences(text: str) -> str:
    """Remove markdown fence lines and surrounding whitespace.

    Only lines that consist of a fence are dropped; backticks inside
    string values are left alone.
    """
    return _FENCE_LINE.sub("", text).strip()


def _first_opener(text: str) -> int:
    """Index of the first '{' or '[' in text, -1 if neither occurs."""
    positions = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    return min(positions) if positions else -1


def find_json_block(text: str) -> str | None:
    """Return the outermost balanced JSON object (or array) in text.

    The scan starts at whichever opener comes first, so a top-level
    array is returned whole. Braces inside string literals are ignored.
    Returns None when no opener exists or the block never closes.
    """
    start = _first_opener(text)
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c in "{[":
            depth += 1
        elif c in "}]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _next_significant(text: str, start: int) -> str:
    """First non-whitespace character at or after start ('' at end)."""
    for i in range(start, len(text)):
        if not text[i].isspace():
            return text[i]
    return ""


def _is_unicode_escape(text: str, i: int) -> bool:
    """True when text[i] is a backslash followed by u and four hex digits."""
    digits = text[i + 2:i + 6]
    return len(digits) == 4 and all(d in _HEX_DIGITS for d in digits)


def repair_json(text: str) -> str:
    """Repair common model JSON mistakes in a single pass.

    Inside strings:
        - a quote closes the string only when the next non-space character
          is structural (, } ] :) or the end of text; otherwise it is escaped
        - backslashes that do not start a valid escape are doubled
        - raw newlines, carriage returns and tabs become escapes
    Outside strings:
        - raw newlines become a single space
        - trailing commas before } or ] are dropped

    Args:
        text: Candidate JSON text

    Returns:
        Repaired text (may still be invalid JSON)
    """
    out: list[str] = []
    in_string = False
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if in_string:
            if c == "\\":
                nxt = text[i + 1] if i + 1 < n else ""
                if nxt and nxt in _VALID_ESCAPES and (nxt != "u" or _is_unicode_escape(text, i)):
                    out.append(c + nxt)
                    i += 2
                    continue
                out.append("\\\\")
            elif c == '"':
                after = _next_significant(text, i + 1)
                if not after or after in _STRUCTURAL_AFTER_STRING:
                    in_string = False
                    out.append(c)
                else:
                    out.append('\\"')
            elif c == "\n":
                out.append("\\n")
            elif c == "\r":
                out.append("\\r")
            elif c == "\t":
                out.append("\\t")
            else:
                out.append(c)
        else:
            if c == '"':
                in_string = True
                out.append(c)
            elif c in "\r\n":
                out.append(" ")
            elif c == "," and _next_significant(text, i + 1) in ("}", "]"):
                pass
            else:
                out.append(c)
        i += 1
    return "".join(out)


def _records_from(parsed: Any) -> list[Any] | None:
    """Pull the item list out of a parsed curator response."""
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        items = parsed.get("items")
        if isinstance(items, list):
            return items
        if "title" in parsed:
            return [parsed]
    return None


class RecoveryStrategy(ABC):
    """One way of turning model text into raw item records.

    Subclasses return the raw records they found, or None when the
    strategy does not apply to the text at all.
    """

    name: str = "strategy"
    degraded: bool = True

    @abstractmethod
    def extract(self, text: str) -> list[Any] | None:
        """Extract raw item records from text, or None if nothing found."""


class FencedJsonStrategy(RecoveryStrategy):
    """Tier 1: fences stripped, outermost JSON block parsed unmodified."""

    name = "fenced_json"
    degraded = False

    def extract(self, text: str) -> list[Any] | None:
        block = find_json_block(strip_fences(text))
        if block is None:
            return None
        try:
            return _records_from(json.loads(block))
        except json.JSONDecodeError as e:
            logger.debug("Direct parse failed | error=%s", e)
            return None


class RepairedJsonStrategy(RecoveryStrategy):
    """Tier 2: string-aware repair pass, then parse."""

    name = "repaired_json"

    def extract(self, text: str) -> list[Any] | None:
        cleaned = strip_fences(text)
        start = _first_opener(cleaned)
        if start < 0:
            return None
        end = cleaned.rfind("]" if cleaned[start] == "[" else "}")
        if end <= start:
            return None
        repaired = repair_json(cleaned[start:end + 1])
        block = find_json_block(repaired) or repaired
        try:
            return _records_from(json.loads(block))
        except json.JSONDecodeError as e:
            logger.debug("Repaired parse failed | error=%s", e)
            return None


class TitleSalvageStrategy(RecoveryStrategy):
    """Tier 3: build minimal items from every "title" value found."""

    name = "title_salvage"

    def __init__(self, max_items: int = SALVAGE_MAX_ITEMS, summary_chars: int = SALVAGE_SUMMARY_CHARS):
        self.max_items = max_items
        self.summary_chars = summary_chars

    def extract(self, text: str) -> list[Any] | None:
        records = []
        for match in _TITLE_PATTERN.finditer(text):
            title = match.group(1).replace('\\"', '"').replace("\\n", " ").strip()
            if not title:
                continue
            records.append({
                "title": title,
                "link": None,
                "summary": title[:self.summary_chars],
                "source": None,
                "pubDate": None,
            })
            if len(records) >= self.max_items:
                break
        return records or None


DEFAULT_STRATEGIES: tuple[RecoveryStrategy, ...] = (
    FencedJsonStrategy(),
    RepairedJsonStrategy(),
    TitleSalvageStrategy(),
)


def validate_records(records: list[Any]) -> list[DigestItem] | None:
    """Validate raw records as DigestItems.

    Returns:
        Valid items (invalid ones dropped), [] for an empty input list,
        or None when the list was non-empty but nothing validated.
    """
    items = []
    dropped = 0
    for record in records:
        if not isinstance(record, dict):
            dropped += 1
            continue
        try:
            items.append(DigestItem.model_validate(record))
        except ValidationError as e:
            dropped += 1
            logger.debug("Record dropped | errors=%d", e.error_count())
    if dropped:
        logger.debug("Invalid records dropped | dropped=%d kept=%d", dropped, len(items))
    if records and not items:
        return None
    return items


def recover(
    raw_text: str | None,
    strategies: tuple[RecoveryStrategy, ...] = DEFAULT_STRATEGIES,
) -> RecoveryResult:
    """Extract validated digest items from free model text.

    Never raises. Unrecoverable input yields an empty, degraded result.

    Args:
        raw_text: Model output
        strategies: Ordered strategies to try

    Returns:
        RecoveryResult with items, the tier used, and the degraded flag
    """
    if not raw_text or not raw_text.strip():
        logger.warning("%s | reason=empty_output", RECOVERY_DEGRADED)
        return RecoveryResult.empty()

    for strategy in strategies:
        try:
            records = strategy.extract(raw_text)
        except Exception as e:
            logger.debug("Strategy error | tier=%s error=%s", strategy.name, e)
            continue
        if records is None:
            continue
        items = validate_records(records)
        if items is None:
            logger.debug("Tier rejected, no valid records | tier=%s records=%d", strategy.name, len(records))
            continue
        if strategy.degraded:
            logger.warning(
                "%s | tier=%s items=%d chars=%d",
                RECOVERY_DEGRADED, strategy.name, len(items), len(raw_text),
            )
        else:
            logger.debug("Recovered | tier=%s items=%d", strategy.name, len(items))
        return RecoveryResult(items=tuple(items), tier=strategy.name, degraded=strategy.degraded)

    logger.warning("%s | reason=unrecoverable chars=%d", RECOVERY_DEGRADED, len(raw_text))
    return RecoveryResult.empty()

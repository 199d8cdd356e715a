"""Sentiment analysis via the Hugging Face inference API.

Each item's title and summary are scored by a binary POSITIVE/NEGATIVE
classifier. The probability is folded into a single positivity score in
[0, 1]; scores close to 0.5 are labelled neutral.

Without an API key every item gets the neutral default and the pipeline
records the stage as degraded.
"""

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

from config import Config
from models.context import SentimentReading
from models.digest import NEUTRAL_SCORE, DigestItem, Sentiment
from tools.utils import create_ssl_context

logger = logging.getLogger(__name__)

HF_MODEL_URL = (
    "https://api-inference.huggingface.co/models/"
    "distilbert-base-uncased-finetuned-sst-2-english"
)
NEUTRAL_BAND = 0.15
MAX_INPUT_CHARS = 1000


class SentimentUnavailableError(RuntimeError):
    """Sentiment could not be computed for any item."""


@dataclass
class SentimentBatch:
    readings: list[SentimentReading]
    failures: int = 0


def reading_from_prediction(prediction: object) -> SentimentReading:
    """Convert the HF response for one input into a SentimentReading.

    The API returns ``[[{"label": "POSITIVE", "score": 0.98}, ...]]`` (or
    the inner list directly); only the top label is needed.
    """
    candidates = prediction
    while isinstance(candidates, list) and candidates and isinstance(candidates[0], list):
        candidates = candidates[0]
    if not isinstance(candidates, list) or not candidates:
        raise ValueError(f"Unexpected sentiment response: {prediction!r}")

    top = max(candidates, key=lambda c: float(c.get("score", 0)))
    label = str(top.get("label", "")).upper()
    score = float(top.get("score", 0.5))
    positivity = score if label.startswith("POS") else 1.0 - score
    positivity = max(0.0, min(1.0, positivity))

    if abs(positivity - NEUTRAL_SCORE) <= NEUTRAL_BAND:
        sentiment = Sentiment.NEUTRAL
    elif positivity > NEUTRAL_SCORE:
        sentiment = Sentiment.POSITIVE
    else:
        sentiment = Sentiment.NEGATIVE
    return SentimentReading(sentiment=sentiment, score=round(positivity, 3))


class SentimentAnalyzer:
    """Scores digest items with a hosted sentiment model."""

    def __init__(self, config: Config):
        self.config = config
        self.api_key = config.hf_api_key
        self.timeout = config.feed_timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _score_one(self, session: aiohttp.ClientSession, item: DigestItem) -> SentimentReading:
        text = f"{item.title}. {item.summary}"[:MAX_INPUT_CHARS]
        async with session.post(
            HF_MODEL_URL,
            json={"inputs": text},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status != 200:
                raise RuntimeError(f"HF API error: HTTP {resp.status}")
            data = await resp.json(content_type=None)
        return reading_from_prediction(data)

    async def analyze(self, items: list[DigestItem]) -> SentimentBatch:
        """Score every item, neutral for the ones that fail.

        Args:
            items: Items to score

        Returns:
            SentimentBatch aligned with items

        Raises:
            SentimentUnavailableError: If no key is configured or every
                item failed
        """
        if not items:
            return SentimentBatch(readings=[])
        if not self.available:
            raise SentimentUnavailableError("HF_API_KEY not configured")

        semaphore = asyncio.Semaphore(self.config.max_workers)
        connector = aiohttp.TCPConnector(ssl=create_ssl_context())

        async with aiohttp.ClientSession(connector=connector) as session:
            async def score(item: DigestItem) -> SentimentReading:
                async with semaphore:
                    return await self._score_one(session, item)

            results = await asyncio.gather(*(score(i) for i in items), return_exceptions=True)

        readings = []
        failures = 0
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failures += 1
                logger.debug("Sentiment failed | title=%s error=%s", item.title[:40], result)
                readings.append(SentimentReading())
            else:
                readings.append(result)

        if failures == len(items):
            raise SentimentUnavailableError(f"Sentiment failed for all {failures} items")
        logger.info("Sentiment analyzed | items=%d failures=%d", len(items), failures)
        return SentimentBatch(readings=readings, failures=failures)

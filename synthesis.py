"""Resilient text-to-speech synthesis.

Turns a narration script into a single MP3 byte stream. Free speech
endpoints throttle aggressively and occasionally answer with HTML error
pages, so every chunk goes through an ordered list of backends with
per-attempt timeouts, exponential backoff on throttling, and payload
validation. When every backend fails for a chunk, a decodable silent MP3
segment of comparable length is substituted so the final stream stays
playable and chunk order is preserved.

Flow per chunk:
    1. For each backend in order:
       - attempt up to max_attempts times under asyncio.wait_for(timeout)
       - HTTP 429/503 and timeouts: sleep backoff_base * 2**attempt, retry
       - other HTTP or network errors: move to the next backend immediately
       - payload must pass is_valid_audio(), otherwise next backend
    2. Nothing worked: silent_mp3(duration for the chunk's text)

Backends:
    - Google Translate TTS endpoint, once per browser header profile
    - Google Cloud Text-to-Speech (only when an API key is configured)

Example:
    >>> engine = SynthesisEngine.from_config(config)
    >>> result = await engine.synthesize_detailed("Good morning.", "hindi")
    >>> result.real_chunks, result.fallback_chunks
    (1, 0)
"""

import asyncio
import base64
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import aiohttp

from config import Config
from errors import (
    KIND_INVALID_PAYLOAD,
    KIND_TIMEOUT,
    EmptyNarrationError,
    SynthesisHTTPError,
)
from tools.utils import create_ssl_context, iso_code, speech_locale

logger = logging.getLogger(__name__)

MAX_CHUNK_CHARS = 150
MIN_PAYLOAD_BYTES = 1000

# MPEG-1 Layer III, 128 kbps, 44.1 kHz, no padding: 417-byte frames of ~26 ms
MP3_FRAME_HEADER = bytes([0xFF, 0xFB, 0x90, 0x00])
MP3_FRAME_BYTES = 417
MP3_FRAME_MS = 26
SILENCE_MS_PER_CHAR = 65
MIN_SILENCE_MS = 500

_SENTENCE_PATTERN = re.compile(r"[^.!?।]+[.!?।]+|[^.!?।]+$")

TRANSLATE_TTS_URL = "https://translate.google.com/translate_tts"
CLOUD_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"

# Header profiles tried in order against the translate endpoint
TRANSLATE_HEADER_PROFILES: tuple[dict[str, str], ...] = (
    {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                      "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "audio/mpeg",
        "Referer": "https://translate.google.com/",
        "Accept-Language": "en-US,en;q=0.9",
    },
    {
        "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
                      "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "audio/mp3, audio/mpeg",
        "Referer": "https://translate.google.com/",
        "Accept-Language": "en-US,en;q=0.9",
    },
    {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                      "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "audio/*",
        "Referer": "https://translate.google.com/",
        "Accept-Language": "en-US,en;q=0.9",
    },
)


class OutcomeKind(str, Enum):
    REAL = "real"
    FALLBACK_SILENCE = "fallback_silence"


@dataclass(frozen=True)
class NarrationChunk:
    """One piece of narration sent to a speech backend."""

    index: int
    text: str


@dataclass(frozen=True)
class SynthesisOutcome:
    """Audio produced for one chunk.

    Attributes:
        chunk: The chunk this audio belongs to
        kind: real audio or fallback silence
        audio: MP3 bytes (always a valid payload)
        duration_hint_ms: Expected playback length (silence only)
        backend: Name of the backend that produced real audio
    """

    chunk: NarrationChunk
    kind: OutcomeKind
    audio: bytes
    duration_hint_ms: int = 0
    backend: str | None = None


@dataclass(frozen=True)
class SynthesisResult:
    """Concatenated audio plus per-chunk outcomes in order."""

    audio: bytes
    outcomes: tuple[SynthesisOutcome, ...]

    @property
    def real_chunks(self) -> int:
        return sum(1 for o in self.outcomes if o.kind == OutcomeKind.REAL)

    @property
    def fallback_chunks(self) -> int:
        return sum(1 for o in self.outcomes if o.kind == OutcomeKind.FALLBACK_SILENCE)

    @property
    def has_fallback(self) -> bool:
        return self.fallback_chunks > 0

    @property
    def all_fallback(self) -> bool:
        return bool(self.outcomes) and self.real_chunks == 0


def split_text(text: str, max_chars: int = MAX_CHUNK_CHARS) -> list[str]:
    """Split narration into chunks no longer than max_chars.

    Sentence boundaries are preferred; trailing text without terminal
    punctuation is kept. Oversized sentences are split on words, and
    words longer than the budget are hard-split.

    Args:
        text: Narration text
        max_chars: Maximum characters per chunk

    Returns:
        Ordered list of non-empty chunks
    """
    text = " ".join(text.split())
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    sentences = [s.strip() for s in _SENTENCE_PATTERN.findall(text) if s.strip()] or [text]

    packed: list[str] = []
    current = ""
    for sentence in sentences:
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            packed.append(current)
        current = sentence
    if current:
        packed.append(current)

    chunks: list[str] = []
    for piece in packed:
        if len(piece) <= max_chars:
            chunks.append(piece)
            continue
        current = ""
        for word in piece.split(" "):
            while len(word) > max_chars:
                if current:
                    chunks.append(current)
                    current = ""
                chunks.append(word[:max_chars])
                word = word[max_chars:]
            if not word:
                continue
            candidate = f"{current} {word}" if current else word
            if len(candidate) <= max_chars:
                current = candidate
            else:
                chunks.append(current)
                current = word
        if current:
            chunks.append(current)
    return chunks


def is_valid_audio(payload: bytes | None, min_bytes: int = MIN_PAYLOAD_BYTES) -> bool:
    """Check that a payload looks like real audio.

    Accepted signatures: ID3 tag, MPEG frame sync, RIFF (WAV), OggS.
    Anything shorter than min_bytes is rejected regardless of header,
    which catches short HTML/JSON error bodies served with 200.
    """
    if not payload or len(payload) < min_bytes:
        return False
    if payload[:3] == b"ID3":
        return True
    if payload[0] == 0xFF and (payload[1] & 0xE0) == 0xE0:
        return True
    return payload[:4] in (b"RIFF", b"OggS")


def silence_duration_ms(text: str) -> int:
    """Playback length to stand in for text that could not be spoken."""
    return max(MIN_SILENCE_MS, len(text) * SILENCE_MS_PER_CHAR)


def silent_mp3(duration_ms: int, min_bytes: int = MIN_PAYLOAD_BYTES) -> bytes:
    """Build a decodable silent MP3 of roughly duration_ms.

    Frames carry a valid header and zeroed side info and main data,
    which decoders play as silence. The result is never shorter than
    min_bytes.
    """
    frame = MP3_FRAME_HEADER + bytes(MP3_FRAME_BYTES - len(MP3_FRAME_HEADER))
    frames = max(
        math.ceil(max(duration_ms, 0) / MP3_FRAME_MS),
        math.ceil(min_bytes / MP3_FRAME_BYTES),
        1,
    )
    return frame * frames


class SpeechBackend(ABC):
    """A speech service that turns one chunk of text into audio bytes."""

    name: str = "backend"

    @abstractmethod
    async def fetch(self, session: aiohttp.ClientSession, text: str, language: str) -> bytes:
        """Return audio bytes for text.

        Raises:
            SynthesisHTTPError: On a non-success HTTP status
            aiohttp.ClientError: On network failures
        """


class TranslateTTSBackend(SpeechBackend):
    """Google Translate's public TTS endpoint under one header profile."""

    def __init__(self, headers: dict[str, str], profile: int = 1):
        self.headers = headers
        self.name = f"translate_tts#{profile}"

    async def fetch(self, session: aiohttp.ClientSession, text: str, language: str) -> bytes:
        params = {"ie": "UTF-8", "client": "tw-ob", "tl": language, "q": text}
        async with session.get(TRANSLATE_TTS_URL, params=params, headers=self.headers) as resp:
            if resp.status != 200:
                raise SynthesisHTTPError(f"{self.name}: HTTP {resp.status}", status=resp.status)
            return await resp.read()


class CloudTTSBackend(SpeechBackend):
    """Google Cloud Text-to-Speech REST API (requires an API key)."""

    name = "cloud_tts"

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def fetch(self, session: aiohttp.ClientSession, text: str, language: str) -> bytes:
        body = {
            "input": {"text": text},
            "voice": {"languageCode": speech_locale(language), "ssmlGender": "NEUTRAL"},
            "audioConfig": {"audioEncoding": "MP3", "pitch": 0, "speakingRate": 1},
        }
        async with session.post(CLOUD_TTS_URL, params={"key": self.api_key}, json=body) as resp:
            if resp.status != 200:
                detail = (await resp.text())[:200]
                raise SynthesisHTTPError(f"{self.name}: HTTP {resp.status} {detail}", status=resp.status)
            data = await resp.json(content_type=None)
        content = data.get("audioContent") if isinstance(data, dict) else None
        if not content:
            raise SynthesisHTTPError(f"{self.name}: response without audioContent", kind=KIND_INVALID_PAYLOAD)
        return base64.b64decode(content)


def default_backends(cloud_api_key: str = "") -> list[SpeechBackend]:
    """Translate endpoint under each header profile, then cloud TTS if keyed."""
    backends: list[SpeechBackend] = [
        TranslateTTSBackend(headers, profile=i)
        for i, headers in enumerate(TRANSLATE_HEADER_PROFILES, start=1)
    ]
    if cloud_api_key:
        backends.append(CloudTTSBackend(cloud_api_key))
    return backends


class SynthesisEngine:
    """Chunked, retrying speech synthesis with silent fallback.

    Chunks are processed sequentially. Only empty narration raises;
    every backend failure ends in fallback silence instead.
    """

    def __init__(
        self,
        backends: list[SpeechBackend] | None = None,
        *,
        chunk_chars: int = MAX_CHUNK_CHARS,
        timeout: float = 20.0,
        max_attempts: int = 2,
        backoff_base: float = 2.0,
        min_payload_bytes: int = MIN_PAYLOAD_BYTES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the engine.

        Args:
            backends: Ordered speech backends (defaults to translate profiles)
            chunk_chars: Maximum characters per chunk
            timeout: Hard timeout per attempt in seconds
            max_attempts: Attempts per backend on throttling/timeouts
            backoff_base: Base delay in seconds (doubles each attempt)
            min_payload_bytes: Smallest payload accepted as audio
            sleep: Coroutine used for backoff delays
        """
        self.backends = backends if backends is not None else default_backends()
        self.chunk_chars = chunk_chars
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.min_payload_bytes = min_payload_bytes
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Config) -> "SynthesisEngine":
        return cls(
            default_backends(config.google_api_key),
            chunk_chars=config.tts_chunk_chars,
            timeout=config.tts_timeout_seconds,
            max_attempts=config.tts_max_attempts,
            backoff_base=config.tts_backoff_base,
            min_payload_bytes=config.tts_min_payload_bytes,
        )

    async def synthesize(self, text: str, language_hint: str = "en") -> bytes:
        """Synthesize narration and return the concatenated MP3 bytes."""
        result = await self.synthesize_detailed(text, language_hint)
        return result.audio

    async def synthesize_detailed(self, text: str, language_hint: str = "en") -> SynthesisResult:
        """Synthesize narration, returning audio and per-chunk outcomes.

        Args:
            text: Narration script
            language_hint: Language name or ISO code

        Returns:
            SynthesisResult with one outcome per chunk, in order

        Raises:
            EmptyNarrationError: If text is empty or whitespace
        """
        if not text or not text.strip():
            raise EmptyNarrationError("Narration text is empty")

        language = iso_code(language_hint)
        chunks = [NarrationChunk(i, t) for i, t in enumerate(split_text(text, self.chunk_chars))]
        logger.info("Synthesis started | chunks=%d language=%s chars=%d", len(chunks), language, len(text))

        connector = aiohttp.TCPConnector(ssl=create_ssl_context())
        async with aiohttp.ClientSession(connector=connector) as session:
            outcomes = []
            for chunk in chunks:
                outcomes.append(await self._synthesize_chunk(session, chunk, language))

        result = SynthesisResult(
            audio=b"".join(o.audio for o in outcomes),
            outcomes=tuple(outcomes),
        )
        logger.info(
            "Synthesis complete | chunks=%d real=%d fallback=%d bytes=%d",
            len(outcomes), result.real_chunks, result.fallback_chunks, len(result.audio),
        )
        return result

    async def _synthesize_chunk(
        self,
        session: aiohttp.ClientSession,
        chunk: NarrationChunk,
        language: str,
    ) -> SynthesisOutcome:
        for backend in self.backends:
            payload = await self._try_backend(session, backend, chunk, language)
            if payload is not None:
                logger.debug(
                    "Chunk synthesized | chunk=%d backend=%s bytes=%d",
                    chunk.index, backend.name, len(payload),
                )
                return SynthesisOutcome(chunk=chunk, kind=OutcomeKind.REAL, audio=payload, backend=backend.name)

        duration_ms = silence_duration_ms(chunk.text)
        logger.warning(
            "Chunk fallback silence | chunk=%d chars=%d duration_ms=%d",
            chunk.index, len(chunk.text), duration_ms,
        )
        return SynthesisOutcome(
            chunk=chunk,
            kind=OutcomeKind.FALLBACK_SILENCE,
            audio=silent_mp3(duration_ms, self.min_payload_bytes),
            duration_hint_ms=duration_ms,
        )

    async def _try_backend(
        self,
        session: aiohttp.ClientSession,
        backend: SpeechBackend,
        chunk: NarrationChunk,
        language: str,
    ) -> bytes | None:
        """Run one backend with retries; None means move on to the next."""
        for attempt in range(self.max_attempts):
            try:
                payload = await asyncio.wait_for(
                    backend.fetch(session, chunk.text, language),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                kind = KIND_TIMEOUT
            except SynthesisHTTPError as e:
                if not e.retryable:
                    logger.debug("Backend failed | backend=%s chunk=%d error=%s", backend.name, chunk.index, e)
                    return None
                kind = e.kind
            except aiohttp.ClientError as e:
                logger.debug(
                    "Backend network error | backend=%s chunk=%d error=%s: %s",
                    backend.name, chunk.index, type(e).__name__, e,
                )
                return None
            except Exception as e:
                logger.warning(
                    "Backend unexpected error | backend=%s chunk=%d error=%s: %s",
                    backend.name, chunk.index, type(e).__name__, e,
                )
                return None
            else:
                if is_valid_audio(payload, self.min_payload_bytes):
                    return payload
                logger.debug(
                    "Backend payload rejected | backend=%s chunk=%d bytes=%d",
                    backend.name, chunk.index, len(payload or b""),
                )
                return None

            if attempt + 1 >= self.max_attempts:
                logger.debug("Backend retries exhausted | backend=%s chunk=%d kind=%s", backend.name, chunk.index, kind)
                break
            delay = self.backoff_base * 2 ** attempt
            logger.info(
                "Backend throttled, retrying | backend=%s chunk=%d kind=%s attempt=%d delay=%.1fs",
                backend.name, chunk.index, kind, attempt + 1, delay,
            )
            await self._sleep(delay)
        return None

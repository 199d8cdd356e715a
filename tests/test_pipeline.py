import asyncio
import os
import sys
import tempfile
import unittest
from datetime import datetime, timezone

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from agents.interests import InterestTracker  # noqa: E402
from agents.sentiment import SentimentBatch, SentimentUnavailableError  # noqa: E402
from agents.translator import TranslationResult  # noqa: E402
from config import Config  # noqa: E402
from database import Database  # noqa: E402
from errors import (  # noqa: E402
    ARTIFACT_STORE_FAILED,
    DELIVERY_FAILED,
    EMPTY_COLLECTION,
    RECOVERY_DEGRADED,
    RENDER_SKIPPED,
    SCRIPT_FALLBACK,
    SENTIMENT_UNAVAILABLE,
    STAGE_ERROR,
    SYNTHESIS_FALLBACK,
    TRANSLATION_SKIPPED,
    SynthesisHTTPError,
    TranslationQuotaError,
)
from memory.interest_cache import InterestCache  # noqa: E402
from models.context import PipelineContext, PipelineRequest, RunStatus, SentimentReading  # noqa: E402
from models.digest import DigestItem, Sentiment  # noqa: E402
from models.source import RawSourceItem  # noqa: E402
from pipeline import (  # noqa: E402
    RAW_ITEMS_TIER,
    ParallelStage,
    Pipeline,
    SentimentStage,
    Stage,
    StagePolicy,
    StageResult,
    StageStatus,
    run_stage,
)
from storage import ArtifactStore  # noqa: E402
from synthesis import SpeechBackend, SynthesisEngine  # noqa: E402

FAKE_MP3 = b"ID3" + bytes(2000)

CURATED = """```json
{"date":"2025-01-10","language":"English","topic":"all","items":[
{"title":"Budget passed","link":"https://example.com/a","summary":"Parliament passed the budget.","source":"Example News","pubDate":null},
{"title":"Rain in Bengaluru","link":"https://example.com/b","summary":"A "historic" downpour hit the city.","source":null,"pubDate":null},
{"title":"Cricket final tonight","link":null,"summary":"India face Australia in the final match.","source":null,"pubDate":null}
]}
```"""


def raw_items() -> list[RawSourceItem]:
    published = datetime(2025, 1, 10, 8, tzinfo=timezone.utc)
    return [
        RawSourceItem(title="Budget passed", link="https://example.com/a", description="<p>Budget text</p>",
                      published_at=published, source="Example News"),
        RawSourceItem(title="Rain in Bengaluru", link="https://example.com/b", description="Rain text",
                      source="Example News"),
        RawSourceItem(title="Cricket final tonight", link="https://example.com/c", description="Cricket text",
                      published_at=published, source="Sports Wire"),
    ]


async def fake_collect(urls, **kwargs) -> list[RawSourceItem]:
    return raw_items()


async def empty_collect(urls, **kwargs) -> list[RawSourceItem]:
    return []


async def broken_collect(urls, **kwargs) -> list[RawSourceItem]:
    raise RuntimeError("feed layer exploded")


class FakeCurator:
    def __init__(self, text: str = CURATED, error: Exception | None = None):
        self.text = text
        self.error = error
        self.languages: list[str] = []

    async def curate(self, items, topic, language):
        self.languages.append(language)
        if self.error:
            raise self.error
        return self.text


class FakeTranslator:
    def __init__(self, error: Exception | None = None, prefix: str = "HI "):
        self.error = error
        self.prefix = prefix

    @staticmethod
    def needs_translation(language: str) -> bool:
        return language not in ("en", "english")

    async def translate(self, items, language):
        if self.error:
            raise self.error
        translated = [item.with_text(self.prefix + item.title, self.prefix + item.summary) for item in items]
        return TranslationResult(items=translated, translated=len(translated))


class FakeScriptWriter:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def write(self, items, language):
        if self.error:
            raise self.error
        return "Good morning. " + " ".join(f"{item.title}." for item in items) + " Goodbye."


class FakeSentiment:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def analyze(self, items):
        if self.error:
            raise self.error
        return SentimentBatch(readings=[SentimentReading(Sentiment.POSITIVE, 0.9) for _ in items])


class FlakyBackend(SpeechBackend):
    """Throttles the first `failures` calls, then returns audio."""

    name = "flaky"

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    async def fetch(self, session, text, language):
        self.calls += 1
        if self.calls <= self.failures:
            raise SynthesisHTTPError("429", status=429)
        return FAKE_MP3


class DeadBackend(SpeechBackend):
    name = "dead"

    async def fetch(self, session, text, language):
        raise SynthesisHTTPError("403", status=403)


class FakeChannel:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple[str, object]] = []

    async def deliver(self, recipient, message) -> bool:
        self.sent.append((recipient, message))
        return self.ok


async def no_sleep(delay: float) -> None:
    return None


class PipelineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(":memory:")
        self.channel = FakeChannel()
        self.backend = FlakyBackend(failures=2)
        self.request = PipelineRequest(user_id="u1", email="u1@example.com")

    def tearDown(self) -> None:
        self.db.close()
        self.tmp.cleanup()

    def _pipeline(self, **overrides) -> Pipeline:
        parts = {
            "db": self.db,
            "collect": fake_collect,
            "curator": FakeCurator(),
            "translator": FakeTranslator(),
            "scriptwriter": FakeScriptWriter(),
            "sentiment": FakeSentiment(),
            "interests": InterestTracker(self.db, InterestCache()),
            "engine": SynthesisEngine([self.backend], max_attempts=3, sleep=no_sleep),
            "store": ArtifactStore(self.tmp.name),
            "channel": self.channel,
        }
        parts.update(overrides)
        return Pipeline(Config(google_api_key="test"), **parts)

    async def test_end_to_end_delivered(self) -> None:
        curator = FakeCurator()
        result = await self._pipeline(curator=curator).run(self.request)

        self.assertEqual(result.status, RunStatus.DELIVERED, result.reason)
        self.assertEqual(curator.languages, ["en"])
        ctx = result.context
        self.assertEqual(len(ctx.enriched_items), 3)
        self.assertEqual(ctx.recovery_tier, "repaired_json")
        self.assertEqual(ctx.degradation_reasons, [RECOVERY_DEGRADED])
        self.assertEqual(result.fallback_chunks, 0)
        self.assertEqual(self.backend.calls, 3)
        self.assertIsNotNone(ctx.document)
        self.assertEqual(set(ctx.artifacts), {"audio", "document"})
        self.assertEqual(ctx.suggested_topics, ("international", "national", "sports"))

        self.assertEqual(len(self.channel.sent), 1)
        recipient, message = self.channel.sent[0]
        self.assertEqual(recipient, "u1@example.com")
        self.assertEqual(len(message.attachments), 2)
        self.assertNotIn("Note:", message.text_body)

        runs = self.db.recent_runs()
        self.assertEqual(runs[0]["status"], "DELIVERED")
        self.assertEqual(runs[0]["run_id"], ctx.run_id)

    async def test_enrichment_fills_from_raw_items(self) -> None:
        result = await self._pipeline().run(self.request)
        items = result.context.enriched_items
        self.assertEqual(items[1].title, "Rain in Bengaluru")
        self.assertIn('"historic"', items[1].summary)
        self.assertEqual(items[1].source, "Example News")
        self.assertEqual(items[2].link, "https://example.com/c")
        self.assertEqual(items[2].topic, "sports")
        self.assertTrue(all(item.sentiment == Sentiment.POSITIVE for item in items))

    async def test_empty_collection_fails_without_delivery(self) -> None:
        result = await self._pipeline(collect=empty_collect).run(self.request)
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.reason, EMPTY_COLLECTION)
        self.assertEqual(result.failed_stage, "collect")
        self.assertEqual(self.channel.sent, [])
        self.assertEqual(str(result), "FAILED(EMPTY_COLLECTION)")

    async def test_fatal_stage_exception_becomes_stage_error(self) -> None:
        result = await self._pipeline(collect=broken_collect).run(self.request)
        self.assertEqual(result.reason, STAGE_ERROR)
        self.assertEqual(result.failed_stage, "collect")

    async def test_delivery_failure_fails_run(self) -> None:
        channel = FakeChannel(ok=False)
        result = await self._pipeline(channel=channel).run(self.request)
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(result.reason, DELIVERY_FAILED)
        self.assertEqual(result.failed_stage, "deliver")
        self.assertEqual(len(channel.sent), 1)
        self.assertEqual(self.db.recent_runs()[0]["reason"], DELIVERY_FAILED)

    async def test_curator_error_uses_raw_items(self) -> None:
        curator = FakeCurator(error=RuntimeError("model down"))
        result = await self._pipeline(curator=curator).run(self.request)
        self.assertTrue(result.delivered)
        ctx = result.context
        self.assertEqual(ctx.recovery_tier, RAW_ITEMS_TIER)
        self.assertTrue(ctx.has_degradation(RECOVERY_DEGRADED))
        self.assertEqual([i.summary for i in ctx.recovered_items], ["Budget text", "Rain text", "Cricket text"])

    async def test_script_failure_uses_fallback_script(self) -> None:
        writer = FakeScriptWriter(error=RuntimeError("quota"))
        result = await self._pipeline(scriptwriter=writer).run(self.request)
        self.assertTrue(result.delivered)
        self.assertTrue(result.context.has_degradation(SCRIPT_FALLBACK))
        self.assertTrue(result.context.script.startswith("Hello, here is your news digest with 3 stories."))

    async def test_sentiment_unavailable_defaults_to_neutral(self) -> None:
        sentiment = FakeSentiment(error=SentimentUnavailableError("no key"))
        result = await self._pipeline(sentiment=sentiment).run(self.request)
        self.assertTrue(result.delivered)
        self.assertTrue(result.context.has_degradation(SENTIMENT_UNAVAILABLE))
        self.assertTrue(all(i.sentiment == Sentiment.NEUTRAL for i in result.context.enriched_items))
        self.assertTrue(all(i.sentiment_score == 0.5 for i in result.context.enriched_items))

    async def test_translation_applied_and_links_kept(self) -> None:
        request = PipelineRequest(user_id="u1", email="u1@example.com", language="hi")
        result = await self._pipeline().run(request)
        self.assertTrue(result.translated)
        items = result.context.enriched_items
        self.assertTrue(all(i.title.startswith("HI ") for i in items))
        self.assertEqual(items[2].link, "https://example.com/c")

    async def test_translation_quota_continues_untranslated(self) -> None:
        request = PipelineRequest(user_id="u1", email="u1@example.com", language="hi")
        translator = FakeTranslator(error=TranslationQuotaError("429 quota"))
        result = await self._pipeline(translator=translator).run(request)
        self.assertEqual(result.status, RunStatus.DELIVERED)
        self.assertFalse(result.translated)
        self.assertTrue(result.context.has_degradation(TRANSLATION_SKIPPED))
        self.assertEqual(result.context.enriched_items[0].title, "Budget passed")

    async def test_synthesis_fallback_is_disclosed(self) -> None:
        engine = SynthesisEngine([DeadBackend()], max_attempts=1, sleep=no_sleep)
        result = await self._pipeline(engine=engine).run(self.request)
        self.assertEqual(result.status, RunStatus.DELIVERED)
        self.assertTrue(result.context.has_degradation(SYNTHESIS_FALLBACK))
        self.assertGreater(result.fallback_chunks, 0)
        _, message = self.channel.sent[0]
        self.assertIn("Note:", message.text_body)
        self.assertIn(b"could not be voiced", result.context.document)

    async def test_render_failure_delivers_audio_only(self) -> None:
        def broken_renderer(items, ctx):
            raise RuntimeError("template exploded")

        result = await self._pipeline(renderer=broken_renderer).run(self.request)
        self.assertEqual(result.status, RunStatus.DELIVERED)
        self.assertTrue(result.context.has_degradation(RENDER_SKIPPED))
        self.assertIsNone(result.context.document)
        self.assertEqual(set(result.context.artifacts), {"audio"})
        _, message = self.channel.sent[0]
        self.assertEqual([a.mime_type for a in message.attachments], ["audio/mpeg"])

    async def test_renderer_returning_none_skips_document(self) -> None:
        result = await self._pipeline(renderer=lambda items, ctx: None).run(self.request)
        self.assertTrue(result.delivered)
        self.assertTrue(result.context.has_degradation(RENDER_SKIPPED))
        self.assertIsNone(result.context.document)

    async def test_artifact_store_failure_still_delivers(self) -> None:
        class BrokenStore(ArtifactStore):
            def put(self, key: str, data: bytes) -> str:
                raise OSError("disk full")

        result = await self._pipeline(store=BrokenStore(self.tmp.name)).run(self.request)
        self.assertEqual(result.status, RunStatus.DELIVERED)
        self.assertTrue(result.context.has_degradation(ARTIFACT_STORE_FAILED))
        self.assertIsNone(result.context.artifacts)
        self.assertEqual(len(self.channel.sent), 1)
        _, message = self.channel.sent[0]
        self.assertEqual(len(message.attachments), 2)

    async def test_concurrent_runs_are_isolated(self) -> None:
        pipeline = self._pipeline(engine=SynthesisEngine([FlakyBackend()], sleep=no_sleep))
        other = PipelineRequest(user_id="u2", email="u2@example.com", topic="sports")
        first, second = await asyncio.gather(pipeline.run(self.request), pipeline.run(other))
        self.assertTrue(first.delivered and second.delivered)
        self.assertNotEqual(first.context.run_id, second.context.run_id)
        self.assertEqual(first.context.request.user_id, "u1")
        self.assertEqual({i.topic for i in second.context.enriched_items}, {"sports"})


class StageRunnerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.ctx = PipelineContext(request=PipelineRequest(user_id="u1", email="a@b.c"), run_id="r1")

    async def test_degrade_stage_exception_uses_fallback(self) -> None:
        class Broken(Stage):
            name = "broken"
            failure_reason = "BROKEN"

            async def run(self, ctx):
                raise RuntimeError("nope")

            def fallback(self, ctx):
                return ctx.advance(script="fallback")

        result = await run_stage(Broken(), self.ctx)
        self.assertEqual(result.status, StageStatus.DEGRADED)
        self.assertEqual(result.context.script, "fallback")
        self.assertEqual(result.context.degradations, (("broken", "BROKEN"),))

    async def test_fatal_stage_failed_result_passes_through(self) -> None:
        class Refuses(Stage):
            name = "refuses"
            policy = StagePolicy.FATAL

            async def run(self, ctx):
                return StageResult.failed("NOPE")

        result = await run_stage(Refuses(), self.ctx)
        self.assertTrue(result.is_failed)
        self.assertEqual(result.reason, "NOPE")

    async def test_parallel_stage_merges_outputs(self) -> None:
        class Writes(Stage):
            name = "writes"
            writes = ("script",)

            async def run(self, ctx):
                return StageResult.degraded(ctx.advance(script="hi"), "PARTIAL")

        ctx = self.ctx.advance(recovered_items=(DigestItem(title="T", summary="S"),))
        result = await run_stage(ParallelStage(Writes(), SentimentStage(FakeSentiment())), ctx)
        self.assertEqual(result.status, StageStatus.DEGRADED)
        self.assertEqual(result.context.script, "hi")
        self.assertEqual(len(result.context.sentiments), 1)
        self.assertEqual(result.context.degradations, (("writes", "PARTIAL"),))

    def test_parallel_stage_rejects_overlapping_writes(self) -> None:
        with self.assertRaises(ValueError):
            ParallelStage(SentimentStage(FakeSentiment()), SentimentStage(FakeSentiment()))


if __name__ == "__main__":
    unittest.main()

"""Pipeline orchestration for personalized news digests.

Pipeline Flow:
    1. COLLECT: Fetch topic feeds, dedup, curate with the model, recover items
    2. TRANSLATE: Translate items when the requested language is not English
    3. SCRIPT: Write the narration script (deterministic fallback on failure)
    4. RANK + SENTIMENT: Update interest profile and score items, in parallel
    5. SYNTHESIZE: Chunked speech synthesis with silent fallback
    6. ENRICH: Merge sentiment and topic into the final items
    7. RENDER: Markdown document for the attachment
    8. PERSIST: Store audio and document in the artifact store
    9. DELIVER: Email the digest

Failure Policy:
    Each stage is FATAL or DEGRADE. The runner below is the only place
    that decides what a failure means: a FATAL stage that fails (returns
    failed or raises) ends the run as FAILED(reason); a DEGRADE stage that
    fails is annotated on the context and the run continues with the
    stage's fallback output. Only Collect, Enrich and Deliver are FATAL.

Each run gets its own run_id (log correlation) and its own
PipelineContext; concurrent runs share nothing mutable.
"""

import asyncio
import logging
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from agents.curator import CuratorAgent
from agents.interests import DEFAULT_INTERESTS, InterestTracker, assign_topic, rank_topics
from agents.scriptwriter import ScriptWriterAgent, fallback_script
from agents.sentiment import SentimentAnalyzer
from agents.translator import TranslatorAgent
from config import Config
from database import Database
from delivery import EmailChannel, attachment_names, build_message
from errors import (
    ARTIFACT_STORE_FAILED,
    DELIVERY_FAILED,
    EMPTY_COLLECTION,
    INTEREST_UNAVAILABLE,
    RECOVERY_DEGRADED,
    RENDER_SKIPPED,
    SCRIPT_FALLBACK,
    SENTIMENT_UNAVAILABLE,
    STAGE_ERROR,
    SYNTHESIS_FALLBACK,
    TRANSLATION_SKIPPED,
    StageFailure,
)
from feeds import collect_raw_items
from memory.interest_cache import InterestCache
from models.context import (
    PipelineContext,
    PipelineRequest,
    RunResult,
    RunStatus,
    SentimentReading,
)
from models.digest import DigestItem
from models.schedule import ScheduledTask
from models.source import RawSourceItem
from observability.logging import clear_context, set_run_context, set_stage_context
from observability.tracing import RunTracer
from recovery import recover
from renderer import render
from storage import ArtifactStore
from synthesis import SynthesisEngine

logger = logging.getLogger(__name__)

RAW_SUMMARY_CHARS = 150
RAW_ITEMS_TIER = "raw_items"
SUGGESTED_TOPICS = 3

CollectFn = Callable[..., Awaitable[list[RawSourceItem]]]
RenderFn = Callable[[list[DigestItem], PipelineContext], bytes | None]


class StagePolicy(str, Enum):
    FATAL = "fatal"
    DEGRADE = "degrade"


class StageStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    """What a stage produced.

    ok and degraded carry the next context; failed carries only a reason.
    Degraded reasons are recorded on the context by the runner.
    """

    status: StageStatus
    context: PipelineContext | None = None
    reasons: tuple[str, ...] = ()

    @classmethod
    def ok(cls, ctx: PipelineContext) -> "StageResult":
        return cls(StageStatus.OK, ctx)

    @classmethod
    def degraded(cls, ctx: PipelineContext, *reasons: str) -> "StageResult":
        return cls(StageStatus.DEGRADED, ctx, tuple(reasons))

    @classmethod
    def failed(cls, reason: str) -> "StageResult":
        return cls(StageStatus.FAILED, None, (reason,))

    @property
    def is_failed(self) -> bool:
        return self.status == StageStatus.FAILED

    @property
    def reason(self) -> str | None:
        return self.reasons[0] if self.reasons else None


class Stage(ABC):
    """One step of the pipeline.

    Attributes:
        name: Stage name used in logs, spans and degradation records
        policy: FATAL or DEGRADE
        writes: Context fields this stage sets
        failure_reason: Reason recorded when run() raises
    """

    name: str = "stage"
    policy: StagePolicy = StagePolicy.DEGRADE
    writes: tuple[str, ...] = ()
    failure_reason: str = STAGE_ERROR

    @abstractmethod
    async def run(self, ctx: PipelineContext) -> StageResult:
        ...

    async def run_traced(self, ctx: PipelineContext, tracer: RunTracer | None) -> StageResult:
        return await self.run(ctx)

    def fallback(self, ctx: PipelineContext) -> PipelineContext:
        """Context to continue with when a DEGRADE stage fails."""
        return ctx


async def run_stage(stage: Stage, ctx: PipelineContext, tracer: RunTracer | None = None) -> StageResult:
    """Run one stage and apply its failure policy.

    Exceptions never escape (except cancellation): they are converted to
    failed (FATAL) or degraded-with-fallback (DEGRADE) results. Degraded
    reasons are recorded on the returned context.
    """
    set_stage_context(stage.name)
    tracer = tracer or RunTracer(ctx.run_id)
    with tracer.stage(stage.name) as attrs:
        try:
            result = await stage.run_traced(ctx, tracer)
        except asyncio.CancelledError:
            raise
        except StageFailure as e:
            logger.warning("Stage failed | stage=%s reason=%s error=%s", stage.name, e.reason, e)
            result = StageResult.failed(e.reason)
        except Exception as e:
            logger.error(
                "Stage error | stage=%s error=%s: %s", stage.name, type(e).__name__, e,
                exc_info=stage.policy == StagePolicy.FATAL,
            )
            result = StageResult.failed(stage.failure_reason)

        if result.is_failed and stage.policy == StagePolicy.DEGRADE:
            result = StageResult.degraded(stage.fallback(ctx), *result.reasons)

        if result.status == StageStatus.DEGRADED:
            next_ctx = result.context
            for reason in result.reasons:
                next_ctx = next_ctx.degrade(stage.name, reason)
            result = StageResult(StageStatus.DEGRADED, next_ctx, result.reasons)
            if result.reasons:
                logger.info("Stage degraded | stage=%s reasons=%s", stage.name, ",".join(result.reasons))

        attrs["status"] = result.status.value
        if result.reason:
            attrs["reason"] = result.reason
    set_stage_context("-")
    return result


class ParallelStage(Stage):
    """Runs independent stages concurrently on the same input context.

    Children must write disjoint fields. Their outputs and degradations
    are merged into one context before the next stage runs.
    """

    def __init__(self, *stages: Stage):
        seen: set[str] = set()
        for stage in stages:
            overlap = seen.intersection(stage.writes)
            if overlap:
                raise ValueError(f"Parallel stages write the same fields: {sorted(overlap)}")
            seen.update(stage.writes)
        self.stages = stages
        self.name = "+".join(s.name for s in stages)
        self.writes = tuple(seen)
        self.policy = (
            StagePolicy.FATAL if any(s.policy == StagePolicy.FATAL for s in stages) else StagePolicy.DEGRADE
        )

    async def run(self, ctx: PipelineContext) -> StageResult:
        return await self.run_traced(ctx, None)

    async def run_traced(self, ctx: PipelineContext, tracer: RunTracer | None) -> StageResult:
        results = await asyncio.gather(*(run_stage(s, ctx, tracer) for s in self.stages))

        for stage, result in zip(self.stages, results):
            if result.is_failed:
                raise StageFailure(result.reason or STAGE_ERROR, f"{stage.name} failed")

        updates: dict[str, Any] = {}
        added: list[tuple[str, str]] = []
        base = len(ctx.degradations)
        for stage, result in zip(self.stages, results):
            for name in stage.writes:
                value = getattr(result.context, name)
                if value is not None:
                    updates[name] = value
            added.extend(result.context.degradations[base:])

        merged = ctx.advance(**updates) if updates else ctx
        for stage_name, reason in added:
            merged = merged.degrade(stage_name, reason)
        if any(r.status == StageStatus.DEGRADED for r in results):
            return StageResult(StageStatus.DEGRADED, merged)
        return StageResult.ok(merged)


def items_from_raw(raw_items: list[RawSourceItem], limit: int) -> list[DigestItem]:
    """Build digest items straight from feed entries.

    Used when curation produced nothing usable. Summary is the plain
    description (title when empty) cut to 150 characters.
    """
    items = []
    for raw in raw_items[:limit]:
        summary = (raw.plain_description or raw.title)[:RAW_SUMMARY_CHARS]
        items.append(DigestItem(
            title=raw.title,
            link=raw.link,
            summary=summary,
            source=raw.source,
            published_at=raw.published_at.isoformat() if raw.published_at else None,
        ))
    return items


class CollectStage(Stage):
    name = "collect"
    policy = StagePolicy.FATAL
    writes = ("raw_items", "recovered_items", "recovery_tier")

    def __init__(self, config: Config, curator: CuratorAgent, collect: CollectFn = collect_raw_items):
        self.config = config
        self.curator = curator
        self.collect = collect

    async def run(self, ctx: PipelineContext) -> StageResult:
        request = ctx.request
        raw = await self.collect(
            self.config.feeds_for(request.topic),
            max_items=self.config.max_raw_items,
            region=request.region,
            timeout=self.config.feed_timeout,
            max_concurrent=self.config.max_workers,
        )
        if not raw:
            logger.warning("No raw items collected | topic=%s region=%s", request.topic, request.region)
            return StageResult.failed(EMPTY_COLLECTION)
        ctx = ctx.advance(raw_items=tuple(raw))

        # Curate in English; the translate stage handles the target language
        text = None
        try:
            text = await self.curator.curate(list(raw), request.topic, "en")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Curation failed, using raw items | error=%s: %s", type(e).__name__, e)

        recovered = recover(text)
        limit = self.config.max_digest_items
        if recovered.items:
            items = list(recovered.items)[:limit]
            tier = recovered.tier
            degraded = recovered.degraded
        else:
            items = items_from_raw(list(raw), limit)
            tier = RAW_ITEMS_TIER
            degraded = True

        logger.info("Collect complete | raw=%d items=%d tier=%s", len(raw), len(items), tier)
        ctx = ctx.advance(recovered_items=tuple(items), recovery_tier=tier)
        if degraded:
            return StageResult.degraded(ctx, RECOVERY_DEGRADED)
        return StageResult.ok(ctx)


class TranslateStage(Stage):
    name = "translate"
    writes = ("translated_items",)
    failure_reason = TRANSLATION_SKIPPED

    def __init__(self, translator: TranslatorAgent):
        self.translator = translator

    async def run(self, ctx: PipelineContext) -> StageResult:
        language = ctx.request.language
        if not self.translator.needs_translation(language):
            return StageResult.ok(ctx)
        result = await self.translator.translate(list(ctx.items), language)
        if result.translated == 0:
            logger.warning("Nothing translated, continuing untranslated | language=%s", language)
            return StageResult.degraded(ctx, TRANSLATION_SKIPPED)
        logger.info(
            "Translate complete | language=%s translated=%d failed_batches=%d",
            language, result.translated, result.failed_batches,
        )
        return StageResult.ok(ctx.advance(translated_items=tuple(result.items)))


class ScriptStage(Stage):
    name = "script"
    writes = ("script",)
    failure_reason = SCRIPT_FALLBACK

    def __init__(self, writer: ScriptWriterAgent):
        self.writer = writer

    async def run(self, ctx: PipelineContext) -> StageResult:
        script = await self.writer.write(list(ctx.items), ctx.request.language)
        return StageResult.ok(ctx.advance(script=script))

    def fallback(self, ctx: PipelineContext) -> PipelineContext:
        return ctx.advance(script=fallback_script(list(ctx.items), ctx.request.user_name))


class InterestRankingStage(Stage):
    name = "interests"
    writes = ("suggested_topics",)
    failure_reason = INTEREST_UNAVAILABLE

    def __init__(self, tracker: InterestTracker | None):
        self.tracker = tracker

    @staticmethod
    def _suggest(ranked: list[str], topic: str) -> tuple[str, ...]:
        return tuple(t for t in ranked if t != topic)[:SUGGESTED_TOPICS]

    async def run(self, ctx: PipelineContext) -> StageResult:
        if self.tracker is None:
            raise StageFailure(INTEREST_UNAVAILABLE, "No interest store configured")
        request = ctx.request
        titles = [item.title for item in ctx.items]
        # Blocks the loop for a few small SQLite writes while sentiment runs
        # alongside. The connection belongs to the loop thread, so no to_thread.
        ranked = self.tracker.record_request(request.user_id, request.topic, titles)
        return StageResult.ok(ctx.advance(suggested_topics=self._suggest(ranked, request.topic)))

    def fallback(self, ctx: PipelineContext) -> PipelineContext:
        ranked = rank_topics(DEFAULT_INTERESTS)
        return ctx.advance(suggested_topics=self._suggest(ranked, ctx.request.topic))


class SentimentStage(Stage):
    name = "sentiment"
    writes = ("sentiments",)
    failure_reason = SENTIMENT_UNAVAILABLE

    def __init__(self, analyzer: SentimentAnalyzer):
        self.analyzer = analyzer

    async def run(self, ctx: PipelineContext) -> StageResult:
        batch = await self.analyzer.analyze(list(ctx.items))
        return StageResult.ok(ctx.advance(sentiments=tuple(batch.readings)))

    def fallback(self, ctx: PipelineContext) -> PipelineContext:
        return ctx.advance(sentiments=tuple(SentimentReading() for _ in ctx.items))


class SynthesizeStage(Stage):
    name = "synthesize"
    writes = ("synthesis",)
    failure_reason = SYNTHESIS_FALLBACK

    def __init__(self, engine: SynthesisEngine):
        self.engine = engine

    async def run(self, ctx: PipelineContext) -> StageResult:
        result = await self.engine.synthesize_detailed(ctx.script or "", ctx.request.language)
        ctx = ctx.advance(synthesis=result)
        if result.has_fallback:
            return StageResult.degraded(ctx, SYNTHESIS_FALLBACK)
        return StageResult.ok(ctx)


def _raw_lookup(raw_items: tuple[RawSourceItem, ...]) -> dict[str, RawSourceItem]:
    lookup: dict[str, RawSourceItem] = {}
    for raw in raw_items:
        if raw.link:
            lookup.setdefault(raw.link.strip(), raw)
        lookup.setdefault(raw.title.strip().lower(), raw)
    return lookup


class EnrichStage(Stage):
    """Pure merge of items, sentiment readings and topic labels.

    Link, source and publication date missing from an item are filled
    from the raw entry its untranslated counterpart came from.
    """

    name = "enrich"
    policy = StagePolicy.FATAL
    writes = ("enriched_items",)

    async def run(self, ctx: PipelineContext) -> StageResult:
        items = ctx.translated_items if ctx.translated_items is not None else ctx.recovered_items
        if not items:
            raise StageFailure(STAGE_ERROR, "No items to enrich")
        originals = ctx.recovered_items or items
        readings = ctx.sentiments or ()
        if len(readings) != len(items):
            logger.warning("Sentiment count mismatch, using neutral | items=%d readings=%d", len(items), len(readings))
            readings = tuple(SentimentReading() for _ in items)
        lookup = _raw_lookup(ctx.raw_items or ())

        enriched = []
        for i, (item, reading) in enumerate(zip(items, readings)):
            original = originals[i] if i < len(originals) else item
            raw = lookup.get((original.link or "").strip()) or lookup.get(original.title.strip().lower())
            fill: dict[str, Any] = {}
            if raw is not None:
                if not item.link and raw.link:
                    fill["link"] = raw.link
                if not item.source and raw.source:
                    fill["source"] = raw.source
                if not item.published_at and raw.published_at:
                    fill["published_at"] = raw.published_at.isoformat()
            merged = item.model_copy(update=fill) if fill else item
            enriched.append(merged.enriched(
                sentiment=reading.sentiment,
                sentiment_score=reading.score,
                topic=assign_topic(original, ctx.request.topic),
            ))

        logger.info("Enrich complete | items=%d", len(enriched))
        return StageResult.ok(ctx.advance(enriched_items=tuple(enriched)))


class RenderStage(Stage):
    name = "render"
    writes = ("document",)
    failure_reason = RENDER_SKIPPED

    def __init__(self, renderer: RenderFn = render):
        self.renderer = renderer

    async def run(self, ctx: PipelineContext) -> StageResult:
        document = self.renderer(list(ctx.items), ctx)
        if document is None:
            return StageResult.degraded(ctx, RENDER_SKIPPED)
        return StageResult.ok(ctx.advance(document=document))


class PersistStage(Stage):
    name = "persist"
    writes = ("artifacts",)
    failure_reason = ARTIFACT_STORE_FAILED

    def __init__(self, store: ArtifactStore | None, clock: Callable[[], datetime] | None = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, ctx: PipelineContext) -> StageResult:
        if self.store is None:
            raise StageFailure(ARTIFACT_STORE_FAILED, "No artifact store configured")
        audio_name, document_name = attachment_names(self.clock())
        user = ctx.request.user_id
        artifacts: dict[str, str] = {}
        if ctx.synthesis is not None and ctx.synthesis.audio:
            artifacts["audio"] = await asyncio.to_thread(self.store.put, f"{user}/{audio_name}", ctx.synthesis.audio)
        if ctx.document is not None:
            artifacts["document"] = await asyncio.to_thread(self.store.put, f"{user}/{document_name}", ctx.document)
        logger.info("Artifacts stored | count=%d", len(artifacts))
        return StageResult.ok(ctx.advance(artifacts=artifacts))


class DeliverStage(Stage):
    name = "deliver"
    policy = StagePolicy.FATAL
    writes = ("delivered",)
    failure_reason = DELIVERY_FAILED

    def __init__(self, channel: EmailChannel):
        self.channel = channel

    async def run(self, ctx: PipelineContext) -> StageResult:
        message = build_message(ctx, list(ctx.items))
        if not await self.channel.deliver(ctx.request.email, message):
            return StageResult.failed(DELIVERY_FAILED)
        return StageResult.ok(ctx.advance(delivered=True))


class Pipeline:
    """Runs digest requests end to end.

    Collaborators are built from config unless passed in, so tests can
    swap any of them for fakes.

    Example:
        >>> pipeline = Pipeline(config)
        >>> result = await pipeline.run(PipelineRequest(user_id="u1", email="a@b.c", topic="sports"))
        >>> str(result)
        'DELIVERED(items=12)'
    """

    def __init__(
        self,
        config: Config,
        *,
        db: Database | None = None,
        collect: CollectFn = collect_raw_items,
        curator: CuratorAgent | None = None,
        translator: TranslatorAgent | None = None,
        scriptwriter: ScriptWriterAgent | None = None,
        sentiment: SentimentAnalyzer | None = None,
        interests: InterestTracker | None = None,
        engine: SynthesisEngine | None = None,
        renderer: RenderFn = render,
        store: ArtifactStore | None = None,
        channel: EmailChannel | None = None,
    ):
        self.config = config
        self._owns_db = db is None
        self.db = db if db is not None else Database(config.db_path)
        if interests is None:
            cache = InterestCache(config.interest_cache_ttl_seconds, config.interest_cache_max_entries)
            interests = InterestTracker(self.db, cache)

        self.stages: list[Stage] = [
            CollectStage(config, curator or CuratorAgent(config), collect),
            TranslateStage(translator or TranslatorAgent(config)),
            ScriptStage(scriptwriter or ScriptWriterAgent(config)),
            ParallelStage(InterestRankingStage(interests), SentimentStage(sentiment or SentimentAnalyzer(config))),
            SynthesizeStage(engine or SynthesisEngine.from_config(config)),
            EnrichStage(),
            RenderStage(renderer),
            PersistStage(store if store is not None else ArtifactStore(config.artifacts_dir)),
            DeliverStage(channel or EmailChannel(config)),
        ]

        if config.enable_logfire:
            from observability.tracing import setup_tracing
            setup_tracing(enabled=True, token=config.logfire_token)

    async def run(self, request: PipelineRequest) -> RunResult:
        """Execute one digest run.

        Returns:
            RunResult: DELIVERED, or FAILED with the reason and stage
        """
        run_id = uuid.uuid4().hex[:8]
        set_run_context(run_id, request.user_id)
        tracer = RunTracer(run_id)
        start = time.time()
        ctx = PipelineContext(request=request, run_id=run_id)
        logger.info(
            "Pipeline started | user=%s topic=%s language=%s region=%s source=%s",
            request.user_id, request.topic, request.language, request.region or "-", request.source,
        )

        result: RunResult | None = None
        try:
            for stage in self.stages:
                outcome = await run_stage(stage, ctx, tracer)
                if outcome.is_failed:
                    result = RunResult(RunStatus.FAILED, ctx, reason=outcome.reason, failed_stage=stage.name)
                    break
                ctx = outcome.context
            if result is None:
                result = RunResult(RunStatus.DELIVERED, ctx)
            result.duration = time.time() - start
            result.extra["stages"] = len(tracer.timings)

            logger.info(
                "Pipeline done | status=%s reason=%s items=%d real=%d fallback=%d "
                "translated=%s document=%s degradations=%s duration=%.1fs",
                result.status.value, result.reason or "-", result.item_count,
                result.real_chunks, result.fallback_chunks, result.translated,
                result.has_document, ",".join(ctx.degradation_reasons) or "-", result.duration,
            )
            logger.debug("Stage timings | %s", tracer.summary()["stages"])
            self._save(result, start)
            return result
        finally:
            clear_context()

    async def run_for_task(self, task: ScheduledTask) -> RunResult:
        """Run the pipeline for a scheduled task."""
        request = PipelineRequest(
            user_id=task.user_id,
            email=task.email,
            language=task.language,
            topic=task.topic,
            region=task.region,
            source="scheduled",
        )
        return await self.run(request)

    def _save(self, result: RunResult, started_at: float) -> None:
        try:
            self.db.save_run(result, started_at=started_at)
        except sqlite3.Error as e:
            logger.error("Run history save failed | run=%s error=%s", result.context.run_id, e)

    def close(self) -> None:
        """Clean up resources."""
        if self._owns_db:
            self.db.close()


async def run_once(config: Config, request: PipelineRequest) -> RunResult:
    """Run one on-demand digest and close the pipeline afterwards."""
    pipeline = Pipeline(config)
    try:
        return await pipeline.run(request)
    finally:
        pipeline.close()

"""Pipeline request, context and result models.

The PipelineContext is the single value threaded through every stage of
a run. It is frozen: a stage never edits it, it calls ``advance()`` to get
a new context with its own fields filled in. A field that an earlier
stage already set cannot be overwritten, so later stages can rely on
what earlier stages produced. Degradations are the one append-only
field, collected as ``(stage, reason)`` pairs.

RunResult is the terminal value a run produces: DELIVERED or
FAILED(reason), plus the final context and a few counters for logging
and the run history table.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import Severity
from models.digest import DigestItem, Sentiment
from models.source import RawSourceItem

if TYPE_CHECKING:
    from synthesis import SynthesisResult


class PipelineRequest(BaseModel):
    """What the caller asked for: who gets the digest and what it covers.

    Attributes:
        user_id: Stable user identifier (interest profile key)
        email: Recipient address
        language: Output language (name or ISO code)
        topic: Feed topic (all, national, international, sports, tech, state)
        region: Optional state/region name used to filter headlines
        user_name: Optional display name for the greeting
        source: Whether the run was on-demand or fired by the scheduler
    """

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    language: str = Field(default="en")
    topic: str = Field(default="all")
    region: str | None = Field(default=None)
    user_name: str | None = Field(default=None)
    source: Literal["on_demand", "scheduled"] = Field(default="on_demand")

    @field_validator("language", "topic", mode="before")
    @classmethod
    def lower(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError(f"Invalid email address: '{v}'")
        return v


@dataclass(frozen=True)
class SentimentReading:
    """Sentiment for one digest item, aligned by index."""

    sentiment: Sentiment = Sentiment.NEUTRAL
    score: float = 0.5


class ContextFieldError(ValueError):
    """A stage tried to overwrite a context field that was already set."""


@dataclass(frozen=True)
class PipelineContext:
    """Immutable state of one pipeline run.

    Every stage output field starts as None and is set exactly once.
    """

    request: PipelineRequest
    run_id: str = "-"
    raw_items: tuple[RawSourceItem, ...] | None = None
    recovered_items: tuple[DigestItem, ...] | None = None
    recovery_tier: str | None = None
    translated_items: tuple[DigestItem, ...] | None = None
    script: str | None = None
    suggested_topics: tuple[str, ...] | None = None
    sentiments: tuple[SentimentReading, ...] | None = None
    synthesis: "SynthesisResult | None" = None
    enriched_items: tuple[DigestItem, ...] | None = None
    document: bytes | None = None
    artifacts: dict[str, str] | None = None
    delivered: bool | None = None
    degradations: tuple[tuple[str, str], ...] = ()

    _FIXED = ("request", "run_id", "degradations")

    def advance(self, **updates: Any) -> "PipelineContext":
        """Return a new context with the given fields set.

        Raises:
            ContextFieldError: If a field is unknown, fixed, or already set
        """
        names = {f.name for f in fields(self)}
        for name, value in updates.items():
            if name not in names or name in self._FIXED:
                raise ContextFieldError(f"Cannot set context field '{name}'")
            if getattr(self, name) is not None:
                raise ContextFieldError(f"Context field '{name}' is already set")
        return replace(self, **updates)

    def degrade(self, stage: str, reason: str) -> "PipelineContext":
        """Return a new context with one more degradation recorded."""
        return replace(self, degradations=self.degradations + ((stage, reason),))

    @property
    def items(self) -> tuple[DigestItem, ...]:
        """Best item set produced so far (enriched > translated > recovered)."""
        for candidate in (self.enriched_items, self.translated_items, self.recovered_items):
            if candidate is not None:
                return candidate
        return ()

    @property
    def degradation_reasons(self) -> list[str]:
        return [reason for _, reason in self.degradations]

    def has_degradation(self, reason: str) -> bool:
        return reason in self.degradation_reasons


class RunStatus(str, Enum):
    """Terminal status of a pipeline run."""

    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


@dataclass
class RunResult:
    """Outcome of one pipeline run.

    Attributes:
        status: DELIVERED or FAILED
        reason: Failure reason when FAILED (e.g. EMPTY_COLLECTION)
        context: Final context (as far as the run got)
        duration: Wall-clock run time in seconds
        failed_stage: Name of the stage that ended the run, if any
    """

    status: RunStatus
    context: PipelineContext
    reason: str | None = None
    duration: float = 0.0
    failed_stage: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return self.status == RunStatus.DELIVERED

    @property
    def severity(self) -> Severity | None:
        """FATAL for failed runs, DEGRADED when anything was degraded."""
        if not self.delivered:
            return Severity.FATAL
        if self.context.degradations:
            return Severity.DEGRADED
        return None

    @property
    def item_count(self) -> int:
        return len(self.context.items)

    @property
    def real_chunks(self) -> int:
        synthesis = self.context.synthesis
        return synthesis.real_chunks if synthesis else 0

    @property
    def fallback_chunks(self) -> int:
        synthesis = self.context.synthesis
        return synthesis.fallback_chunks if synthesis else 0

    @property
    def translated(self) -> bool:
        return self.context.translated_items is not None

    @property
    def has_document(self) -> bool:
        return self.context.document is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization and run history."""
        return {
            "run_id": self.context.run_id,
            "status": self.status.value,
            "reason": self.reason,
            "severity": self.severity.value if self.severity else None,
            "failed_stage": self.failed_stage,
            "duration": round(self.duration, 2),
            "items": self.item_count,
            "real_chunks": self.real_chunks,
            "fallback_chunks": self.fallback_chunks,
            "translated": self.translated,
            "has_document": self.has_document,
            "recovery_tier": self.context.recovery_tier,
            "degradations": [f"{stage}:{reason}" for stage, reason in self.context.degradations],
            **self.extra,
        }

    def __str__(self) -> str:
        if self.delivered:
            return f"DELIVERED(items={self.item_count})"
        return f"FAILED({self.reason})"

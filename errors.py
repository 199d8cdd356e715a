"""Failure taxonomy for the digest pipeline.

Every condition the pipeline can hit is either FATAL (the run ends as
FAILED with a reason), DEGRADED (the run continues and the condition is
annotated on the context), or TRANSIENT (retried locally, never surfaces
past the component that saw it).

Only FATAL conditions fail a run. Degradation codes are collected on the
PipelineContext and reported alongside a DELIVERED result.
"""

from enum import Enum


class Severity(str, Enum):
    """How a failure affects the run."""

    FATAL = "fatal"
    DEGRADED = "degraded"
    TRANSIENT = "transient"


# === Failure reasons (FATAL) ===
EMPTY_COLLECTION = "EMPTY_COLLECTION"
DELIVERY_FAILED = "DELIVERY_FAILED"
STAGE_ERROR = "STAGE_ERROR"
TASK_TIMEOUT = "TASK_TIMEOUT"

# === Degradation codes (DEGRADED) ===
RECOVERY_DEGRADED = "RECOVERY_DEGRADED"
TRANSLATION_SKIPPED = "TRANSLATION_SKIPPED"
SCRIPT_FALLBACK = "SCRIPT_FALLBACK"
SENTIMENT_UNAVAILABLE = "SENTIMENT_UNAVAILABLE"
INTEREST_UNAVAILABLE = "INTEREST_UNAVAILABLE"
SYNTHESIS_FALLBACK = "SYNTHESIS_FALLBACK"
RENDER_SKIPPED = "RENDER_SKIPPED"
ARTIFACT_STORE_FAILED = "ARTIFACT_STORE_FAILED"

# === Transient error kinds (retried in place) ===
KIND_RATE_LIMIT = "rate_limit"
KIND_UNAVAILABLE = "unavailable"
KIND_TIMEOUT = "timeout"
KIND_HTTP = "http"
KIND_INVALID_PAYLOAD = "invalid_payload"

RETRYABLE_KINDS = {KIND_RATE_LIMIT, KIND_UNAVAILABLE, KIND_TIMEOUT}


def kind_for_status(status: int) -> str:
    """Map an HTTP status code to a transient error kind."""
    if status == 429:
        return KIND_RATE_LIMIT
    if status == 503:
        return KIND_UNAVAILABLE
    return KIND_HTTP


class NewscastError(Exception):
    """Base class for pipeline errors."""


class EmptyNarrationError(NewscastError, ValueError):
    """Narration text was empty or whitespace; nothing to synthesize."""


class SynthesisHTTPError(NewscastError):
    """A speech backend answered with a non-success status or bad payload."""

    def __init__(self, message: str, *, status: int = 0, kind: str | None = None):
        super().__init__(message)
        self.status = status
        self.kind = kind or kind_for_status(status)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class TranslationQuotaError(NewscastError):
    """The translation model refused the request for quota or rate limits."""


class DeliveryError(NewscastError):
    """The delivery channel could not hand the digest to the recipient."""


class StageFailure(NewscastError):
    """Raised inside a stage to request a specific failure reason.

    The runner converts it per the stage policy; a DEGRADE stage turns
    it into an annotation, a FATAL stage into a FAILED run.
    """

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason

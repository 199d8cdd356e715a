"""Pydantic models for the Newscast digest pipeline.

RawSourceItem:
    Feed entry before curation (title, link, description, published_at).

DigestItem:
    Curated headline with summary, sentiment and topic. Frozen.

PipelineRequest / PipelineContext / RunResult:
    Input, threaded state and outcome of one pipeline run.

ScheduledTask:
    Daily digest subscription with its last-run bookkeeping.

Example:
    >>> from models import PipelineRequest, PipelineContext
    >>> ctx = PipelineContext(request=PipelineRequest(user_id="u1", email="a@b.c"))
    >>> ctx = ctx.advance(script="Good morning.")
"""

from models.context import (
    ContextFieldError,
    PipelineContext,
    PipelineRequest,
    RunResult,
    RunStatus,
    SentimentReading,
)
from models.digest import DigestItem, Sentiment
from models.schedule import ScheduledTask, TaskStatus
from models.source import RawSourceItem

__all__ = [
    "ContextFieldError",
    "DigestItem",
    "PipelineContext",
    "PipelineRequest",
    "RawSourceItem",
    "RunResult",
    "RunStatus",
    "ScheduledTask",
    "Sentiment",
    "SentimentReading",
    "TaskStatus",
]

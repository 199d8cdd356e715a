"""Logging and optional tracing for the digest pipeline.

setup_logging:
    Console + rotating file logging with run/stage context.

setup_tracing / trace_operation:
    Optional Logfire spans with PydanticAI instrumentation.

RunTracer:
    Per-run ledger of stage outcomes and timings.

Example:
    >>> from observability import setup_tracing, trace_operation
    >>> setup_tracing(enabled=True, service_name="newscast")
    >>> with trace_operation("collect"):
    ...     pass
"""

from observability.logging import (
    clear_context,
    set_run_context,
    set_stage_context,
    setup_logging,
)
from observability.tracing import RunTracer, TracingContext, setup_tracing, trace_operation

__all__ = [
    "setup_logging",
    "set_run_context",
    "set_stage_context",
    "clear_context",
    "setup_tracing",
    "trace_operation",
    "TracingContext",
    "RunTracer",
]

"""Optional Logfire tracing for pipeline runs.

When enabled, every stage runs inside a Logfire span and PydanticAI
agent calls are instrumented automatically. When disabled (the default)
spans are no-ops and only the per-stage timing ledger is kept.

Enable via configuration:
    ENABLE_LOGFIRE=true
    LOGFIRE_TOKEN=your-token  # Optional for cloud dashboard

Usage:
    >>> from observability.tracing import setup_tracing, trace_operation
    >>> setup_tracing(enabled=True, service_name="newscast")
    >>> with trace_operation("stage.collect", {"run_id": "abc"}) as attrs:
    ...     attrs["items"] = 12
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator

logger = logging.getLogger(__name__)

SERVICE_NAME = "newscast"


@dataclass
class TracingContext:
    """Process-wide tracing state."""
    enabled: bool = False
    service_name: str = SERVICE_NAME
    token: str = ""
    _logfire_configured: bool = field(default=False, init=False)


_context = TracingContext()


def setup_tracing(
    enabled: bool = False,
    service_name: str = SERVICE_NAME,
    token: str = "",
) -> TracingContext:
    """Configure Logfire and instrument PydanticAI.

    Tracing silently stays off when logfire is not installed (it is an
    optional extra) or fails to configure.
    """
    _context.enabled = enabled
    _context.service_name = service_name
    _context.token = token

    if not enabled:
        logger.debug("Tracing disabled")
        return _context

    try:
        import logfire

        logfire.configure(service_name=service_name, token=token or None)
        logfire.instrument_pydantic_ai()
        _context._logfire_configured = True
        logger.info("Logfire tracing enabled | service=%s", service_name)
    except ImportError:
        logger.warning("Logfire not installed, tracing disabled")
        _context.enabled = False
    except Exception as e:
        logger.error("Failed to configure Logfire | error=%s", e)
        _context.enabled = False

    return _context


@contextmanager
def trace_operation(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[dict[str, Any], None, None]:
    """Span around an operation.

    Yields a dict; anything put into it is attached to the span on exit.
    """
    start = time.perf_counter()
    result_attrs: dict[str, Any] = {}
    try:
        if _context.enabled and _context._logfire_configured:
            import logfire

            with logfire.span(name, **(attributes or {})) as span:
                yield result_attrs
                for key, value in result_attrs.items():
                    span.set_attribute(key, value)
        else:
            yield result_attrs
    finally:
        logger.debug("Operation '%s' completed in %.2fs", name, time.perf_counter() - start)


@dataclass
class StageTiming:
    stage: str
    status: str
    duration: float
    reason: str | None = None


class RunTracer:
    """Per-run ledger of stage outcomes and timings.

    Example:
        >>> tracer = RunTracer("abc123")
        >>> with tracer.stage("collect") as attrs:
        ...     attrs["status"] = "ok"
        >>> tracer.summary()["stages"][0]["stage"]
        'collect'
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.started = time.perf_counter()
        self.timings: list[StageTiming] = []

    @contextmanager
    def stage(self, name: str) -> Generator[dict[str, Any], None, None]:
        """Trace one stage; callers set "status" (and "reason") on the yielded dict."""
        start = time.perf_counter()
        with trace_operation(f"stage.{name}", {"run_id": self.run_id}) as attrs:
            try:
                yield attrs
            finally:
                self.timings.append(StageTiming(
                    stage=name,
                    status=attrs.get("status", "error"),
                    duration=time.perf_counter() - start,
                    reason=attrs.get("reason"),
                ))

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "duration_seconds": round(time.perf_counter() - self.started, 3),
            "stages": [
                {
                    "stage": t.stage,
                    "status": t.status,
                    "duration": round(t.duration, 3),
                    **({"reason": t.reason} if t.reason else {}),
                }
                for t in self.timings
            ],
        }

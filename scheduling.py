"""Due-time evaluation and the scheduled-task polling loop.

A scheduled task asks for a digest every day at a local "HH:MM" time
until its active_until date. An external trigger (cron, or the
``check --loop`` CLI mode) calls check_scheduled_tasks() periodically;
each call runs every task whose execution window contains "now" and that
has not already run today.

Due Rule:
    - schedule_time is converted to UTC minutes-of-day with a fixed
      offset table (zones not in the table are used unconverted)
    - due when |now_minutes - scheduled_minutes| <= window (15 by default)
    - not due when last_run_date == today (UTC) or today > active_until

Known Limitations:
    - No midnight wraparound: a 23:55 UTC schedule is not due at 00:05.
    - Missed windows are skipped; there is no catch-up after downtime.
    - The polling interval must not exceed the window or a day can be
      missed entirely (enforced by Config.validate()).
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from errors import TASK_TIMEOUT
from models.context import RunResult
from models.schedule import ScheduledTask

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MINUTES = 15
MINUTES_PER_DAY = 24 * 60

# Minutes east of UTC
TIMEZONE_OFFSETS: dict[str, int] = {
    "UTC": 0,
    "GMT": 0,
    "Asia/Kolkata": 330,
    "IST": 330,
    "Asia/Calcutta": 330,
    "Asia/Dubai": 240,
    "Asia/Karachi": 300,
    "Asia/Kathmandu": 345,
    "Asia/Dhaka": 360,
    "Asia/Singapore": 480,
    "Asia/Shanghai": 480,
    "Asia/Tokyo": 540,
}


class TaskStore(Protocol):
    """Storage operations the due-check needs (see database.Database)."""

    def list_active_due(self, today: date) -> list[ScheduledTask]: ...

    def record_run(self, task_id: int, when: datetime) -> bool: ...

    def expire(self, today: date) -> int: ...


def to_utc_minutes(schedule_time: str, tz_name: str) -> int:
    """Convert a local "HH:MM" to minutes after UTC midnight.

    Unsupported zones are returned unconverted.

    Example:
        >>> to_utc_minutes("09:00", "Asia/Kolkata")  # 03:30 UTC
        210
    """
    hours, minutes = schedule_time.split(":")
    local = int(hours) * 60 + int(minutes)
    offset = TIMEZONE_OFFSETS.get(tz_name)
    if offset is None:
        logger.debug("Unsupported timezone, using time unconverted | tz=%s", tz_name)
        return local
    return (local - offset) % MINUTES_PER_DAY


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def is_due(task: ScheduledTask, now_utc: datetime, window_minutes: int = DEFAULT_WINDOW_MINUTES) -> bool:
    """Decide whether a task should fire now.

    Pure function of its inputs.

    Args:
        task: Scheduled task
        now_utc: Current time (naive values are treated as UTC)
        window_minutes: Tolerance on either side of the scheduled time

    Returns:
        True if now is inside the window, the task has not run today,
        and the task has not expired
    """
    now = _as_utc(now_utc)
    today = now.date()
    if today > task.active_until:
        return False
    if task.last_run_date == today:
        return False
    scheduled = to_utc_minutes(task.schedule_time, task.timezone)
    current = now.hour * 60 + now.minute
    return abs(current - scheduled) <= window_minutes


@dataclass
class TaskRunReport:
    """Outcome of one task within a due-check."""

    task_id: int | None
    email: str
    schedule_time: str
    status: str  # delivered | failed | timeout | error
    reason: str | None = None
    recorded: bool = False


@dataclass
class DueCheckReport:
    """Summary of one due-check invocation."""

    checked_at: str
    found: int = 0
    due: int = 0
    executed: int = 0
    expired: int = 0
    duration: float = 0.0
    results: list[TaskRunReport] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["duration"] = round(d["duration"], 2)
        return d


async def check_scheduled_tasks(
    store: TaskStore,
    run_task: Callable[[ScheduledTask], Awaitable[RunResult]],
    now: datetime | None = None,
    task_timeout: float = 900,
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> DueCheckReport:
    """Run every task that is due right now.

    Tasks run one after another. A definitive outcome (delivered, or a
    failure the pipeline reported) records the run so the task does not
    fire again today. A timeout leaves last_run_at untouched so a later
    poll inside the same window can retry. Errors in one task never stop
    the others.

    Args:
        store: Task store
        run_task: Coroutine running the pipeline for a task
        now: Current time (defaults to now, UTC)
        task_timeout: Wall-clock budget per task in seconds
        window_minutes: Due window

    Returns:
        DueCheckReport with per-task results
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    start = time.time()
    report = DueCheckReport(checked_at=now.isoformat())

    report.expired = store.expire(now.date())
    if report.expired:
        logger.info("Tasks expired | count=%d", report.expired)

    tasks = store.list_active_due(now.date())
    report.found = len(tasks)
    logger.info("Due-check started | time=%s active=%d", now.strftime("%H:%M"), len(tasks))

    for task in tasks:
        if not is_due(task, now, window_minutes):
            logger.debug("Task not due | task=%s schedule=%s %s", task.id, task.schedule_time, task.timezone)
            continue

        report.due += 1
        entry = TaskRunReport(
            task_id=task.id,
            email=task.email,
            schedule_time=task.schedule_time,
            status="error",
        )
        report.results.append(entry)
        logger.info("Task due | task=%s user=%s schedule=%s %s", task.id, task.user_id, task.schedule_time, task.timezone)

        try:
            result = await asyncio.wait_for(run_task(task), timeout=task_timeout)
        except asyncio.TimeoutError:
            entry.status = "timeout"
            entry.reason = TASK_TIMEOUT
            logger.error("Task timed out | task=%s timeout=%ds", task.id, task_timeout)
            continue
        except asyncio.CancelledError:
            raise
        except Exception as e:
            entry.reason = f"{type(e).__name__}: {e}"
            logger.error("Task error | task=%s error=%s", task.id, e, exc_info=True)
            continue

        entry.status = "delivered" if result.delivered else "failed"
        entry.reason = result.reason
        if result.delivered:
            report.executed += 1
        else:
            logger.warning("Task run failed | task=%s reason=%s", task.id, result.reason)

        try:
            entry.recorded = store.record_run(task.id, now)
        except Exception as e:
            logger.error("Recording task run failed | task=%s error=%s", task.id, e, exc_info=True)

    report.duration = time.time() - start
    logger.info(
        "Due-check complete | active=%d due=%d executed=%d duration=%.1fs",
        report.found, report.due, report.executed, report.duration,
    )
    return report


async def run_scheduler_loop(
    store: TaskStore,
    run_task: Callable[[ScheduledTask], Awaitable[RunResult]],
    interval_seconds: float,
    task_timeout: float = 900,
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
    max_checks: int = 0,
) -> None:
    """Poll for due tasks until cancelled.

    Args:
        store: Task store
        run_task: Coroutine running the pipeline for a task
        interval_seconds: Delay between checks
        task_timeout: Wall-clock budget per task
        window_minutes: Due window
        max_checks: Stop after this many checks (0 = run forever)
    """
    checks = 0
    total_executed = 0
    logger.info("Scheduler started | interval=%ds window=%dm", interval_seconds, window_minutes)
    try:
        while True:
            checks += 1
            try:
                report = await check_scheduled_tasks(
                    store, run_task, task_timeout=task_timeout, window_minutes=window_minutes,
                )
                total_executed += report.executed
            except Exception as e:
                logger.error("Due-check failed | check=%d error=%s", checks, e, exc_info=True)

            if max_checks and checks >= max_checks:
                break
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Scheduler stopped | checks=%d executed=%d", checks, total_executed)
        raise
    logger.info("Scheduler finished | checks=%d executed=%d", checks, total_executed)

import asyncio
import os
import sys
import unittest
from datetime import date, datetime, timezone

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from database import Database  # noqa: E402
from errors import DELIVERY_FAILED, TASK_TIMEOUT  # noqa: E402
from models.context import PipelineContext, PipelineRequest, RunResult, RunStatus  # noqa: E402
from models.schedule import ScheduledTask, TaskStatus  # noqa: E402
from scheduling import check_scheduled_tasks, is_due, to_utc_minutes  # noqa: E402

TODAY = date(2025, 1, 10)


def utc(hour: int, minute: int, day: date = TODAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def make_task(**overrides) -> ScheduledTask:
    data = {
        "id": 1,
        "user_id": "u1",
        "email": "u1@example.com",
        "schedule_time": "09:00",
        "timezone": "Asia/Kolkata",
        "active_until": date(2025, 1, 16),
    }
    data.update(overrides)
    return ScheduledTask(**data)


def result_for(task: ScheduledTask, status: RunStatus, reason: str | None = None) -> RunResult:
    request = PipelineRequest(user_id=task.user_id, email=task.email, source="scheduled")
    return RunResult(status=status, context=PipelineContext(request=request), reason=reason)


class DueRuleTests(unittest.TestCase):
    def test_utc_conversion_uses_offset_table(self) -> None:
        self.assertEqual(to_utc_minutes("09:00", "Asia/Kolkata"), 3 * 60 + 30)
        self.assertEqual(to_utc_minutes("02:00", "Asia/Kolkata"), 20 * 60 + 30)
        self.assertEqual(to_utc_minutes("09:00", "UTC"), 9 * 60)

    def test_unknown_timezone_used_unconverted(self) -> None:
        self.assertEqual(to_utc_minutes("07:15", "Mars/Olympus"), 7 * 60 + 15)

    def test_kolkata_nine_am_window(self) -> None:
        task = make_task()
        self.assertTrue(is_due(task, utc(3, 35)))
        self.assertTrue(is_due(task, utc(3, 15)))
        self.assertTrue(is_due(task, utc(3, 45)))
        self.assertFalse(is_due(task, utc(4, 0)))
        self.assertFalse(is_due(task, utc(3, 14)))

    def test_not_due_after_run_today(self) -> None:
        task = make_task(last_run_at=utc(3, 31))
        self.assertFalse(is_due(task, utc(3, 35)))

    def test_due_again_next_day(self) -> None:
        task = make_task(last_run_at=utc(3, 31))
        self.assertTrue(is_due(task, utc(3, 35, date(2025, 1, 11))))

    def test_not_due_after_active_until(self) -> None:
        task = make_task(active_until=TODAY)
        self.assertTrue(is_due(task, utc(3, 30)))
        self.assertFalse(is_due(task, utc(3, 30, date(2025, 1, 11))))

    def test_naive_now_treated_as_utc(self) -> None:
        self.assertTrue(is_due(make_task(), datetime(2025, 1, 10, 3, 35)))


class StoreBackedDueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database(":memory:")

    def tearDown(self) -> None:
        self.db.close()

    def test_record_run_makes_task_not_due_same_day(self) -> None:
        task = self.db.create_task("u1", "u1@example.com", "09:00", days=7, today=TODAY)
        now = utc(3, 35)
        self.assertTrue(is_due(task, now))
        self.assertTrue(self.db.record_run(task.id, now))
        self.assertFalse(is_due(self.db.get_task(task.id), now))

    def test_record_run_is_monotonic(self) -> None:
        task = self.db.create_task("u1", "u1@example.com", "09:00", today=TODAY)
        self.assertTrue(self.db.record_run(task.id, utc(3, 40)))
        self.assertFalse(self.db.record_run(task.id, utc(3, 20)))
        self.assertEqual(self.db.get_task(task.id).last_run_at, utc(3, 40))


class CheckScheduledTasksTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = Database(":memory:")

    def tearDown(self) -> None:
        self.db.close()

    async def test_due_task_runs_once_per_day(self) -> None:
        task = self.db.create_task("u1", "u1@example.com", "09:00", today=TODAY)
        calls: list[int] = []

        async def run_task(t: ScheduledTask) -> RunResult:
            calls.append(t.id)
            return result_for(t, RunStatus.DELIVERED)

        first = await check_scheduled_tasks(self.db, run_task, now=utc(3, 30))
        second = await check_scheduled_tasks(self.db, run_task, now=utc(3, 40))

        self.assertEqual(calls, [task.id])
        self.assertEqual(first.executed, 1)
        self.assertTrue(first.results[0].recorded)
        self.assertEqual(second.due, 0)

    async def test_failed_run_is_recorded(self) -> None:
        task = self.db.create_task("u1", "u1@example.com", "09:00", today=TODAY)

        async def run_task(t: ScheduledTask) -> RunResult:
            return result_for(t, RunStatus.FAILED, DELIVERY_FAILED)

        report = await check_scheduled_tasks(self.db, run_task, now=utc(3, 30))
        self.assertEqual(report.executed, 0)
        self.assertEqual(report.results[0].status, "failed")
        self.assertEqual(report.results[0].reason, DELIVERY_FAILED)
        self.assertIsNotNone(self.db.get_task(task.id).last_run_at)

    async def test_timeout_leaves_task_retryable(self) -> None:
        task = self.db.create_task("u1", "u1@example.com", "09:00", today=TODAY)

        async def slow_task(t: ScheduledTask) -> RunResult:
            await asyncio.sleep(5)
            return result_for(t, RunStatus.DELIVERED)

        report = await check_scheduled_tasks(self.db, slow_task, now=utc(3, 30), task_timeout=0.01)
        self.assertEqual(report.results[0].status, "timeout")
        self.assertEqual(report.results[0].reason, TASK_TIMEOUT)
        self.assertIsNone(self.db.get_task(task.id).last_run_at)

    async def test_error_in_one_task_does_not_stop_others(self) -> None:
        first = self.db.create_task("u1", "u1@example.com", "09:00", today=TODAY)
        second = self.db.create_task("u2", "u2@example.com", "09:05", today=TODAY)
        ran: list[int] = []

        async def run_task(t: ScheduledTask) -> RunResult:
            if t.id == first.id:
                raise RuntimeError("boom")
            ran.append(t.id)
            return result_for(t, RunStatus.DELIVERED)

        report = await check_scheduled_tasks(self.db, run_task, now=utc(3, 32))
        self.assertEqual(ran, [second.id])
        self.assertEqual([r.status for r in report.results], ["error", "delivered"])

    async def test_expired_tasks_marked_and_skipped(self) -> None:
        task = self.db.create_task("u1", "u1@example.com", "09:00", days=1, today=date(2025, 1, 8))

        async def run_task(t: ScheduledTask) -> RunResult:
            raise AssertionError("expired task must not run")

        report = await check_scheduled_tasks(self.db, run_task, now=utc(3, 30))
        self.assertEqual(report.expired, 1)
        self.assertEqual(report.found, 0)
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.EXPIRED)


if __name__ == "__main__":
    unittest.main()

"""Database operations for the Newscast digest pipeline.

This module provides SQLite-based storage for scheduled digest tasks,
per-user interest profiles, browsing history, and the history of
pipeline runs.

Database Schema:
    scheduled_tasks table:
        - id (INTEGER, PK): Task id
        - user_id, email (TEXT): Owner and recipient
        - language, topic, region (TEXT): Digest parameters
        - schedule_time (TEXT): Local "HH:MM"
        - timezone (TEXT): Zone name for schedule_time
        - active_until (TEXT): ISO date, last day the task fires
        - last_run_at (INTEGER): Unix epoch of the last definitive run
        - status (TEXT): 'active' or 'expired'
        - created_at (INTEGER): Unix epoch

    user_interests table:
        - (user_id, topic) PK, weight (REAL), updated_at (INTEGER)

    browsing_history table:
        - user_id, title, viewed_at; trimmed to the newest 100 per user

    runs table:
        - run_id (TEXT, PK), user_id, source, status, reason,
          started_at, duration, items, real/fallback chunk counts,
          degradations (JSON list)

Features:
    - WAL mode for concurrent read/write access
    - Automatic schema migration for new columns
    - Monotonic last_run_at (never moves backwards)
    - Batch operations with deferred commits
    - Context manager support for auto-cleanup
"""

import json
import logging
import sqlite3
import time
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from models.context import RunResult
from models.schedule import ScheduledTask, TaskStatus

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


class Database:
    """SQLite database for scheduled tasks, interests and run history.

    Example:
        >>> with Database("newscast.db") as db:
        ...     task = db.create_task("u1", "a@b.c", "09:00", days=7)
        ...     db.list_active_due(date.today())
    """

    # SQL schema for all tables and indexes
    SCHEMA = """
    -- Daily digest subscriptions
    CREATE TABLE IF NOT EXISTS scheduled_tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        language TEXT NOT NULL DEFAULT 'en',
        topic TEXT NOT NULL DEFAULT 'all',
        region TEXT,
        schedule_time TEXT NOT NULL,         -- Local HH:MM
        timezone TEXT NOT NULL DEFAULT 'Asia/Kolkata',
        active_until TEXT NOT NULL,          -- ISO date (inclusive)
        last_run_at INTEGER,                 -- Unix epoch (UTC)
        status TEXT NOT NULL DEFAULT 'active',
        created_at INTEGER NOT NULL
    );

    -- Index for the due-check query
    CREATE INDEX IF NOT EXISTS idx_tasks_active ON scheduled_tasks(status, active_until);

    -- Topic weights per user
    CREATE TABLE IF NOT EXISTS user_interests (
        user_id TEXT NOT NULL,
        topic TEXT NOT NULL,
        weight REAL NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (user_id, topic)
    );

    -- Titles of articles delivered to each user
    CREATE TABLE IF NOT EXISTS browsing_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        viewed_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_history_user ON browsing_history(user_id, id);

    -- One row per pipeline run
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        source TEXT NOT NULL,
        status TEXT NOT NULL,
        reason TEXT,
        started_at INTEGER NOT NULL,
        duration REAL NOT NULL DEFAULT 0,
        items INTEGER NOT NULL DEFAULT 0,
        real_chunks INTEGER NOT NULL DEFAULT 0,
        fallback_chunks INTEGER NOT NULL DEFAULT 0,
        degradations TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
    """

    path: Path
    conn: sqlite3.Connection

    def __init__(self, path: Path | str):
        """Initialize database connection.

        Creates the database file if it doesn't exist and sets up
        the schema. Uses WAL mode for better concurrent access.

        Args:
            path: Path to SQLite database file (":memory:" for tests)
        """
        self.path = Path(path)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row  # Enable dict-like row access

        # WAL mode allows concurrent readers during writes
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()
        logger.debug("Database initialized | path=%s", self.path)

    def _init_schema(self) -> None:
        """Create tables and indexes if they don't exist.

        Also runs any pending migrations for schema evolution.
        """
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()
        self._migrate()

    def _migrate(self) -> None:
        """Run schema migrations for backwards compatibility."""
        cursor = self.conn.execute("PRAGMA table_info(runs)")
        columns = {row["name"] for row in cursor.fetchall()}

        # Migration: degradations column added after initial release
        if "degradations" not in columns:
            self.conn.execute("ALTER TABLE runs ADD COLUMN degradations TEXT")
            self.conn.commit()
            logger.info("Database migrated | added column=degradations")

    # === Scheduled tasks ===

    def create_task(
        self,
        user_id: str,
        email: str,
        schedule_time: str,
        days: int = 7,
        language: str = "en",
        topic: str = "all",
        region: str | None = None,
        timezone: str = "Asia/Kolkata",
        today: date | None = None,
    ) -> ScheduledTask:
        """Create a daily task active for the given number of days.

        Args:
            user_id: Task owner
            email: Recipient address
            schedule_time: Local "HH:MM"
            days: Number of days (including today) the task stays active
            language: Digest language
            topic: Feed topic
            region: Optional region filter
            timezone: Zone name for schedule_time
            today: Start date (defaults to today)

        Returns:
            The stored task
        """
        start = today or date.today()
        task = ScheduledTask(
            user_id=user_id,
            email=email,
            language=language,
            topic=topic,
            region=region,
            schedule_time=schedule_time,
            timezone=timezone,
            active_until=start + timedelta(days=max(days, 1) - 1),
        )
        cursor = self.conn.execute(
            """
            INSERT INTO scheduled_tasks
            (user_id, email, language, topic, region, schedule_time, timezone,
             active_until, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.user_id,
                task.email,
                task.language,
                task.topic,
                task.region,
                task.schedule_time,
                task.timezone,
                task.active_until.isoformat(),
                task.status.value,
                int(time.time()),
            ),
        )
        self.conn.commit()
        stored = task.model_copy(update={"id": cursor.lastrowid})
        logger.info(
            "Task created | task=%d user=%s schedule=%s %s until=%s",
            stored.id, user_id, stored.schedule_time, timezone, stored.active_until,
        )
        return stored

    def get_task(self, task_id: int) -> ScheduledTask | None:
        """Get a task by id."""
        row = self.conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        return ScheduledTask.from_row(row) if row else None

    def list_tasks(self, user_id: str | None = None) -> list[ScheduledTask]:
        """List all tasks, optionally for one user."""
        if user_id:
            cursor = self.conn.execute(
                "SELECT * FROM scheduled_tasks WHERE user_id = ? ORDER BY id", (user_id,)
            )
        else:
            cursor = self.conn.execute("SELECT * FROM scheduled_tasks ORDER BY id")
        return [ScheduledTask.from_row(row) for row in cursor.fetchall()]

    def list_active_due(self, today: date) -> list[ScheduledTask]:
        """Active tasks that have not passed their active_until date.

        Args:
            today: Current UTC date

        Returns:
            Candidate tasks for the due-check (due-ness not yet evaluated)
        """
        cursor = self.conn.execute(
            """
            SELECT * FROM scheduled_tasks
            WHERE status = ? AND active_until >= ?
            ORDER BY schedule_time, id
            """,
            (TaskStatus.ACTIVE.value, today.isoformat()),
        )
        return [ScheduledTask.from_row(row) for row in cursor.fetchall()]

    def record_run(self, task_id: int, when: datetime, commit: bool = True) -> bool:
        """Record a definitive run of a task.

        last_run_at only ever moves forward; an older timestamp is ignored.

        Returns:
            True if the stored timestamp changed
        """
        ts = int(when.timestamp())
        cursor = self.conn.execute(
            """
            UPDATE scheduled_tasks SET last_run_at = ?
            WHERE id = ? AND (last_run_at IS NULL OR last_run_at < ?)
            """,
            (ts, task_id, ts),
        )
        if commit:
            self.conn.commit()
        changed = cursor.rowcount > 0
        logger.debug("Task run recorded | task=%d at=%s changed=%s", task_id, when.isoformat(), changed)
        return changed

    def expire(self, today: date) -> int:
        """Mark active tasks past their active_until date as expired.

        Returns:
            Number of tasks expired
        """
        cursor = self.conn.execute(
            "UPDATE scheduled_tasks SET status = ? WHERE status = ? AND active_until < ?",
            (TaskStatus.EXPIRED.value, TaskStatus.ACTIVE.value, today.isoformat()),
        )
        self.conn.commit()
        return cursor.rowcount

    def cancel_task(self, task_id: int) -> bool:
        """Expire a task immediately."""
        cursor = self.conn.execute(
            "UPDATE scheduled_tasks SET status = ? WHERE id = ?",
            (TaskStatus.EXPIRED.value, task_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # === Interests and history ===

    def get_interests(self, user_id: str) -> dict[str, float] | None:
        """Topic weights for a user, or None if no profile exists."""
        cursor = self.conn.execute(
            "SELECT topic, weight FROM user_interests WHERE user_id = ?", (user_id,)
        )
        rows = cursor.fetchall()
        if not rows:
            return None
        return {row["topic"]: row["weight"] for row in rows}

    def save_interests(self, user_id: str, weights: dict[str, float], commit: bool = True) -> None:
        """Replace a user's topic weights."""
        now = int(time.time())
        self.conn.executemany(
            """
            INSERT OR REPLACE INTO user_interests (user_id, topic, weight, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            [(user_id, topic, float(weight), now) for topic, weight in weights.items()],
        )
        if commit:
            self.conn.commit()

    def add_history(self, user_id: str, titles: list[str], commit: bool = True) -> None:
        """Append article titles and keep only the newest HISTORY_LIMIT."""
        now = int(time.time())
        self.conn.executemany(
            "INSERT INTO browsing_history (user_id, title, viewed_at) VALUES (?, ?, ?)",
            [(user_id, title, now) for title in titles if title],
        )
        self.conn.execute(
            """
            DELETE FROM browsing_history
            WHERE user_id = ? AND id NOT IN (
                SELECT id FROM browsing_history WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
            )
            """,
            (user_id, user_id, HISTORY_LIMIT),
        )
        if commit:
            self.conn.commit()

    def recent_history(self, user_id: str, limit: int = 10) -> list[str]:
        """Most recent titles for a user, newest first."""
        cursor = self.conn.execute(
            "SELECT title FROM browsing_history WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [row["title"] for row in cursor.fetchall()]

    # === Run history ===

    def save_run(self, result: RunResult, started_at: float | None = None, commit: bool = True) -> None:
        """Store the outcome of a pipeline run."""
        ctx = result.context
        self.conn.execute(
            """
            INSERT OR REPLACE INTO runs
            (run_id, user_id, source, status, reason, started_at, duration,
             items, real_chunks, fallback_chunks, degradations)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ctx.run_id,
                ctx.request.user_id,
                ctx.request.source,
                result.status.value,
                result.reason,
                int(started_at if started_at is not None else time.time() - result.duration),
                round(result.duration, 2),
                result.item_count,
                result.real_chunks,
                result.fallback_chunks,
                json.dumps([f"{stage}:{reason}" for stage, reason in ctx.degradations]),
            ),
        )
        if commit:
            self.conn.commit()
        logger.debug("Run saved | run=%s status=%s", ctx.run_id, result.status.value)

    def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent runs, newest first."""
        cursor = self.conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)
        )
        runs = []
        for row in cursor.fetchall():
            record = dict(row)
            record["degradations"] = json.loads(record["degradations"] or "[]")
            runs.append(record)
        return runs

    def prune_runs(self, days: int) -> int:
        """Delete run records older than the given number of days."""
        cutoff = int((datetime.now() - timedelta(days=days)).timestamp())
        cursor = self.conn.execute("DELETE FROM runs WHERE started_at < ?", (cutoff,))
        self.conn.commit()
        deleted = cursor.rowcount
        if deleted > 0:
            logger.info("Runs pruned | deleted=%d days=%d", deleted, days)
        return deleted

    def commit(self) -> None:
        """Commit pending changes."""
        self.conn.commit()

    def stats(self) -> dict[str, int]:
        """Get database statistics.

        Returns:
            Dictionary with task, run and delivery counts
        """
        tasks = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active
            FROM scheduled_tasks
            """
        ).fetchone()
        runs = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'DELIVERED' THEN 1 ELSE 0 END) AS delivered,
                   SUM(CASE WHEN fallback_chunks > 0 THEN 1 ELSE 0 END) AS with_silence
            FROM runs
            """
        ).fetchone()
        users = self.conn.execute("SELECT COUNT(DISTINCT user_id) AS users FROM user_interests").fetchone()
        return {
            "tasks": tasks["total"] or 0,
            "active_tasks": tasks["active"] or 0,
            "runs": runs["total"] or 0,
            "delivered": runs["delivered"] or 0,
            "runs_with_silence": runs["with_silence"] or 0,
            "profiles": users["users"] or 0,
        }

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> "Database":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()

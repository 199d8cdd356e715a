"""Scheduled digest task model."""

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class TaskStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class ScheduledTask(BaseModel):
    """A daily digest subscription.

    Attributes:
        id: Row id in the task store
        user_id: Owner of the task
        email: Recipient address
        language: Digest language
        topic: Feed topic
        region: Optional state/region filter
        schedule_time: Local delivery time, "HH:MM"
        timezone: IANA-style zone name for schedule_time
        active_until: Last date (inclusive) the task should fire
        last_run_at: UTC timestamp of the last definitive run
        status: active or expired
    """

    id: int | None = None
    user_id: str
    email: str
    language: str = "en"
    topic: str = "all"
    region: str | None = None
    schedule_time: str = Field(description="Local time HH:MM")
    timezone: str = "Asia/Kolkata"
    active_until: date
    last_run_at: datetime | None = None
    status: TaskStatus = TaskStatus.ACTIVE

    @field_validator("schedule_time")
    @classmethod
    def check_time(cls, v: str) -> str:
        match = _TIME_PATTERN.match(v.strip())
        if not match:
            raise ValueError(f"schedule_time must be HH:MM, got '{v}'")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("last_run_at")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def local_minutes(self) -> int:
        """schedule_time as minutes since local midnight."""
        hours, minutes = self.schedule_time.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def last_run_date(self) -> date | None:
        """UTC calendar date of the last run, if any."""
        if self.last_run_at is None:
            return None
        return self.last_run_at.astimezone(timezone.utc).date()

    @classmethod
    def from_row(cls, row: Any) -> "ScheduledTask":
        """Build a task from a sqlite3.Row of the scheduled_tasks table."""
        data = dict(row)
        last_run = data.get("last_run_at")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            email=data["email"],
            language=data["language"],
            topic=data["topic"],
            region=data.get("region"),
            schedule_time=data["schedule_time"],
            timezone=data["timezone"],
            active_until=date.fromisoformat(data["active_until"]),
            last_run_at=datetime.fromtimestamp(last_run, tz=timezone.utc) if last_run else None,
            status=TaskStatus(data["status"]),
        )

    def __str__(self) -> str:
        return f"ScheduledTask({self.id}, {self.schedule_time} {self.timezone}, {self.topic})"

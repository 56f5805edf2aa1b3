# src/smart_planner/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import StrEnum


class InvalidTaskError(ValueError):
    """Raised when a task is missing fields the engine cannot default."""

    def __init__(self, task_id: str | None, reason: str) -> None:
        super().__init__(f"task {task_id or '?'}: {reason}")
        self.task_id = task_id
        self.reason = reason


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING

    @property
    def is_open(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class PriorityLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> PriorityLevel | None:
        if not raw:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {PriorityLevel.LOW: 0, PriorityLevel.MEDIUM: 1, PriorityLevel.HIGH: 2}


class ReminderStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class Location:
    latitude: float
    longitude: float
    address: str | None = None


@dataclass(slots=True, frozen=True)
class ComplexitySignals:
    """Counts the scorer and the optimizer derive their complexity factors from."""

    subtasks: int = 0
    attachments: int = 0
    dependencies: int = 0
    description_length: int = 0


@dataclass(slots=True)
class Reminder:
    time: datetime
    message: str = ""
    status: ReminderStatus = ReminderStatus.PENDING


@dataclass(slots=True)
class Task:
    id: str
    user_id: str
    title: str
    description: str | None = None

    requested_start: datetime | None = None
    requested_end: datetime | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None

    location: Location | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority_level: PriorityLevel | None = None
    complexity: ComplexitySignals = field(default_factory=ComplexitySignals)
    reminders: list[Reminder] = field(default_factory=list)

    optimized: bool = False
    completed_at: datetime | None = None
    actual_duration_seconds: float | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def description_length(self) -> int:
        # Explicit signal wins; otherwise measure the text we have.
        if self.complexity.description_length:
            return self.complexity.description_length
        return len(self.description or "")

    @property
    def deadline(self) -> datetime | None:
        # requested_end only: scheduled_end is engine output.
        return self.requested_end

    @property
    def anchor_day(self) -> date | None:
        """Calendar day the task belongs to (UTC), taken from its requested or scheduled start."""
        ts = self.requested_start or self.scheduled_start
        if ts is None:
            return None
        return as_utc(ts).date()

    def validate(self) -> None:
        if not str(self.id or "").strip():
            raise InvalidTaskError(None, "id is required")
        if not str(self.user_id or "").strip():
            raise InvalidTaskError(self.id, "user_id is required")
        if (
            self.scheduled_start is not None
            and self.scheduled_end is not None
            and as_utc(self.scheduled_end) <= as_utc(self.scheduled_start)
        ):
            raise InvalidTaskError(self.id, "scheduled_end must be after scheduled_start")


def as_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware values."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def from_epoch(ts: float) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)

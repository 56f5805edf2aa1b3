# src/smart_planner/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the engine.

The engine depends on Protocols instead of concrete implementations.
This keeps storage/oracles/notification transports swappable and makes testing easier.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Awaitable, Protocol

from ..tasks.task_models import Location, PriorityLevel, ReminderStatus, Task, TaskStatus


class TaskRepo(Protocol):
    """
    Storage-side port.

    Calls are synchronous (the SQLite adapter opens a short-lived connection per call);
    the engine runs them in worker threads so they never block the dispatch loop.
    """

    # Optimizer / scorer reads
    def find_same_day_tasks(self, user_id: str, day: date) -> list[Task]: ...
    def find_recent_completed(self, user_id: str, limit: int = 10) -> list[Task]: ...

    # Plan write-back
    def update_scheduled_times(self, task_id: str, start: datetime, end: datetime) -> None: ...
    def update_priority(self, task_id: str, level: PriorityLevel) -> None: ...

    # Dispatcher side effects
    def update_status(self, task_id: str, status: TaskStatus) -> None: ...
    def update_reminder_status(self, task_id: str, index: int, status: ReminderStatus) -> None: ...

    # Restart recovery
    def find_upcoming(self, now: datetime, limit: int = 500) -> list[Task]: ...
    def get_task(self, task_id: str) -> Task | None: ...


class ImportanceOracle(Protocol):
    """Opaque importance predictor. May fail or hang; callers bound it with a timeout."""

    def predict_importance(self, task: Task) -> Awaitable[float]: ...


class TravelTimeOracle(Protocol):
    def estimate_travel_seconds(self, origin: Location, dest: Location) -> Awaitable[int]: ...


class NotificationSender(Protocol):
    """
    Transport-side port: how fired jobs reach the user.

    Returns True on success. A False return or an exception is a delivery failure;
    the dispatcher logs it and never retries.
    """

    def deliver(
            self,
            *,
            user_id: str,
            title: str,
            body: str,
            metadata: dict[str, Any],
    ) -> Awaitable[bool]: ...


class Clock(Protocol):
    """Time source for the dispatch loop."""

    def now(self) -> float: ...

    def wait(self, wakeup: asyncio.Event, deadline: float | None) -> Awaitable[None]:
        """Return when `wakeup` is set or `deadline` (epoch seconds) passes, whichever is first."""
        ...

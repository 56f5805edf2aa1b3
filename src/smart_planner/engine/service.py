# src/smart_planner/engine/service.py

"""
Scheduling service.

Reacts to task mutations coming from the API layer:

    mutation -> score every same-day task -> optimize the day
             -> persist placements -> reschedule the dispatcher's jobs

One bad task is reported in the DayPlan, loses its jobs and is skipped; the rest of
the day is still planned. Store failures on this path propagate to the caller.

Everything that touches one user's day (replans, and the job cancels done by
update/delete) runs under that day's lock, so a replan that read a task as open
cannot re-arm it after the task was completed or deleted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, TypeVar

from ..core.ports import TaskRepo
from ..tasks.task_models import InvalidTaskError, Task
from .dispatcher import JobDispatcher, ScheduledJob
from .fallback import run_blocking
from .optimizer import OptimizationResult, PlacementFailure, ScheduleOptimizer
from .priority import PriorityAssessment, PriorityScorer

logger = logging.getLogger(__name__)

T = TypeVar("T")

DayKey = tuple[str, date]


@dataclass(slots=True)
class DayPlan:
    user_id: str
    day: date | None
    result: OptimizationResult = field(default_factory=OptimizationResult)
    assessments: dict[str, PriorityAssessment] = field(default_factory=dict)
    jobs: dict[str, list[ScheduledJob]] = field(default_factory=dict)

    @property
    def placements(self):
        return self.result.placements

    @property
    def failures(self) -> list[PlacementFailure]:
        return self.result.failures


@dataclass(slots=True)
class _DayLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SchedulingService:
    def __init__(
            self,
            *,
            task_repo: TaskRepo,
            scorer: PriorityScorer,
            optimizer: ScheduleOptimizer,
            dispatcher: JobDispatcher,
            store_timeout: float = 5.0,
    ) -> None:
        self._repo = task_repo
        self._scorer = scorer
        self._optimizer = optimizer
        self._dispatcher = dispatcher
        self._store_timeout = float(store_timeout)
        # Only days with a holder or a waiter have an entry.
        self._locks: dict[DayKey, _DayLock] = {}

    @property
    def dispatcher(self) -> JobDispatcher:
        return self._dispatcher

    async def _store(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.wait_for(run_blocking(fn, *args), timeout=self._store_timeout)

    @asynccontextmanager
    async def _day_locked(self, user_id: str, day: date | None) -> AsyncIterator[None]:
        if day is None:
            yield
            return

        key = (user_id, day)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _DayLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    async def _cancel_jobs(self, task_id: str, reason: str) -> list[ScheduledJob]:
        cancelled = await self._dispatcher.cancel(task_id)
        if cancelled:
            logger.info("Cancelled %d job(s) for task=%s (%s)", len(cancelled), task_id, reason)
        return cancelled

    # ---- mutations ----

    async def on_task_created(self, task: Task, *, now: datetime | None = None) -> DayPlan:
        task.validate()
        return await self._replan_for(task, now=now)

    async def on_task_updated(
            self,
            task: Task,
            *,
            previous_day: date | None = None,
            now: datetime | None = None,
    ) -> DayPlan:
        """
        Re-plan after an edit.

        A task that is no longer open (completed / cancelled) loses its jobs and the rest of
        its day is re-planned without it. If the edit moved the task to another day, the old
        day is re-planned as well.
        """
        task.validate()
        if not task.status.is_open:
            async with self._day_locked(task.user_id, task.anchor_day or previous_day):
                await self._cancel_jobs(task.id, f"status {task.status.value}")

        if previous_day is not None and previous_day != task.anchor_day:
            await self.replan_day(task.user_id, previous_day, now=now)

        return await self._replan_for(task, now=now)

    async def on_task_deleted(self, task: Task, *, now: datetime | None = None) -> DayPlan:
        async with self._day_locked(task.user_id, task.anchor_day):
            await self._cancel_jobs(task.id, "deleted")
        return await self._replan_for(task, now=now)

    async def _replan_for(self, task: Task, *, now: datetime | None) -> DayPlan:
        day = task.anchor_day
        if day is None:
            logger.warning("Task %s has no start time; nothing to plan", task.id)
            plan = DayPlan(user_id=task.user_id, day=None)
            plan.result.failures.append(PlacementFailure(task_id=task.id, reason="no requested_start"))
            await self._cancel_jobs(task.id, "no start time")
            return plan
        return await self.replan_day(task.user_id, day, now=now)

    # ---- planning ----

    async def replan_day(self, user_id: str, day: date, *, now: datetime | None = None) -> DayPlan:
        if now is None:
            now = datetime.now(timezone.utc)

        async with self._day_locked(user_id, day):
            plan = await self._plan_locked(user_id, day, now)

        logger.info(
            "Planned day=%s user=%s placed=%d failed=%d",
            day.isoformat(),
            user_id,
            len(plan.placements),
            len(plan.failures),
        )
        return plan

    async def _plan_locked(self, user_id: str, day: date, now: datetime) -> DayPlan:
        tasks = await self._store(self._repo.find_same_day_tasks, user_id, day)
        plan = DayPlan(user_id=user_id, day=day)

        scored: list[Task] = []
        for task in tasks:
            try:
                assessment = await self._scorer.assess(task, now=now)
            except InvalidTaskError as e:
                logger.warning("Cannot score task: %s", e)
                plan.result.failures.append(PlacementFailure(task_id=e.task_id, reason=e.reason))
                continue

            plan.assessments[task.id] = assessment
            if task.priority_level != assessment.level:
                await self._store(self._repo.update_priority, task.id, assessment.level)
                task.priority_level = assessment.level
            scored.append(task)

        result = await self._optimizer.optimize(scored)
        plan.result.failures.extend(result.failures)

        by_id = {t.id: t for t in scored}
        for placement in result.placements:
            task = by_id[placement.task_id]

            # The scoring above can take a while; the task may have been closed or deleted since.
            current = await self._store(self._repo.get_task, task.id)
            if current is None or not current.status.is_open:
                await self._cancel_jobs(task.id, "closed during replan")
                continue

            await self._store(self._repo.update_scheduled_times, task.id, placement.start, placement.end)
            task.scheduled_start = placement.start
            task.scheduled_end = placement.end
            task.optimized = True

            try:
                plan.jobs[task.id] = await self._dispatcher.reschedule(task)
            except InvalidTaskError as e:
                logger.warning("Cannot register jobs: %s", e)
                plan.result.failures.append(PlacementFailure(task_id=e.task_id, reason=e.reason))
                continue
            plan.result.placements.append(placement)

        # A task that could not be placed must not keep firing at its old slot.
        for failure in plan.failures:
            if failure.task_id:
                await self._cancel_jobs(failure.task_id, f"not placed: {failure.reason}")

        return plan

    # ---- startup ----

    async def restore(self, *, now: datetime | None = None, limit: int = 500) -> int:
        """Re-arm jobs for every open task that still has something to fire (after a restart)."""
        if now is None:
            now = datetime.now(timezone.utc)

        tasks = await self._store(self._repo.find_upcoming, now, limit)
        armed = 0
        for task in tasks:
            try:
                jobs = await self._dispatcher.reschedule(task)
            except InvalidTaskError as e:
                logger.warning("Skipping task on restore: %s", e)
                continue
            if jobs:
                armed += 1

        logger.info("Restored jobs for %d of %d upcoming task(s)", armed, len(tasks))
        return armed

# src/smart_planner/engine/optimizer.py

"""
Schedule optimizer.

Places one user's same-day tasks back to back:

    order:     (priority desc, requested_start asc)
    cursor:    first ordered task's requested start
    duration:  baseline x complexity multiplier x user performance factor
    gap:       travel time between located tasks, else a priority-keyed break

The result is a list of placements plus the tasks that could not be placed.
A bad task is reported and skipped; it never aborts the rest of the day.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ..core.ports import TaskRepo, TravelTimeOracle
from ..tasks.task_models import InvalidTaskError, PriorityLevel, Task, as_utc
from .fallback import call_with_fallback, run_blocking

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)

COMPLEXITY_CAP = 2.0
PERFORMANCE_MIN = 0.5
PERFORMANCE_MAX = 1.5


@dataclass(slots=True, frozen=True)
class Placement:
    task_id: str
    user_id: str
    start: datetime
    end: datetime
    priority_level: PriorityLevel
    gap_after_seconds: float = 0.0
    optimized: bool = True

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(slots=True, frozen=True)
class PlacementFailure:
    task_id: str | None
    reason: str


@dataclass(slots=True)
class OptimizationResult:
    placements: list[Placement] = field(default_factory=list)
    failures: list[PlacementFailure] = field(default_factory=list)

    def placement_for(self, task_id: str) -> Placement | None:
        for p in self.placements:
            if p.task_id == task_id:
                return p
        return None


def sort_key(task: Task) -> tuple[int, datetime, str]:
    rank = task.priority_level.rank if task.priority_level is not None else -1
    start = as_utc(task.requested_start) if task.requested_start is not None else _FAR_FUTURE
    return (-rank, start, str(task.id))


def order_tasks(tasks: Iterable[Task]) -> list[Task]:
    return sorted(tasks, key=sort_key)


def complexity_multiplier(task: Task) -> float:
    signals = task.complexity
    m = 1.0
    if signals.subtasks > 0:
        m += 0.1 * signals.subtasks
    if task.description_length > 200:
        m += 0.1
    if signals.attachments > 0:
        m += 0.05 * signals.attachments
    if task.priority_level == PriorityLevel.HIGH:
        m += 0.2
    return min(m, COMPLEXITY_CAP)


def performance_from_history(completed: Iterable[Task]) -> float:
    """Mean actual/estimated duration ratio, clamped to [0.5, 1.5]; 1.0 without usable history."""
    ratios: list[float] = []
    for t in completed:
        if t.actual_duration_seconds is None:
            continue
        if t.requested_start is None or t.requested_end is None:
            continue
        estimated = (as_utc(t.requested_end) - as_utc(t.requested_start)).total_seconds()
        if estimated <= 0:
            continue
        ratios.append(float(t.actual_duration_seconds) / estimated)

    if not ratios:
        return 1.0
    mean = sum(ratios) / len(ratios)
    return max(PERFORMANCE_MIN, min(PERFORMANCE_MAX, mean))


class ScheduleOptimizer:
    def __init__(
            self,
            *,
            task_repo: TaskRepo | None = None,
            travel_oracle: TravelTimeOracle | None = None,
            default_task_minutes: int = 30,
            break_minutes: dict[str, int] | None = None,
            break_fallback_minutes: int = 15,
            oracle_timeout: float = 3.0,
            store_timeout: float = 5.0,
            history_limit: int = 10,
    ) -> None:
        self._repo = task_repo
        self._travel = travel_oracle
        self._default_duration = timedelta(minutes=max(1, int(default_task_minutes)))
        breaks = break_minutes or {"high": 10, "medium": 15, "low": 20}
        self._breaks = {PriorityLevel(k): timedelta(minutes=int(v)) for k, v in breaks.items()}
        self._fallback_break = timedelta(minutes=int(break_fallback_minutes))
        self._oracle_timeout = float(oracle_timeout)
        self._store_timeout = float(store_timeout)
        self._history_limit = max(1, int(history_limit))

    # ---- estimates ----

    def baseline_duration(self, task: Task) -> timedelta:
        if task.requested_start is None or task.requested_end is None:
            return self._default_duration
        baseline = as_utc(task.requested_end) - as_utc(task.requested_start)
        if baseline <= timedelta(0):
            raise InvalidTaskError(task.id, "requested_end must be after requested_start")
        return baseline

    def default_break(self, level: PriorityLevel | None) -> timedelta:
        if level is None:
            return self._fallback_break
        return self._breaks.get(level, self._fallback_break)

    async def user_performance_factor(self, user_id: str) -> float:
        repo = self._repo
        if repo is None:
            return 1.0

        async def _lookup() -> float:
            completed = await run_blocking(repo.find_recent_completed, user_id, self._history_limit)
            return performance_from_history(completed)

        est = await call_with_fallback(
            _lookup,
            default=1.0,
            timeout=self._store_timeout,
            label=f"user performance user={user_id}",
        )
        return est.value

    async def gap_between(self, current: Task, nxt: Task | None) -> timedelta:
        if nxt is None:
            return timedelta(0)

        travel = self._travel
        if travel is not None and current.location is not None and nxt.location is not None:
            origin, dest = current.location, nxt.location
            est = await call_with_fallback(
                lambda: travel.estimate_travel_seconds(origin, dest),
                default=None,
                timeout=self._oracle_timeout,
                label=f"travel time {current.id}->{nxt.id}",
            )
            if est.value is None:
                return self._fallback_break
            try:
                seconds = max(0, int(est.value))
            except (TypeError, ValueError):
                logger.warning("travel oracle returned non-numeric %r; using default break", est.value)
                return self._fallback_break
            return timedelta(seconds=seconds)

        return self.default_break(current.priority_level)

    # ---- placement ----

    def _check(self, task: Task) -> None:
        task.validate()
        if task.priority_level is None:
            raise InvalidTaskError(task.id, "priority_level is not set; score the task first")

    async def optimize(self, tasks: Sequence[Task]) -> OptimizationResult:
        result = OptimizationResult()

        valid: list[Task] = []
        for t in tasks:
            try:
                self._check(t)
                self.baseline_duration(t)
            except InvalidTaskError as e:
                logger.warning("Skipping task in optimization: %s", e)
                result.failures.append(PlacementFailure(task_id=e.task_id, reason=e.reason))
                continue
            valid.append(t)

        ordered = order_tasks(valid)
        if not ordered:
            return result

        anchor = ordered[0].requested_start
        if anchor is None:
            # First task has no requested start; fall back to the earliest one in the batch.
            starts = [as_utc(t.requested_start) for t in ordered if t.requested_start is not None]
            anchor = min(starts) if starts else None
        if anchor is None:
            # Nothing in the batch says when the day starts.
            for t in ordered:
                result.failures.append(PlacementFailure(task_id=t.id, reason="no requested_start to anchor the day"))
            logger.warning("No anchor time for %d task(s); nothing placed", len(ordered))
            return result

        performance: dict[str, float] = {}
        cursor = as_utc(anchor)

        for i, task in enumerate(ordered):
            nxt = ordered[i + 1] if i + 1 < len(ordered) else None

            if task.user_id not in performance:
                performance[task.user_id] = await self.user_performance_factor(task.user_id)

            duration = self.baseline_duration(task) * complexity_multiplier(task) * performance[task.user_id]
            if duration <= timedelta(0):
                result.failures.append(PlacementFailure(task_id=task.id, reason="non-positive duration"))
                continue

            start = cursor
            end = start + duration
            gap = await self.gap_between(task, nxt)

            result.placements.append(
                Placement(
                    task_id=task.id,
                    user_id=task.user_id,
                    start=start,
                    end=end,
                    priority_level=task.priority_level,  # type: ignore[arg-type]
                    gap_after_seconds=gap.total_seconds(),
                )
            )
            cursor = end + gap

        logger.info(
            "Optimized %d task(s) (%d failed) starting %s",
            len(result.placements),
            len(result.failures),
            as_utc(anchor).isoformat(),
        )
        return result

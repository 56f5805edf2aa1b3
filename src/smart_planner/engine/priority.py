# src/smart_planner/engine/priority.py

"""
Priority scoring.

score() is pure and total: a task plus the two externally supplied factors maps to
a PriorityLevel. PriorityScorer wraps it with the lookups that produce those factors
(importance oracle, recent completed tasks), each bounded by a timeout with a 0.5 default.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..core.ports import ImportanceOracle, TaskRepo
from ..tasks.task_models import PriorityLevel, Task, as_utc
from .fallback import call_with_fallback, clamp_unit, run_blocking

logger = logging.getLogger(__name__)

WEIGHTS = {
    "deadline": 0.4,
    "complexity": 0.2,
    "importance": 0.3,
    "user_preference": 0.1,
}

HIGH_THRESHOLD = 0.8
MEDIUM_THRESHOLD = 0.4

NEUTRAL_FACTOR = 0.5

# Numeric value of a past task's priority when averaging user preference.
PREFERENCE_VALUES = {
    PriorityLevel.LOW: 0.3,
    PriorityLevel.MEDIUM: 0.6,
    PriorityLevel.HIGH: 0.9,
}

LONG_DESCRIPTION_CHARS = 200


def deadline_factor(task: Task, now: datetime) -> float:
    deadline = task.deadline
    if deadline is None:
        return NEUTRAL_FACTOR

    days_left = (as_utc(deadline) - as_utc(now)).total_seconds() / 86400.0
    if days_left < 0:
        return 1.0
    if days_left < 1:
        return 0.9
    if days_left < 3:
        return 0.7
    if days_left < 7:
        return 0.5
    return 0.3


def complexity_factor(task: Task) -> float:
    signals = task.complexity
    total = 0.0
    if task.description_length > LONG_DESCRIPTION_CHARS:
        total += 0.2
    if signals.subtasks > 0:
        total += 0.3
    if signals.attachments > 0:
        total += 0.2
    if signals.dependencies > 0:
        total += 0.3
    return min(total, 1.0)


def preference_from_history(completed: Iterable[Task]) -> float:
    """Mean mapped priority of the user's recent completed tasks (0.5 with no history)."""
    values = [PREFERENCE_VALUES.get(t.priority_level, NEUTRAL_FACTOR) for t in completed]  # type: ignore[arg-type]
    if not values:
        return NEUTRAL_FACTOR
    return sum(values) / len(values)


def weighted_score(factors: dict[str, float]) -> float:
    total = sum(factors[name] * w for name, w in WEIGHTS.items())
    # Round away float noise so sums like 0.36 + 0.2 + 0.15 + 0.09 land exactly on 0.8.
    return round(total, 9)


def level_for_score(score: float) -> PriorityLevel:
    if score >= HIGH_THRESHOLD:
        return PriorityLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return PriorityLevel.MEDIUM
    return PriorityLevel.LOW


def compute_factors(
        task: Task,
        importance_factor: float | None,
        user_preference_factor: float | None,
        now: datetime,
) -> dict[str, float]:
    return {
        "deadline": deadline_factor(task, now),
        "complexity": complexity_factor(task),
        "importance": clamp_unit(importance_factor, NEUTRAL_FACTOR),
        "user_preference": clamp_unit(user_preference_factor, NEUTRAL_FACTOR),
    }


def score(
        task: Task,
        importance_factor: float | None = NEUTRAL_FACTOR,
        user_preference_factor: float | None = NEUTRAL_FACTOR,
        now: datetime | None = None,
) -> PriorityLevel:
    """
    Classify a task.

    Missing or out-of-range factors are defaulted/clamped, never raised.
    Only a task without id/user_id is rejected (InvalidTaskError).
    """
    task.validate()
    if now is None:
        now = datetime.now(timezone.utc)
    return level_for_score(weighted_score(compute_factors(task, importance_factor, user_preference_factor, now)))


@dataclass(slots=True, frozen=True)
class PriorityAssessment:
    task_id: str
    level: PriorityLevel
    score: float
    factors: dict[str, float]
    defaulted: frozenset[str] = field(default_factory=frozenset)


class PriorityScorer:
    """
    Gathers the external factors for a task and scores it.

    Both lookups are optional collaborators; a missing collaborator, an error or a
    timeout yields the neutral 0.5 factor.
    """

    def __init__(
            self,
            *,
            importance_oracle: ImportanceOracle | None = None,
            task_repo: TaskRepo | None = None,
            oracle_timeout: float = 3.0,
            store_timeout: float = 5.0,
            history_limit: int = 10,
    ) -> None:
        self._oracle = importance_oracle
        self._repo = task_repo
        self._oracle_timeout = float(oracle_timeout)
        self._store_timeout = float(store_timeout)
        self._history_limit = max(1, int(history_limit))

    async def importance_factor(self, task: Task) -> tuple[float, bool]:
        oracle = self._oracle
        if oracle is None:
            return NEUTRAL_FACTOR, True

        est = await call_with_fallback(
            lambda: oracle.predict_importance(task),
            default=NEUTRAL_FACTOR,
            timeout=self._oracle_timeout,
            label=f"importance oracle task={task.id}",
        )
        return clamp_unit(est.value, NEUTRAL_FACTOR), est.fallback

    async def user_preference_factor(self, user_id: str) -> tuple[float, bool]:
        repo = self._repo
        if repo is None:
            return NEUTRAL_FACTOR, True

        async def _lookup() -> float:
            completed = await run_blocking(repo.find_recent_completed, user_id, self._history_limit)
            return preference_from_history(completed)

        est = await call_with_fallback(
            _lookup,
            default=NEUTRAL_FACTOR,
            timeout=self._store_timeout,
            label=f"user preference user={user_id}",
        )
        return est.value, est.fallback

    async def assess(self, task: Task, *, now: datetime | None = None) -> PriorityAssessment:
        task.validate()
        if now is None:
            now = datetime.now(timezone.utc)

        importance, importance_defaulted = await self.importance_factor(task)
        preference, preference_defaulted = await self.user_preference_factor(task.user_id)

        factors = compute_factors(task, importance, preference, now)
        total = weighted_score(factors)
        level = level_for_score(total)

        defaulted = set()
        if importance_defaulted:
            defaulted.add("importance")
        if preference_defaulted:
            defaulted.add("user_preference")

        logger.debug(
            "Scored task=%s level=%s score=%.3f factors=%s defaulted=%s",
            task.id,
            level.value,
            total,
            factors,
            sorted(defaulted),
        )
        return PriorityAssessment(
            task_id=task.id,
            level=level,
            score=total,
            factors=factors,
            defaulted=frozenset(defaulted),
        )

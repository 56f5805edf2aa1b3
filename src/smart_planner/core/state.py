# src/smart_planner/core/state.py

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..engine.dispatcher import JobDispatcher
from ..engine.optimizer import ScheduleOptimizer
from ..engine.priority import PriorityScorer
from ..engine.service import SchedulingService
from .ports import TaskRepo


@dataclass
class EngineState:
    """Everything the composition root wires together; owned by the running service."""

    settings: Any

    task_repo: TaskRepo
    scorer: PriorityScorer
    optimizer: ScheduleOptimizer
    dispatcher: JobDispatcher
    service: SchedulingService

    # Adapter cleanup hooks (HTTP clients etc.), awaited on shutdown.
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

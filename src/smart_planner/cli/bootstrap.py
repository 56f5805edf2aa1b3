# src/smart_planner/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- picks concrete adapters (online when configured, offline otherwise),
- wires scorer / optimizer / dispatcher / service into EngineState.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..connectors.console_sender import ConsoleNotificationSender
from ..connectors.webhook_sender import WebhookNotificationSender
from ..core.clock import SystemClock
from ..core.ports import Clock, ImportanceOracle, NotificationSender, TaskRepo, TravelTimeOracle
from ..core.state import EngineState
from ..engine.dispatcher import JobDispatcher
from ..engine.optimizer import ScheduleOptimizer
from ..engine.priority import PriorityScorer
from ..engine.service import SchedulingService
from ..oracles.importance_llm import LLMImportanceOracle, OracleNotConfiguredError
from ..oracles.offline import OfflineImportanceOracle, StraightLineTravelOracle
from ..oracles.travel import DistanceMatrixTravelOracle
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def _importance_oracle(settings) -> ImportanceOracle:
    if not getattr(settings, "llm_enabled", False):
        return OfflineImportanceOracle()
    try:
        return LLMImportanceOracle.from_settings(settings, timeout=settings.oracle_timeout_seconds)
    except OracleNotConfiguredError as e:
        # Fallback for demos / local runs without external services.
        logger.info("Importance oracle offline: %s", e)
        return OfflineImportanceOracle()


def create_initial_state(
        *,
        settings=None,
        task_repo: TaskRepo | None = None,
        sender: NotificationSender | None = None,
        importance_oracle: ImportanceOracle | None = None,
        travel_oracle: TravelTimeOracle | None = None,
        clock: Clock | None = None,
) -> EngineState:
    """
    Build EngineState from the provided settings.

    Every collaborator is injectable (tests pass fakes); anything not passed in is built
    from settings. If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    closers = []

    if task_repo is None:
        _ensure_local_dirs(settings)
        task_repo = TaskStore(settings.tasks_db_path)

    if importance_oracle is None:
        importance_oracle = _importance_oracle(settings)

    if travel_oracle is None:
        if settings.travel_api_key:
            matrix = DistanceMatrixTravelOracle(
                api_key=settings.travel_api_key,
                base_url=settings.travel_base_url,
                mode=settings.travel_mode,
                timeout=settings.oracle_timeout_seconds,
            )
            closers.append(matrix.aclose)
            travel_oracle = matrix
        else:
            travel_oracle = StraightLineTravelOracle()

    if sender is None:
        if settings.notify_webhook_url:
            webhook = WebhookNotificationSender(settings.notify_webhook_url)
            closers.append(webhook.aclose)
            sender = webhook
        else:
            sender = ConsoleNotificationSender()

    scorer = PriorityScorer(
        importance_oracle=importance_oracle,
        task_repo=task_repo,
        oracle_timeout=settings.oracle_timeout_seconds,
        store_timeout=settings.store_timeout_seconds,
        history_limit=settings.history_limit,
    )
    optimizer = ScheduleOptimizer(
        task_repo=task_repo,
        travel_oracle=travel_oracle,
        default_task_minutes=settings.default_task_minutes,
        break_minutes=settings.break_minutes,
        break_fallback_minutes=settings.break_fallback_minutes,
        oracle_timeout=settings.oracle_timeout_seconds,
        store_timeout=settings.store_timeout_seconds,
        history_limit=settings.history_limit,
    )
    dispatcher = JobDispatcher(
        sender,
        task_repo,
        clock=clock or SystemClock(),
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
    )
    service = SchedulingService(
        task_repo=task_repo,
        scorer=scorer,
        optimizer=optimizer,
        dispatcher=dispatcher,
        store_timeout=settings.store_timeout_seconds,
    )

    logger.info(
        "Engine wired: importance=%s travel=%s sender=%s",
        type(importance_oracle).__name__,
        type(travel_oracle).__name__,
        type(sender).__name__,
    )
    return EngineState(
        settings=settings,
        task_repo=task_repo,
        scorer=scorer,
        optimizer=optimizer,
        dispatcher=dispatcher,
        service=service,
        closers=closers,
    )


async def start_engine(state: EngineState) -> int:
    """Start the dispatch loop and re-arm jobs for upcoming tasks. Returns how many tasks were armed."""
    await state.dispatcher.start()
    return await state.service.restore()


async def shutdown_engine(state: EngineState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await state.dispatcher.stop()
    except Exception:
        logger.exception("Dispatcher stop failed.")

    for close in state.closers:
        try:
            await close()
        except Exception:
            logger.debug("Adapter close failed.", exc_info=True)

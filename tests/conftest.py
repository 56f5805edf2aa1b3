# tests/conftest.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Callable

import pytest

from smart_planner.core.clock import ManualClock
from smart_planner.engine.dispatcher import JobDispatcher
from smart_planner.tasks.task_models import Task

from .fakes import FakeSender, FakeTaskRepo

# Monday, January 15, 2024; the tests' "today".
DAY_START = datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY_START + timedelta(hours=hour, minutes=minute)


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="smart-planner-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        default_task_minutes=30,
        break_minutes={"high": 10, "medium": 15, "low": 20},
        break_fallback_minutes=15,
        history_limit=10,
        oracle_timeout_seconds=0.2,
        store_timeout_seconds=2.0,
        shutdown_grace_seconds=1.0,
        llm_enabled=False,
        llm_api_key=None,
        llm_base_url="https://example.invalid/v1",
        llm_models=[],
        extra_headers={},
        travel_api_key=None,
        travel_base_url="https://example.invalid/matrix",
        travel_mode="driving",
        notify_webhook_url=None,
    )


@pytest.fixture()
def clock() -> ManualClock:
    # 07:00 on the test day: every 09:00+ job is still in the future.
    return ManualClock(start=at(7).timestamp())


@pytest.fixture()
def repo() -> FakeTaskRepo:
    return FakeTaskRepo()


@pytest.fixture()
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture()
def dispatcher(sender: FakeSender, repo: FakeTaskRepo, clock: ManualClock) -> JobDispatcher:
    return JobDispatcher(sender, repo, clock=clock, shutdown_grace_seconds=1.0)


@pytest.fixture()
def make_task() -> Callable[..., Task]:
    def _make(task_id: str = "t1", **kwargs) -> Task:
        kwargs.setdefault("user_id", "u1")
        kwargs.setdefault("title", f"Task {task_id}")
        return Task(id=task_id, **kwargs)

    return _make

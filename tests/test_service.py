# tests/test_service.py

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from smart_planner.core.clock import ManualClock
from smart_planner.engine.dispatcher import JobDispatcher, JobKind
from smart_planner.engine.optimizer import ScheduleOptimizer
from smart_planner.engine.priority import PriorityScorer
from smart_planner.engine.service import SchedulingService
from smart_planner.tasks.task_models import (
    ComplexitySignals,
    PriorityLevel,
    Task,
    TaskStatus,
)

from .conftest import DAY_START, at
from .fakes import (
    FakeSender,
    FakeTaskRepo,
    GatedImportanceOracle,
    StubImportanceOracle,
    StubTravelOracle,
    started,
)

NOW = at(7)
COMPLEX = ComplexitySignals(subtasks=1, dependencies=1)


def _service(repo: FakeTaskRepo, dispatcher: JobDispatcher, oracle=None) -> SchedulingService:
    oracle = oracle or StubImportanceOracle(1.0)
    scorer = PriorityScorer(importance_oracle=oracle, task_repo=repo, oracle_timeout=5.0)
    optimizer = ScheduleOptimizer(task_repo=repo, travel_oracle=StubTravelOracle())
    return SchedulingService(task_repo=repo, scorer=scorer, optimizer=optimizer, dispatcher=dispatcher)


def _task(task_id: str, start_h: int, end_h: int, **kw) -> Task:
    return Task(id=task_id, user_id="u1", title=task_id, requested_start=at(start_h), requested_end=at(end_h), **kw)


@pytest.mark.asyncio
async def test_created_task_replans_whole_day(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    # importance 1.0 everywhere; only the complex tasks cross the high threshold
    repo.add(_task("A", 9, 10, complexity=COMPLEX))
    repo.add(_task("B", 9, 10))
    c = repo.add(_task("C", 11, 12, complexity=COMPLEX))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        plan = await service.on_task_created(c, now=NOW)

        assert plan.day == DAY_START.date()
        assert plan.failures == []
        assert [p.task_id for p in plan.placements] == ["A", "C", "B"]
        assert plan.assessments["A"].level == PriorityLevel.HIGH
        assert plan.assessments["B"].level == PriorityLevel.MEDIUM

        for p in plan.placements:
            stored = repo.tasks[p.task_id]
            assert stored.priority_level == p.priority_level
            assert (stored.scheduled_start, stored.scheduled_end) == (p.start, p.end)
            assert stored.optimized is True

            kinds = {j.key.kind for j in dispatcher.jobs_for(p.task_id)}
            assert kinds == {JobKind.START, JobKind.DUE}

        for cur, nxt in zip(plan.placements, plan.placements[1:]):
            assert cur.end + timedelta(seconds=cur.gap_after_seconds) <= nxt.start


@pytest.mark.asyncio
async def test_replan_replaces_jobs_without_duplicates(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    a = repo.add(_task("A", 9, 10))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        await service.on_task_created(a, now=NOW)
        b = repo.add(_task("B", 8, 9, complexity=COMPLEX))
        await service.on_task_created(b, now=NOW)

        assert len(dispatcher.jobs_for("A")) == 2
        assert len(dispatcher.jobs_for("B")) == 2
        assert len(dispatcher.live_jobs()) == 4


@pytest.mark.asyncio
async def test_deleted_task_loses_its_jobs(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    a = repo.add(_task("A", 9, 10))
    b = repo.add(_task("B", 10, 11))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        await service.on_task_created(b, now=NOW)
        assert dispatcher.jobs_for("A")

        del repo.tasks["A"]
        plan = await service.on_task_deleted(a, now=NOW)

        assert dispatcher.jobs_for("A") == []
        assert [p.task_id for p in plan.placements] == ["B"]
        assert plan.placements[0].start == at(10)


@pytest.mark.asyncio
async def test_completed_task_jobs_are_cancelled(
        repo: FakeTaskRepo, dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender
) -> None:
    a = repo.add(_task("A", 9, 10))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        await service.on_task_created(a, now=NOW)

        repo.update_status("A", TaskStatus.COMPLETED)
        done = repo.get_task("A")
        assert done is not None
        await service.on_task_updated(done, now=NOW)

        clock.set(at(18).timestamp())
        await dispatcher.barrier()

    assert dispatcher.jobs_for("A") == []
    assert sender.sent == []


@pytest.mark.asyncio
async def test_moving_task_to_another_day_replans_both(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    a = repo.add(_task("A", 9, 10))
    repo.add(_task("B", 11, 12))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        await service.on_task_created(a, now=NOW)
        # both medium: A 09:00-10:00, 15 minute break, then B
        assert repo.tasks["B"].scheduled_start == at(10, 15)

        moved = _task("A", 9 + 24, 10 + 24)
        repo.add(moved)
        plan = await service.on_task_updated(moved, previous_day=DAY_START.date(), now=NOW)

        assert plan.day == (DAY_START + timedelta(days=1)).date()
        assert [p.task_id for p in plan.placements] == ["A"]
        # B now anchors its own day at its requested start
        assert repo.tasks["B"].scheduled_start == at(11)
        assert dispatcher.jobs_for("B")[0].due_at in (at(11).timestamp(), at(12).timestamp())


@pytest.mark.asyncio
async def test_one_bad_task_does_not_block_the_day(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    repo.add(_task("bad", 10, 9))
    good = repo.add(_task("good", 9, 10))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        plan = await service.on_task_created(good, now=NOW)

    assert [p.task_id for p in plan.placements] == ["good"]
    assert [f.task_id for f in plan.failures] == ["bad"]


@pytest.mark.asyncio
async def test_restore_rearms_upcoming_tasks(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    repo.add(Task(id="future", user_id="u1", title="f", scheduled_start=at(9), scheduled_end=at(10)))
    repo.add(Task(id="running", user_id="u1", title="r", scheduled_start=at(6), scheduled_end=at(8),
                  status=TaskStatus.IN_PROGRESS))
    repo.add(Task(id="over", user_id="u1", title="o", scheduled_start=at(5), scheduled_end=at(6)))
    repo.add(Task(id="done", user_id="u1", title="d", scheduled_start=at(9), status=TaskStatus.COMPLETED))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        armed = await service.restore(now=NOW)

        assert armed == 2
        assert {j.key.kind for j in dispatcher.jobs_for("future")} == {JobKind.START, JobKind.DUE}
        assert {j.key.kind for j in dispatcher.jobs_for("running")} == {JobKind.DUE}
        assert dispatcher.jobs_for("over") == []
        assert dispatcher.jobs_for("done") == []


@pytest.mark.asyncio
async def test_task_without_start_is_reported(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    task = repo.add(Task(id="x", user_id="u1", title="x"))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        plan = await service.on_task_created(task, now=NOW)

    assert plan.day is None
    assert plan.placements == []
    assert [f.task_id for f in plan.failures] == ["x"]


@pytest.mark.asyncio
@pytest.mark.parametrize("close", ["complete", "delete"])
async def test_task_closed_while_its_day_is_planned_keeps_no_jobs(
        repo: FakeTaskRepo, dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender, close: str
) -> None:
    a = repo.add(_task("A", 9, 10))
    repo.add(_task("B", 11, 12))
    oracle = GatedImportanceOracle()
    service = _service(repo, dispatcher, oracle)

    async with started(dispatcher):
        replan = asyncio.create_task(service.on_task_created(a, now=NOW))
        # the replan has read A as open and is now scoring it
        await oracle.entered.wait()

        if close == "complete":
            repo.update_status("A", TaskStatus.COMPLETED)
            closed = repo.get_task("A")
            assert closed is not None
            mutation = asyncio.create_task(service.on_task_updated(closed, now=NOW))
        else:
            del repo.tasks["A"]
            mutation = asyncio.create_task(service.on_task_deleted(a, now=NOW))
        await asyncio.sleep(0)

        oracle.gate.set()
        await asyncio.gather(replan, mutation)

        assert dispatcher.jobs_for("A") == []
        assert dispatcher.jobs_for("B")
        assert service._locks == {}

        clock.set(at(10, 30).timestamp())
        await dispatcher.barrier()

    assert sender.sent == []
    assert ("A", TaskStatus.IN_PROGRESS) not in repo.status_updates


@pytest.mark.asyncio
async def test_replanning_unchanged_day_gives_same_plan(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    # A has no requested end; its own placement must not become its deadline
    repo.add(Task(id="A", user_id="u1", title="A", requested_start=at(9), complexity=COMPLEX))
    repo.add(_task("B", 10, 11, complexity=COMPLEX))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        first = await service.replan_day("u1", DAY_START.date(), now=NOW)
        second = await service.replan_day("u1", DAY_START.date(), now=NOW)

    assert [(p.task_id, p.priority_level) for p in first.placements] == [
        ("B", PriorityLevel.HIGH),
        ("A", PriorityLevel.MEDIUM),
    ]
    assert first.placements[0].start == at(10)
    assert second.placements == first.placements


@pytest.mark.asyncio
async def test_task_that_can_no_longer_be_placed_loses_its_jobs(
        repo: FakeTaskRepo, dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender
) -> None:
    a = repo.add(_task("A", 9, 10))
    repo.add(_task("B", 11, 12))
    service = _service(repo, dispatcher)

    async with started(dispatcher):
        await service.on_task_created(a, now=NOW)
        assert dispatcher.jobs_for("A")

        repo.tasks["A"].requested_end = at(8)
        edited = repo.get_task("A")
        assert edited is not None
        plan = await service.on_task_updated(edited, now=NOW)

        assert [f.task_id for f in plan.failures] == ["A"]
        assert [p.task_id for p in plan.placements] == ["B"]
        assert dispatcher.jobs_for("A") == []

        # B took over the morning; A's old 09:00 start must stay silent
        clock.set(at(9, 30).timestamp())
        await dispatcher.barrier()

    assert sender.sent == []


@pytest.mark.asyncio
async def test_day_locks_do_not_accumulate(repo: FakeTaskRepo, dispatcher: JobDispatcher) -> None:
    service = _service(repo, dispatcher)
    async with started(dispatcher):
        for offset in range(5):
            day = (DAY_START + timedelta(days=offset)).date()
            await service.replan_day("u1", day, now=NOW)
            await service.replan_day("u2", day, now=NOW)

    assert service._locks == {}

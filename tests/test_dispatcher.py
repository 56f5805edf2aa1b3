# tests/test_dispatcher.py

from __future__ import annotations

from datetime import timedelta

import pytest

from smart_planner.core.clock import ManualClock
from smart_planner.engine.dispatcher import (
    DispatcherNotRunning,
    JobConflictError,
    JobDispatcher,
    JobKey,
    JobKind,
    JobState,
    build_jobs,
)
from smart_planner.tasks.task_models import (
    InvalidTaskError,
    Reminder,
    ReminderStatus,
    Task,
    TaskStatus,
)

from .conftest import at
from .fakes import FakeSender, FakeTaskRepo, started


def _scheduled(task_id: str = "t1", start=None, end=None, **kw) -> Task:
    return Task(
        id=task_id,
        user_id="u1",
        title=f"Task {task_id}",
        scheduled_start=start or at(9),
        scheduled_end=end,
        **kw,
    )


def test_build_jobs_payloads() -> None:
    task = _scheduled(
        end=at(10),
        reminders=[
            Reminder(time=at(8, 45), message="Leave soon"),
            Reminder(time=at(8, 30), status=ReminderStatus.SENT),
        ],
    )
    jobs = {j.key: j for j in build_jobs(task)}

    assert set(jobs) == {
        JobKey("t1", JobKind.START),
        JobKey("t1", JobKind.DUE),
        JobKey("t1", JobKind.REMINDER, 0),
    }
    start = jobs[JobKey("t1", JobKind.START)].payload
    assert start.title == "Task Starting"
    assert start.body == 'Task "Task t1" is starting now'
    assert start.metadata == {"task_id": "t1", "type": "task_start"}

    reminder = jobs[JobKey("t1", JobKind.REMINDER, 0)].payload
    assert reminder.title == "Reminder: Task t1"
    assert reminder.body == "Leave soon"
    assert reminder.metadata["reminder_index"] == 0


def test_build_jobs_requires_scheduled_start() -> None:
    with pytest.raises(InvalidTaskError):
        build_jobs(Task(id="t1", user_id="u1", title="x"))


@pytest.mark.asyncio
async def test_operations_require_running_dispatcher(dispatcher: JobDispatcher) -> None:
    with pytest.raises(DispatcherNotRunning):
        await dispatcher.schedule(_scheduled())


@pytest.mark.asyncio
async def test_job_fires_at_due_time_exactly_once(
        dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender
) -> None:
    async with started(dispatcher):
        jobs = await dispatcher.schedule(_scheduled())
        assert [j.key.kind for j in jobs] == [JobKind.START]

        clock.set(at(8, 59).timestamp())
        await dispatcher.barrier()
        assert sender.sent == []

        clock.set(at(9).timestamp())
        await dispatcher.barrier()
        assert len(sender.sent) == 1
        assert sender.sent[0].title == "Task Starting"
        assert sender.sent[0].user_id == "u1"
        assert jobs[0].state == JobState.FIRED

        clock.advance(3600)
        await dispatcher.barrier()
        assert len(sender.sent) == 1
        assert dispatcher.live_jobs() == []


@pytest.mark.asyncio
async def test_cancel_before_due_never_fires(
        dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender
) -> None:
    async with started(dispatcher):
        await dispatcher.schedule(_scheduled(end=at(10)))
        cancelled = await dispatcher.cancel("t1")
        assert {j.key.kind for j in cancelled} == {JobKind.START, JobKind.DUE}
        assert all(j.state == JobState.CANCELLED for j in cancelled)

        clock.advance(24 * 3600)
        await dispatcher.barrier()

    assert sender.sent == []
    assert dispatcher.stats.fired == 0


@pytest.mark.asyncio
async def test_cancel_without_jobs_is_noop(dispatcher: JobDispatcher) -> None:
    async with started(dispatcher):
        assert await dispatcher.cancel("missing") == []


@pytest.mark.asyncio
async def test_schedule_conflict_is_rejected(dispatcher: JobDispatcher) -> None:
    async with started(dispatcher):
        await dispatcher.schedule(_scheduled())
        with pytest.raises(JobConflictError) as exc:
            await dispatcher.schedule(_scheduled(start=at(11)))

        assert exc.value.keys == [JobKey("t1", JobKind.START)]
        (job,) = dispatcher.jobs_for("t1")
        assert job.due_at == at(9).timestamp()


@pytest.mark.asyncio
async def test_reschedule_moves_job_and_fires_once(
        dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender
) -> None:
    async with started(dispatcher):
        await dispatcher.schedule(_scheduled(start=at(9)))
        await dispatcher.reschedule(_scheduled(start=at(10)))

        clock.set(at(9).timestamp())
        await dispatcher.barrier()
        assert sender.sent == []

        clock.set(at(10).timestamp())
        await dispatcher.barrier()
        assert len(sender.sent) == 1

        clock.advance(3 * 3600)
        await dispatcher.barrier()
        assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_reschedule_with_invalid_task_keeps_old_jobs(dispatcher: JobDispatcher) -> None:
    async with started(dispatcher):
        await dispatcher.schedule(_scheduled())
        with pytest.raises(InvalidTaskError):
            await dispatcher.reschedule(_scheduled(start=at(10), end=at(9)))
        assert [j.due_at for j in dispatcher.jobs_for("t1")] == [at(9).timestamp()]


@pytest.mark.asyncio
async def test_past_due_jobs_are_not_registered(dispatcher: JobDispatcher, sender: FakeSender) -> None:
    # the clock fixture sits at 07:00
    async with started(dispatcher):
        jobs = await dispatcher.schedule(_scheduled(start=at(6), end=at(8)))
        await dispatcher.barrier()

    assert [j.key.kind for j in jobs] == [JobKind.DUE]
    assert dispatcher.stats.skipped_past_due == 1
    assert sender.sent == []


@pytest.mark.asyncio
async def test_jobs_fire_in_due_order(dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender) -> None:
    async with started(dispatcher):
        await dispatcher.schedule(_scheduled("late", start=at(11)))
        await dispatcher.schedule(_scheduled("early", start=at(9)))
        await dispatcher.schedule(_scheduled("same", start=at(9)))

        clock.set(at(12).timestamp())
        await dispatcher.barrier()

    assert [s.metadata["task_id"] for s in sender.sent][-1] == "late"
    assert sorted(s.metadata["task_id"] for s in sender.sent) == ["early", "late", "same"]


@pytest.mark.asyncio
async def test_start_job_marks_task_in_progress(
        dispatcher: JobDispatcher, clock: ManualClock, repo: FakeTaskRepo
) -> None:
    task = repo.add(_scheduled(end=at(10)))
    async with started(dispatcher):
        await dispatcher.schedule(task)
        clock.set(at(9).timestamp())
        await dispatcher.barrier()

    assert repo.tasks["t1"].status == TaskStatus.IN_PROGRESS
    assert repo.status_updates == [("t1", TaskStatus.IN_PROGRESS)]


@pytest.mark.asyncio
async def test_reminder_job_marks_reminder_sent(
        dispatcher: JobDispatcher, clock: ManualClock, repo: FakeTaskRepo, sender: FakeSender
) -> None:
    task = repo.add(_scheduled(reminders=[Reminder(time=at(8, 45), message="Bring slides")]))
    async with started(dispatcher):
        await dispatcher.schedule(task)
        clock.set(at(8, 45).timestamp())
        await dispatcher.barrier()

    assert [s.body for s in sender.sent] == ["Bring slides"]
    assert sender.sent[0].metadata["type"] == "task_reminder"
    assert repo.tasks["t1"].reminders[0].status == ReminderStatus.SENT
    assert repo.tasks["t1"].status == TaskStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("raise_error", [False, True])
async def test_delivery_failure_is_counted_not_retried(clock: ManualClock, raise_error: bool) -> None:
    sender = FakeSender(succeed=False, raise_error=raise_error)
    dispatcher = JobDispatcher(sender, clock=clock)

    async with started(dispatcher):
        jobs = await dispatcher.schedule(_scheduled())
        clock.set(at(9).timestamp())
        await dispatcher.barrier()
        clock.advance(3600)
        await dispatcher.barrier()

    assert len(sender.sent) == 1
    assert jobs[0].state == JobState.FIRED
    assert dispatcher.stats.fired == 1
    assert dispatcher.stats.delivery_failures == 1
    assert dispatcher.stats.delivered == 0


@pytest.mark.asyncio
async def test_stop_cancels_live_jobs(dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender) -> None:
    await dispatcher.start()
    await dispatcher.schedule(_scheduled("a", end=at(10)))
    await dispatcher.schedule(_scheduled("b"))

    cancelled = await dispatcher.stop()
    assert len(cancelled) == 3
    assert dispatcher.live_jobs() == []
    assert not dispatcher.is_running

    clock.advance(24 * 3600)
    with pytest.raises(DispatcherNotRunning):
        await dispatcher.schedule(_scheduled("c"))
    assert sender.sent == []


@pytest.mark.asyncio
async def test_many_cancellations_keep_registry_consistent(
        dispatcher: JobDispatcher, clock: ManualClock, sender: FakeSender
) -> None:
    async with started(dispatcher):
        for i in range(300):
            await dispatcher.schedule(_scheduled(f"t{i}", start=at(9) + timedelta(seconds=i)))
        for i in range(300):
            if i % 10:
                await dispatcher.cancel(f"t{i}")

        assert len(dispatcher.live_jobs()) == 30

        clock.set(at(10).timestamp())
        await dispatcher.barrier()

    fired = sorted(int(s.metadata["task_id"][1:]) for s in sender.sent)
    assert fired == list(range(0, 300, 10))

# src/smart_planner/engine/dispatcher.py

"""
Timed-job dispatcher.

One asyncio loop owns the live-job set and is its only mutator:
- callers submit commands (schedule / cancel / reschedule / barrier / stop) on a channel,
- each loop pass applies every queued command, then fires every job that is due,
- between passes the loop sleeps until the earliest due time or the next command.

Jobs are kept in a dict keyed by JobKey and ordered by a separate heap of
(due_at, seq, key). Cancelled entries stay in the heap and are skipped lazily;
the heap is rebuilt when stale entries dominate.

Firing is at-most-once: the job becomes FIRED and leaves the live set before the
notification callback runs. Callbacks run as their own tasks so a slow sender never
delays unrelated jobs; a cancel that races an in-flight callback does not stop it.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, NamedTuple

from ..core.clock import SystemClock
from ..core.ports import Clock, NotificationSender, TaskRepo
from ..tasks.task_models import InvalidTaskError, ReminderStatus, Task, TaskStatus, as_utc
from .fallback import run_blocking

logger = logging.getLogger(__name__)

# Rebuild the heap once at least this many entries are stale and they outnumber live ones.
_COMPACT_MIN_STALE = 64


class JobKind(StrEnum):
    START = "start"
    DUE = "due"
    REMINDER = "reminder"


class JobState(StrEnum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class JobKey(NamedTuple):
    task_id: str
    kind: JobKind
    index: int = 0  # reminder position; always 0 for start/due


@dataclass(slots=True, frozen=True)
class JobPayload:
    task_id: str
    user_id: str
    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScheduledJob:
    key: JobKey
    due_at: float
    payload: JobPayload
    state: JobState = JobState.PENDING
    seq: int = 0
    fired_at: float | None = None


class JobConflictError(RuntimeError):
    """schedule() was called for a key that already has a live job; use reschedule()."""

    def __init__(self, keys: list[JobKey]) -> None:
        super().__init__("live job already registered for " + ", ".join(f"{k.task_id}/{k.kind.value}" for k in keys))
        self.keys = keys


class DispatcherNotRunning(RuntimeError):
    pass


@dataclass(slots=True)
class DispatchStats:
    registered: int = 0
    cancelled: int = 0
    fired: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    skipped_past_due: int = 0


def build_jobs(task: Task) -> list[ScheduledJob]:
    """Jobs a scheduled task should have: start, due (if it has an end) and pending reminders."""
    task.validate()
    if task.scheduled_start is None:
        raise InvalidTaskError(task.id, "scheduled_start is not set; optimize the task first")

    title = task.title or "Untitled task"
    base = {"task_id": task.id}

    jobs = [
        ScheduledJob(
            key=JobKey(task.id, JobKind.START),
            due_at=as_utc(task.scheduled_start).timestamp(),
            payload=JobPayload(
                task_id=task.id,
                user_id=task.user_id,
                title="Task Starting",
                body=f'Task "{title}" is starting now',
                metadata={**base, "type": "task_start"},
            ),
        )
    ]

    if task.scheduled_end is not None:
        jobs.append(
            ScheduledJob(
                key=JobKey(task.id, JobKind.DUE),
                due_at=as_utc(task.scheduled_end).timestamp(),
                payload=JobPayload(
                    task_id=task.id,
                    user_id=task.user_id,
                    title="Task Due",
                    body=f'Task "{title}" is due now',
                    metadata={**base, "type": "task_due"},
                ),
            )
        )

    for idx, reminder in enumerate(task.reminders):
        if reminder.status != ReminderStatus.PENDING:
            continue
        jobs.append(
            ScheduledJob(
                key=JobKey(task.id, JobKind.REMINDER, idx),
                due_at=as_utc(reminder.time).timestamp(),
                payload=JobPayload(
                    task_id=task.id,
                    user_id=task.user_id,
                    title=f"Reminder: {title}",
                    body=reminder.message or task.description or title,
                    metadata={**base, "type": "task_reminder", "reminder_index": idx},
                ),
            )
        )

    return jobs


@dataclass(slots=True)
class _Command:
    op: str
    future: asyncio.Future[Any]
    task: Task | None = None
    task_id: str | None = None


class JobDispatcher:
    def __init__(
            self,
            sender: NotificationSender,
            task_repo: TaskRepo | None = None,
            *,
            clock: Clock | None = None,
            shutdown_grace_seconds: float = 10.0,
    ) -> None:
        self._sender = sender
        self._repo = task_repo
        self._clock: Clock = clock or SystemClock()
        self._grace = max(0.0, float(shutdown_grace_seconds))

        self._jobs: dict[JobKey, ScheduledJob] = {}
        self._by_task: dict[str, set[JobKey]] = {}
        self._heap: list[tuple[float, int, JobKey]] = []
        self._stale = 0
        self._seq = itertools.count(1)

        self._commands: deque[_Command] = deque()
        self._wakeup: asyncio.Event | None = None
        self._runner: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

        self.stats = DispatchStats()

    # ---- lifecycle ----

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._wakeup = asyncio.Event()
        self._runner = asyncio.create_task(self._run(), name="job-dispatcher")
        logger.info("Job dispatcher started")

    async def stop(self) -> list[ScheduledJob]:
        """Cancel every live job, stop the loop, then wait (bounded) for in-flight callbacks."""
        if not self.is_running:
            return []

        cancelled: list[ScheduledJob] = await self._submit("stop")
        if self._runner is not None:
            await self._runner

        inflight = list(self._inflight)
        if inflight:
            _, pending = await asyncio.wait(inflight, timeout=self._grace)
            if pending:
                logger.warning("Shutdown: %d notification callback(s) still running; abandoning", len(pending))
                for t in pending:
                    t.cancel()

        logger.info("Job dispatcher stopped (%d live job(s) cancelled)", len(cancelled))
        return cancelled

    # ---- public operations ----

    async def schedule(self, task: Task) -> list[ScheduledJob]:
        return await self._submit("schedule", task=task)

    async def cancel(self, task_id: str) -> list[ScheduledJob]:
        return await self._submit("cancel", task_id=task_id)

    async def reschedule(self, task: Task) -> list[ScheduledJob]:
        return await self._submit("reschedule", task=task)

    async def barrier(self) -> None:
        """
        Wait until every command submitted so far has been applied, every job due at the
        current time has fired, and every callback started so far has finished.
        """
        await self._submit("barrier")
        inflight = list(self._inflight)
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

    def live_jobs(self) -> list[ScheduledJob]:
        return sorted(self._jobs.values(), key=lambda j: (j.due_at, j.seq))

    def get(self, key: JobKey) -> ScheduledJob | None:
        return self._jobs.get(key)

    def jobs_for(self, task_id: str) -> list[ScheduledJob]:
        return [self._jobs[k] for k in self._by_task.get(task_id, ())]

    # ---- command channel ----

    async def _submit(self, op: str, *, task: Task | None = None, task_id: str | None = None) -> Any:
        if not self.is_running or self._wakeup is None:
            raise DispatcherNotRunning("job dispatcher is not running; call start() first")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._commands.append(_Command(op=op, future=future, task=task, task_id=task_id))
        self._wakeup.set()
        return await future

    @staticmethod
    def _resolve(cmd: _Command, result: Any = None, error: BaseException | None = None) -> None:
        if cmd.future.done():
            return
        if error is not None:
            cmd.future.set_exception(error)
        else:
            cmd.future.set_result(result)

    def _apply(self, cmd: _Command) -> None:
        try:
            if cmd.op == "schedule":
                assert cmd.task is not None
                result = self._do_schedule(cmd.task)
            elif cmd.op == "cancel":
                assert cmd.task_id is not None
                result = self._do_cancel(cmd.task_id)
            elif cmd.op == "reschedule":
                assert cmd.task is not None
                # Validate before touching the old jobs so a bad task keeps its current schedule.
                build_jobs(cmd.task)
                self._do_cancel(cmd.task.id)
                result = self._do_schedule(cmd.task)
            else:
                raise ValueError(f"unknown dispatcher command: {cmd.op}")
        except Exception as e:
            self._resolve(cmd, error=e)
            return
        self._resolve(cmd, result)

    # ---- dispatch loop ----

    async def _run(self) -> None:
        assert self._wakeup is not None
        try:
            await self._loop(self._wakeup)
        finally:
            # Loop exited (stopped, crashed or cancelled): nobody will answer queued commands.
            while self._commands:
                left = self._commands.popleft()
                self._resolve(left, error=DispatcherNotRunning("job dispatcher stopped"))

    async def _loop(self, wakeup: asyncio.Event) -> None:
        while True:
            wakeup.clear()

            barriers: list[_Command] = []
            stop_cmd: _Command | None = None
            while self._commands:
                cmd = self._commands.popleft()
                if cmd.op == "barrier":
                    barriers.append(cmd)
                elif cmd.op == "stop":
                    stop_cmd = cmd
                    break
                else:
                    self._apply(cmd)

            if stop_cmd is not None:
                cancelled = self._cancel_all()
                self._resolve(stop_cmd, cancelled)
                for b in barriers:
                    self._resolve(b)
                return

            self._fire_due()

            for b in barriers:
                self._resolve(b)

            await self._clock.wait(wakeup, self._next_due())

    # ---- registry (loop-only) ----

    def _register(self, job: ScheduledJob) -> None:
        job.seq = next(self._seq)
        self._jobs[job.key] = job
        self._by_task.setdefault(job.key.task_id, set()).add(job.key)
        heapq.heappush(self._heap, (job.due_at, job.seq, job.key))
        self.stats.registered += 1

    def _unregister(self, key: JobKey) -> ScheduledJob | None:
        job = self._jobs.pop(key, None)
        if job is None:
            return None
        keys = self._by_task.get(key.task_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_task[key.task_id]
        return job

    def _is_live(self, seq: int, key: JobKey) -> bool:
        job = self._jobs.get(key)
        return job is not None and job.seq == seq

    def _do_schedule(self, task: Task) -> list[ScheduledJob]:
        jobs = build_jobs(task)

        conflicts = [j.key for j in jobs if j.key in self._jobs]
        if conflicts:
            raise JobConflictError(conflicts)

        now = self._clock.now()
        registered: list[ScheduledJob] = []
        for job in jobs:
            if job.due_at <= now:
                self.stats.skipped_past_due += 1
                logger.info(
                    "Not scheduling %s job for task=%s: due time already passed",
                    job.key.kind.value,
                    task.id,
                )
                continue
            self._register(job)
            registered.append(job)

        logger.debug("Scheduled %d job(s) for task=%s", len(registered), task.id)
        return registered

    def _do_cancel(self, task_id: str) -> list[ScheduledJob]:
        cancelled: list[ScheduledJob] = []
        for key in list(self._by_task.get(task_id, ())):
            job = self._unregister(key)
            if job is None:
                continue
            job.state = JobState.CANCELLED
            self._stale += 1
            cancelled.append(job)

        if cancelled:
            self.stats.cancelled += len(cancelled)
            logger.debug("Cancelled %d job(s) for task=%s", len(cancelled), task_id)
            self._maybe_compact()
        return cancelled

    def _cancel_all(self) -> list[ScheduledJob]:
        cancelled = list(self._jobs.values())
        for job in cancelled:
            job.state = JobState.CANCELLED
        self.stats.cancelled += len(cancelled)
        self._jobs.clear()
        self._by_task.clear()
        self._heap.clear()
        self._stale = 0
        return cancelled

    def _maybe_compact(self) -> None:
        if self._stale < _COMPACT_MIN_STALE or self._stale <= len(self._jobs):
            return
        self._heap = [(j.due_at, j.seq, j.key) for j in self._jobs.values()]
        heapq.heapify(self._heap)
        self._stale = 0

    def _next_due(self) -> float | None:
        while self._heap:
            _, seq, key = self._heap[0]
            if self._is_live(seq, key):
                return self._heap[0][0]
            heapq.heappop(self._heap)
            self._stale = max(0, self._stale - 1)
        return None

    def _fire_due(self) -> None:
        now = self._clock.now()
        while self._heap and self._heap[0][0] <= now:
            _, seq, key = heapq.heappop(self._heap)
            if not self._is_live(seq, key):
                self._stale = max(0, self._stale - 1)
                continue

            job = self._unregister(key)
            if job is None:
                continue
            job.state = JobState.FIRED
            job.fired_at = now
            self.stats.fired += 1

            t = asyncio.create_task(self._deliver(job), name=f"fire-{key.task_id}-{key.kind.value}")
            self._inflight.add(t)
            t.add_done_callback(self._inflight.discard)

    # ---- fire callback ----

    async def _deliver(self, job: ScheduledJob) -> None:
        p = job.payload
        kind = job.key.kind

        try:
            ok = bool(
                await self._sender.deliver(
                    user_id=p.user_id,
                    title=p.title,
                    body=p.body,
                    metadata=dict(p.metadata),
                )
            )
        except Exception:
            logger.exception("Notification delivery raised task_id=%s kind=%s", p.task_id, kind.value)
            ok = False

        if ok:
            self.stats.delivered += 1
            logger.info("Fired %s job task_id=%s", kind.value, p.task_id)
        else:
            self.stats.delivery_failures += 1
            logger.warning("Notification delivery failed task_id=%s kind=%s (not retried)", p.task_id, kind.value)

        repo = self._repo
        if repo is None:
            return

        try:
            if kind == JobKind.START:
                await run_blocking(repo.update_status, p.task_id, TaskStatus.IN_PROGRESS)
            elif kind == JobKind.REMINDER:
                await run_blocking(repo.update_reminder_status, p.task_id, job.key.index, ReminderStatus.SENT)
        except Exception:
            logger.exception("Post-fire store update failed task_id=%s kind=%s", p.task_id, kind.value)

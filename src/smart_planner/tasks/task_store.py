# src/smart_planner/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
import uuid
from datetime import date, datetime, time as dt_time, timedelta, timezone
from pathlib import Path
from typing import Any

from .task_models import (
    ComplexitySignals,
    Location,
    PriorityLevel,
    Reminder,
    ReminderStatus,
    Task,
    TaskStatus,
    as_utc,
    from_epoch,
)

logger = logging.getLogger(__name__)


def _ts(value: datetime | None) -> float | None:
    return as_utc(value).timestamp() if value is not None else None


def _dt(value: Any) -> datetime | None:
    return from_epoch(float(value)) if value is not None else None


class TaskStore:
    """
    SQLite task store (default TaskRepo adapter).

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Timestamps are stored as UTC epoch seconds; reminders as a JSON array.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    requested_start REAL,
                    requested_end REAL,
                    scheduled_start REAL,
                    scheduled_end REAL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority_level TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("latitude", "REAL")
            add_col("longitude", "REAL")
            add_col("address", "TEXT")
            add_col("subtasks", "INTEGER NOT NULL DEFAULT 0")
            add_col("attachments", "INTEGER NOT NULL DEFAULT 0")
            add_col("dependencies", "INTEGER NOT NULL DEFAULT 0")
            add_col("description_length", "INTEGER NOT NULL DEFAULT 0")
            add_col("reminders", "TEXT NOT NULL DEFAULT '[]'")
            add_col("optimized", "INTEGER NOT NULL DEFAULT 0")
            add_col("completed_at", "REAL")
            add_col("actual_duration_seconds", "REAL")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user_start ON tasks(user_id, requested_start)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_sched ON tasks(status, scheduled_start)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user_completed ON tasks(user_id, status, completed_at)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _reminders_to_str(reminders: list[Reminder]) -> str:
        return json.dumps(
            [
                {"time": _ts(r.time), "message": r.message, "status": r.status.value}
                for r in reminders
            ],
            ensure_ascii=False,
        )

    @staticmethod
    def _str_to_reminders(s: str | None) -> list[Reminder]:
        if not s:
            return []
        try:
            raw = json.loads(s)
        except json.JSONDecodeError:
            logger.warning("Unreadable reminders JSON; treating as empty")
            return []
        if not isinstance(raw, list):
            return []

        out: list[Reminder] = []
        for item in raw:
            if not isinstance(item, dict) or item.get("time") is None:
                continue
            try:
                status = ReminderStatus(item.get("status") or "pending")
            except ValueError:
                status = ReminderStatus.PENDING
            out.append(
                Reminder(
                    time=from_epoch(float(item["time"])),
                    message=str(item.get("message") or ""),
                    status=status,
                )
            )
        return out

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Location(
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                address=row["address"],
            )

        return Task(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row["title"] or ""),
            description=row["description"],
            requested_start=_dt(row["requested_start"]),
            requested_end=_dt(row["requested_end"]),
            scheduled_start=_dt(row["scheduled_start"]),
            scheduled_end=_dt(row["scheduled_end"]),
            location=location,
            status=TaskStatus.from_db(row["status"]),
            priority_level=PriorityLevel.from_db(row["priority_level"]),
            complexity=ComplexitySignals(
                subtasks=int(row["subtasks"] or 0),
                attachments=int(row["attachments"] or 0),
                dependencies=int(row["dependencies"] or 0),
                description_length=int(row["description_length"] or 0),
            ),
            reminders=self._str_to_reminders(row["reminders"]),
            optimized=bool(row["optimized"]),
            completed_at=_dt(row["completed_at"]),
            actual_duration_seconds=(
                float(row["actual_duration_seconds"]) if row["actual_duration_seconds"] is not None else None
            ),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _execute(self, sql: str, params: tuple[Any, ...] | list[Any]) -> int:
        conn = self._get_conn()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[Task]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    # ---- public API ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM tasks")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def save_task(self, task: Task) -> str:
        """Insert or fully replace a task. Assigns an id when the task has none."""
        if not task.title or not task.title.strip():
            raise ValueError("title is required")
        if not task.user_id or not str(task.user_id).strip():
            raise ValueError("user_id is required")

        if not task.id:
            task.id = uuid.uuid4().hex

        now = time.time()
        created = _ts(task.created_at) or now
        loc = task.location
        c = task.complexity

        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO tasks(
                    id, user_id, title, description,
                    requested_start, requested_end, scheduled_start, scheduled_end,
                    status, priority_level, created_at, updated_at,
                    latitude, longitude, address,
                    subtasks, attachments, dependencies, description_length,
                    reminders, optimized, completed_at, actual_duration_seconds
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    title = excluded.title,
                    description = excluded.description,
                    requested_start = excluded.requested_start,
                    requested_end = excluded.requested_end,
                    scheduled_start = excluded.scheduled_start,
                    scheduled_end = excluded.scheduled_end,
                    status = excluded.status,
                    priority_level = excluded.priority_level,
                    updated_at = excluded.updated_at,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    address = excluded.address,
                    subtasks = excluded.subtasks,
                    attachments = excluded.attachments,
                    dependencies = excluded.dependencies,
                    description_length = excluded.description_length,
                    reminders = excluded.reminders,
                    optimized = excluded.optimized,
                    completed_at = excluded.completed_at,
                    actual_duration_seconds = excluded.actual_duration_seconds
                """,
                (
                    task.id,
                    str(task.user_id),
                    task.title.strip(),
                    task.description,
                    _ts(task.requested_start),
                    _ts(task.requested_end),
                    _ts(task.scheduled_start),
                    _ts(task.scheduled_end),
                    task.status.value,
                    task.priority_level.value if task.priority_level is not None else None,
                    created,
                    now,
                    loc.latitude if loc else None,
                    loc.longitude if loc else None,
                    loc.address if loc else None,
                    int(c.subtasks),
                    int(c.attachments),
                    int(c.dependencies),
                    int(c.description_length),
                    self._reminders_to_str(task.reminders),
                    1 if task.optimized else 0,
                    _ts(task.completed_at),
                    task.actual_duration_seconds,
                ),
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug("Task saved id=%s user=%s status=%s", task.id, task.user_id, task.status.value)
        return task.id

    def get_task(self, task_id: str) -> Task | None:
        rows = self._select("SELECT * FROM tasks WHERE id = ?", (str(task_id),))
        return rows[0] if rows else None

    def delete_task(self, task_id: str) -> bool:
        return self._execute("DELETE FROM tasks WHERE id = ?", (str(task_id),)) == 1

    def find_same_day_tasks(self, user_id: str, day: date) -> list[Task]:
        """Open (pending / in_progress) tasks of the user whose requested start falls on `day` (UTC)."""
        start = datetime.combine(day, dt_time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        return self._select(
            """
            SELECT *
            FROM tasks
            WHERE user_id = ?
              AND status IN ('pending','in_progress')
              AND COALESCE(requested_start, scheduled_start) >= ?
              AND COALESCE(requested_start, scheduled_start) < ?
            ORDER BY COALESCE(requested_start, scheduled_start) ASC, id ASC
            """,
            (str(user_id), start.timestamp(), end.timestamp()),
        )

    def find_recent_completed(self, user_id: str, limit: int = 10) -> list[Task]:
        return self._select(
            """
            SELECT *
            FROM tasks
            WHERE user_id = ?
              AND status = 'completed'
            ORDER BY COALESCE(completed_at, updated_at) DESC
                LIMIT ?
            """,
            (str(user_id), int(limit)),
        )

    def find_upcoming(self, now: datetime, limit: int = 500) -> list[Task]:
        """
        Open tasks that still have something to fire after `now`.

        Used on service start to re-arm the dispatcher.
        """
        return self._select(
            """
            SELECT *
            FROM tasks
            WHERE status IN ('pending','in_progress')
              AND scheduled_start IS NOT NULL
              AND (scheduled_start > ? OR scheduled_end > ? OR reminders LIKE '%"pending"%')
            ORDER BY scheduled_start ASC
                LIMIT ?
            """,
            (_ts(now), _ts(now), int(limit)),
        )

    def update_scheduled_times(self, task_id: str, start: datetime, end: datetime) -> None:
        if as_utc(end) <= as_utc(start):
            raise ValueError("scheduled end must be after scheduled start")
        self._execute(
            """
            UPDATE tasks
            SET scheduled_start = ?, scheduled_end = ?, optimized = 1, updated_at = ?
            WHERE id = ?
            """,
            (_ts(start), _ts(end), time.time(), str(task_id)),
        )

    def update_priority(self, task_id: str, level: PriorityLevel) -> None:
        self._execute(
            "UPDATE tasks SET priority_level = ?, updated_at = ? WHERE id = ?",
            (level.value, time.time(), str(task_id)),
        )

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        now = time.time()
        if status == TaskStatus.COMPLETED:
            self._execute(
                "UPDATE tasks SET status = ?, completed_at = COALESCE(completed_at, ?), updated_at = ? WHERE id = ?",
                (status.value, now, now, str(task_id)),
            )
            return
        self._execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, now, str(task_id)),
        )

    def update_reminder_status(self, task_id: str, index: int, status: ReminderStatus) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT reminders FROM tasks WHERE id = ?", (str(task_id),))
            row = cur.fetchone()
            if row is None:
                return

            reminders = self._str_to_reminders(row["reminders"])
            if not 0 <= int(index) < len(reminders):
                logger.warning("Reminder index %s out of range for task=%s", index, task_id)
                return

            reminders[int(index)].status = status
            cur.execute(
                "UPDATE tasks SET reminders = ?, updated_at = ? WHERE id = ?",
                (self._reminders_to_str(reminders), time.time(), str(task_id)),
            )
            conn.commit()
        finally:
            conn.close()

"""TaskStore: aiosqlite persistence for notification tasks.

Every status write is guarded by the row's ``version`` column.  The
one-active-task-per-entity rule lives in a partial unique index so that it
holds even when several connections write at once.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiosqlite

from sms_scheduler.errors import (
    ConflictError,
    InvalidTransition,
    StoreUnavailable,
    TaskNotFound,
    ValidationError,
    VersionConflict,
)
from sms_scheduler.scheduler.models import (
    EntityRef,
    NotificationTask,
    TaskStatus,
    can_transition,
    to_iso,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

_COLUMNS = """
    id TEXT PRIMARY KEY,
    entity_kind TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    recipient TEXT NOT NULL,
    body TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    dedupe_key TEXT NOT NULL,
    provider_ref TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    next_attempt_at TEXT,
    last_error TEXT,
    failure_reason TEXT,
    superseded_by TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    seq INTEGER NOT NULL
"""

_SCHEMA = (
    f"CREATE TABLE IF NOT EXISTS notification_tasks ({_COLUMNS})",
    f"""
    CREATE TABLE IF NOT EXISTS notification_tasks_archive (
        {_COLUMNS},
        archived_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_notification_tasks_active_entity
    ON notification_tasks (entity_kind, entity_id)
    WHERE status IN ('pending', 'in_flight')
      AND superseded_by IS NULL AND cancel_requested = 0
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_notification_tasks_status_due
    ON notification_tasks (status, scheduled_at)
    """,
)

_FIELD_NAMES = (
    "id, entity_kind, entity_id, scheduled_at, recipient, body, status, attempts, "
    "dedupe_key, provider_ref, version, created_at, updated_at, next_attempt_at, "
    "last_error, failure_reason, superseded_by, cancel_requested"
)

_INSERT = f"""
INSERT INTO notification_tasks ({_FIELD_NAMES}, seq)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
        (SELECT COALESCE(MAX(seq), 0) + 1 FROM notification_tasks))
"""

_DUE = "COALESCE(next_attempt_at, scheduled_at)"
_ORDER = f"ORDER BY {_DUE}, created_at, seq"

# Columns a status write may touch besides status/version/updated_at.
_UPDATABLE_FIELDS = frozenset(
    {"attempts", "next_attempt_at", "provider_ref", "last_error", "failure_reason"}
)


@dataclass
class Replacement:
    """Result of atomically replacing an entity's active task.

    Attributes:
        task: The newly persisted Pending task.
        cancelled: The prior Pending task, now ``cancelled``.
        superseded: The prior task that was already in flight; its send
            proceeds independently.
    """

    task: NotificationTask
    cancelled: NotificationTask | None = None
    superseded: NotificationTask | None = None


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return str(value.value)
    return value


class TaskStore:
    """Persists notification tasks in SQLite.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._clock = clock
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path), timeout=self._busy_timeout)
        if not self._initialised:
            await db.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
            self._initialised = True
        return db

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection, translating driver failures to StoreUnavailable.

        Anything not committed inside the block is rolled back on close.
        """
        try:
            db = await self._connect()
        except (sqlite3.Error, OSError) as exc:
            msg = f"Cannot open task store at {self._db_path}: {exc}"
            raise StoreUnavailable(msg) from exc
        try:
            yield db
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            msg = f"Task store error: {exc}"
            raise StoreUnavailable(msg) from exc
        finally:
            await db.close()

    @staticmethod
    async def _fetch(db: aiosqlite.Connection, task_id: str) -> NotificationTask | None:
        cursor = await db.execute("SELECT * FROM notification_tasks WHERE id = ?", (task_id,))
        row = await cursor.fetchone()
        return NotificationTask.from_row(row) if row else None

    @staticmethod
    async def _fetch_active(
        db: aiosqlite.Connection, entity: EntityRef
    ) -> NotificationTask | None:
        cursor = await db.execute(
            """
            SELECT * FROM notification_tasks
            WHERE entity_kind = ? AND entity_id = ?
              AND status IN ('pending', 'in_flight')
              AND superseded_by IS NULL AND cancel_requested = 0
            """,
            (entity.kind, entity.entity_id),
        )
        row = await cursor.fetchone()
        return NotificationTask.from_row(row) if row else None

    @staticmethod
    async def _fetch_many(
        db: aiosqlite.Connection, sql: str, params: tuple = ()
    ) -> list[NotificationTask]:
        cursor = await db.execute(sql, params)
        rows = await cursor.fetchall()
        return [NotificationTask.from_row(row) for row in rows]

    async def _insert(self, db: aiosqlite.Connection, task: NotificationTask) -> None:
        """Insert *task* as a fresh Pending row stamped with the store's clock."""
        task.validate()
        if task.status is not TaskStatus.PENDING:
            msg = f"New tasks must be pending, got {task.status}"
            raise ValidationError(msg)
        now = self._clock()
        task.created_at = now
        task.updated_at = now
        task.version = 1
        try:
            await db.execute(_INSERT, task.to_row())
        except sqlite3.IntegrityError as exc:
            existing = await self._fetch_active(db, task.entity)
            raise ConflictError(task.entity, existing.id if existing else None) from exc
        cursor = await db.execute("SELECT seq FROM notification_tasks WHERE id = ?", (task.id,))
        row = await cursor.fetchone()
        task.seq = row[0]

    # -- Writes ----------------------------------------------------------------

    async def create(self, task: NotificationTask) -> NotificationTask:
        """Insert a new Pending task.

        Raises:
            ValidationError: A required field is missing.
            ConflictError: The entity already has an active task.
        """
        task.validate()
        async with self._session() as db:
            await self._insert(db, task)
            await db.commit()
        logger.info(
            "Created notification task %s for %s (due %s)",
            task.id,
            task.entity,
            task.scheduled_at.isoformat(),
        )
        return task

    async def update_status(
        self,
        task_id: str,
        expected_version: int,
        new_status: TaskStatus,
        **fields: Any,
    ) -> NotificationTask:
        """Move a task to *new_status* if its version still equals *expected_version*.

        Returns the updated task (version bumped by one).

        Raises:
            TaskNotFound: No task with that id.
            InvalidTransition: The status change is not allowed, including a
                retry of a task that was superseded or cancelled in flight.
            VersionConflict: Another actor changed the task first.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        assignments = ["status = ?", "version = version + 1", "updated_at = ?"]
        params: list[Any] = [new_status.value, to_iso(self._clock())]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(_encode(value))
        params.extend([task_id, expected_version])

        async with self._session() as db:
            await db.execute("BEGIN IMMEDIATE")
            current = await self._fetch(db, task_id)
            if current is None:
                raise TaskNotFound(task_id)
            if not can_transition(current.status, new_status):
                raise InvalidTransition(task_id, current.status, new_status)
            # A replaced or cancelled in-flight task may finish but never retry.
            if new_status is TaskStatus.PENDING and current.withdrawn_reason is not None:
                raise InvalidTransition(task_id, current.status, new_status)
            if current.version != expected_version:
                raise VersionConflict(task_id, expected_version, current.version)
            cursor = await db.execute(
                f"UPDATE notification_tasks SET {', '.join(assignments)} "  # noqa: S608
                "WHERE id = ? AND version = ?",
                tuple(params),
            )
            if cursor.rowcount == 0:
                raise VersionConflict(task_id, expected_version)
            await db.commit()
            updated = await self._fetch(db, task_id)

        logger.debug(
            "Task %s: %s -> %s (v%d)", task_id, current.status, new_status, updated.version
        )
        return updated

    async def cancel(self, task_id: str, expected_version: int) -> NotificationTask:
        """Cancel a Pending task.

        Raises InvalidTransition when the task has already fired or finished.
        """
        task = await self.update_status(task_id, expected_version, TaskStatus.CANCELLED)
        logger.info("Cancelled notification task %s (%s)", task_id, task.entity)
        return task

    async def request_cancel(self, task_id: str, expected_version: int) -> NotificationTask:
        """Mark an in-flight task as cancelled by its owner.

        The current send attempt cannot be recalled, so the version is left
        alone and its outcome can still be recorded.  A transient failure
        afterwards fails the task instead of retrying it.

        Raises:
            TaskNotFound: No task with that id.
            InvalidTransition: The task is not in flight.
            VersionConflict: Another actor changed the task first.
        """
        async with self._session() as db:
            await db.execute("BEGIN IMMEDIATE")
            current = await self._fetch(db, task_id)
            if current is None:
                raise TaskNotFound(task_id)
            if current.status is not TaskStatus.IN_FLIGHT:
                raise InvalidTransition(task_id, current.status, TaskStatus.CANCELLED)
            if current.version != expected_version:
                raise VersionConflict(task_id, expected_version, current.version)
            await db.execute(
                "UPDATE notification_tasks SET cancel_requested = 1 WHERE id = ?", (task_id,)
            )
            await db.commit()
            updated = await self._fetch(db, task_id)
        logger.info("Cancel requested for in-flight task %s (%s)", task_id, updated.entity)
        return updated

    async def replace_active(self, task: NotificationTask) -> Replacement:
        """Atomically retire the entity's active task and insert *task*.

        A Pending predecessor is cancelled.  An in-flight predecessor is marked
        ``superseded_by`` without a version bump, so its dispatch outcome can
        still be recorded.
        """
        task.validate()
        cancelled_id: str | None = None
        superseded_id: str | None = None
        async with self._session() as db:
            await db.execute("BEGIN IMMEDIATE")
            existing = await self._fetch_active(db, task.entity)
            if existing is not None and existing.status is TaskStatus.PENDING:
                await db.execute(
                    """
                    UPDATE notification_tasks
                    SET status = 'cancelled', version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (to_iso(self._clock()), existing.id, existing.version),
                )
                cancelled_id = existing.id
            elif existing is not None:
                await db.execute(
                    "UPDATE notification_tasks SET superseded_by = ? WHERE id = ?",
                    (task.id, existing.id),
                )
                superseded_id = existing.id
            await self._insert(db, task)
            await db.commit()
            cancelled = await self._fetch(db, cancelled_id) if cancelled_id else None
            superseded = await self._fetch(db, superseded_id) if superseded_id else None

        logger.info(
            "Replaced active task for %s with %s (cancelled=%s, superseded=%s)",
            task.entity,
            task.id,
            cancelled_id,
            superseded_id,
        )
        return Replacement(task=task, cancelled=cancelled, superseded=superseded)

    async def archive_terminal(self, before: datetime) -> int:
        """Move terminal tasks last updated before *before* to the archive table."""
        cutoff = to_iso(before)
        where = (
            "status IN ('dispatched', 'failed', 'cancelled') AND updated_at < ?"
        )
        async with self._session() as db:
            await db.execute("BEGIN IMMEDIATE")
            await db.execute(
                f"INSERT INTO notification_tasks_archive ({_FIELD_NAMES}, seq) "  # noqa: S608
                f"SELECT {_FIELD_NAMES}, seq FROM notification_tasks WHERE {where}",
                (cutoff,),
            )
            cursor = await db.execute(
                f"DELETE FROM notification_tasks WHERE {where}",  # noqa: S608
                (cutoff,),
            )
            archived = cursor.rowcount
            await db.commit()
        if archived:
            logger.info("Archived %d terminal notification task(s)", archived)
        return archived

    # -- Reads -----------------------------------------------------------------

    async def get_task(self, task_id: str) -> NotificationTask | None:
        """Fetch a task by ID, or None if not found."""
        async with self._session() as db:
            return await self._fetch(db, task_id)

    async def get_active(self, entity: EntityRef) -> NotificationTask | None:
        """Return the entity's Pending or in-flight task, if any."""
        async with self._session() as db:
            return await self._fetch_active(db, entity)

    async def get_latest(self, entity: EntityRef) -> NotificationTask | None:
        """Return the most recently created task for the entity."""
        async with self._session() as db:
            cursor = await db.execute(
                """
                SELECT * FROM notification_tasks
                WHERE entity_kind = ? AND entity_id = ?
                ORDER BY seq DESC LIMIT 1
                """,
                (entity.kind, entity.entity_id),
            )
            row = await cursor.fetchone()
            return NotificationTask.from_row(row) if row else None

    async def query_due(self, before: datetime) -> list[NotificationTask]:
        """Pending tasks whose due time is at or before *before*."""
        async with self._session() as db:
            return await self._fetch_many(
                db,
                f"SELECT * FROM notification_tasks "  # noqa: S608
                f"WHERE status = 'pending' AND {_DUE} <= ? {_ORDER}",
                (to_iso(before),),
            )

    async def query_pending(self, now: datetime | None = None) -> list[NotificationTask]:
        """Pending tasks due strictly after *now*."""
        now = now or self._clock()
        async with self._session() as db:
            return await self._fetch_many(
                db,
                f"SELECT * FROM notification_tasks "  # noqa: S608
                f"WHERE status = 'pending' AND {_DUE} > ? {_ORDER}",
                (to_iso(now),),
            )

    async def query_in_flight(self) -> list[NotificationTask]:
        """Tasks claimed for sending whose outcome has not been recorded."""
        async with self._session() as db:
            return await self._fetch_many(
                db,
                f"SELECT * FROM notification_tasks "  # noqa: S608
                f"WHERE status = 'in_flight' {_ORDER}",
            )

    async def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        entity: EntityRef | None = None,
        limit: int = 100,
    ) -> list[NotificationTask]:
        """List tasks, newest first, optionally filtered by status or entity."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if entity is not None:
            clauses.append("entity_kind = ? AND entity_id = ?")
            params.extend([entity.kind, entity.entity_id])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with self._session() as db:
            return await self._fetch_many(
                db,
                f"SELECT * FROM notification_tasks {where} ORDER BY seq DESC LIMIT ?",  # noqa: S608
                tuple(params),
            )

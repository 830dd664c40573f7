"""SchedulerEngine: the single timing authority for notification tasks.

One timing-loop task owns the heap.  Everything else talks to it through a
command queue, so the heap needs no lock.  Due tasks are claimed with an
optimistic ``pending -> in_flight`` write and handed to a fixed pool of
dispatch workers; the loop itself never waits on the gateway.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from sms_scheduler.errors import (
    InvalidTransition,
    StoreUnavailable,
    TaskNotFound,
    VersionConflict,
)
from sms_scheduler.scheduler.models import NotificationTask, TaskStatus, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from sms_scheduler.scheduler.dispatcher import Dispatcher
    from sms_scheduler.scheduler.models import EntityRef
    from sms_scheduler.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

_CANCEL_RETRIES = 3


class CancelOutcome(StrEnum):
    CANCELLED = "cancelled"
    ALREADY_SENT = "already_sent"
    NOT_FOUND = "not_found"


@dataclass
class RescheduleResult:
    """What a reschedule did to the entity's previous task."""

    task: NotificationTask
    cancelled: NotificationTask | None = None
    superseded: NotificationTask | None = None


@dataclass(order=True)
class _Entry:
    key: tuple
    task: NotificationTask = field(compare=False)
    removed: bool = field(default=False, compare=False)


@dataclass
class _Insert:
    task: NotificationTask
    due_at: datetime | None = None


@dataclass
class _Remove:
    task_id: str


class _Stop:
    pass


class SchedulerEngine:
    """Holds pending tasks in due order and fires them through the Dispatcher.

    Args:
        store: TaskStore, the source of truth for task state.
        dispatcher: Dispatcher that performs each send attempt.
        worker_count: Size of the dispatch worker pool.
        store_retry_delay: Seconds to wait before re-trying a claim that failed
            because the store was unreachable.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: TaskStore,
        dispatcher: Dispatcher,
        *,
        worker_count: int = 4,
        store_retry_delay: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._worker_count = worker_count
        self._store_retry_delay = store_retry_delay
        self._clock = clock
        self._heap: list[_Entry] = []
        self._entries: dict[str, _Entry] = {}
        self._tombstones = 0
        self._commands: asyncio.Queue[_Insert | _Remove | _Stop] = asyncio.Queue()
        self._ready: asyncio.Queue[NotificationTask] = asyncio.Queue()
        self._loop_task: asyncio.Task | None = None
        self._workers: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        """Number of tasks currently waiting in the timing structure."""
        return len(self._entries)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the timing loop and the dispatch workers."""
        if self._running:
            return
        self._loop_task = asyncio.create_task(self._run(), name="scheduler-timing-loop")
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"dispatch-worker-{i}")
            for i in range(self._worker_count)
        ]
        self._running = True
        logger.info(
            "Scheduler started with %d pending task(s), %d worker(s)",
            len(self._entries),
            self._worker_count,
        )

    async def stop(self) -> None:
        """Stop the loop and workers. In-flight sends are resolved by recovery."""
        if not self._running:
            return
        self._commands.put_nowait(_Stop())
        if self._loop_task is not None:
            await self._loop_task
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._loop_task = None
        self._running = False
        logger.info("Scheduler stopped")

    # -- Task management -------------------------------------------------------

    async def schedule(
        self,
        entity: EntityRef,
        scheduled_at: datetime,
        recipient: str,
        body: str,
    ) -> NotificationTask:
        """Persist a new task and add it to the timing structure.

        Raises ConflictError if the entity already has an active task,
        ValidationError for a malformed request, StoreUnavailable if the
        task could not be persisted.
        """
        task = NotificationTask.new(entity, scheduled_at, recipient, body)
        await self._store.create(task)
        self.enqueue(task)
        logger.info(
            "Scheduled task %s for %s at %s", task.id, entity, task.scheduled_at.isoformat()
        )
        return task

    async def reschedule(
        self,
        entity: EntityRef,
        scheduled_at: datetime,
        recipient: str,
        body: str,
    ) -> RescheduleResult:
        """Replace the entity's active task with a new one.

        A Pending predecessor is cancelled.  One that is already in flight
        keeps going; that race is logged and reported in the result.
        """
        task = NotificationTask.new(entity, scheduled_at, recipient, body)
        replacement = await self._store.replace_active(task)
        if replacement.cancelled is not None:
            self._remove(replacement.cancelled.id)
        if replacement.superseded is not None:
            logger.warning(
                "Reschedule of %s raced delivery of task %s; "
                "the original message may still be sent",
                entity,
                replacement.superseded.id,
            )
        self.enqueue(task)
        logger.info("Rescheduled %s: task %s at %s", entity, task.id, task.scheduled_at.isoformat())
        return RescheduleResult(
            task=task,
            cancelled=replacement.cancelled,
            superseded=replacement.superseded,
        )

    async def cancel(self, entity: EntityRef) -> CancelOutcome:
        """Cancel the entity's Pending task.

        Returns ALREADY_SENT when the task has already fired, NOT_FOUND when
        there is nothing to cancel.  A task caught in flight is marked so
        that a failed attempt is not retried; the attempt under way may
        still deliver.
        """
        for _ in range(_CANCEL_RETRIES):
            active = await self._store.get_active(entity)
            if active is None:
                break
            try:
                if active.status is TaskStatus.IN_FLIGHT:
                    await self._store.request_cancel(active.id, active.version)
                    logger.info(
                        "Too late to cancel %s: task %s is in flight and will not retry",
                        entity,
                        active.id,
                    )
                    return CancelOutcome.ALREADY_SENT
                await self._store.cancel(active.id, active.version)
            except (VersionConflict, InvalidTransition) as exc:
                logger.debug("Cancel of task %s lost a race, re-reading: %s", active.id, exc)
                continue
            self._remove(active.id)
            return CancelOutcome.CANCELLED

        latest = await self._store.get_latest(entity)
        if latest is not None and latest.status in (TaskStatus.IN_FLIGHT, TaskStatus.DISPATCHED):
            logger.info(
                "Too late to cancel %s: task %s already %s", entity, latest.id, latest.status
            )
            return CancelOutcome.ALREADY_SENT
        return CancelOutcome.NOT_FOUND

    async def get_task(self, task_id: str) -> NotificationTask | None:
        return await self._store.get_task(task_id)

    def enqueue(self, task: NotificationTask) -> None:
        """Insert an already-persisted Pending task into the timing structure."""
        if self._running:
            self._commands.put_nowait(_Insert(task))
        else:
            self._push(task)

    # -- Internal --------------------------------------------------------------

    def _remove(self, task_id: str) -> None:
        if self._running:
            self._commands.put_nowait(_Remove(task_id))
        else:
            self._discard(task_id)

    def _push(self, task: NotificationTask, due_at: datetime | None = None) -> None:
        """Add or replace *task* in the heap. Timing-loop only once started."""
        self._discard(task.id)
        due = due_at or task.due_at
        entry = _Entry(key=(due, task.created_at, task.seq, task.id), task=task)
        self._entries[task.id] = entry
        heapq.heappush(self._heap, entry)

    def _discard(self, task_id: str) -> None:
        entry = self._entries.pop(task_id, None)
        if entry is None:
            return
        entry.removed = True
        self._tombstones += 1
        if self._tombstones > len(self._heap) // 2:
            self._compact()

    def _compact(self) -> None:
        """Rebuild the heap from live entries, dropping removed ones."""
        self._heap = list(self._entries.values())
        heapq.heapify(self._heap)
        self._tombstones = 0

    def _peek(self) -> _Entry | None:
        while self._heap and self._heap[0].removed:
            heapq.heappop(self._heap)
            self._tombstones -= 1
        return self._heap[0] if self._heap else None

    def _seconds_until_next(self) -> float | None:
        head = self._peek()
        if head is None:
            return None
        return max(0.0, (head.key[0] - self._clock()).total_seconds())

    def _apply(self, command: _Insert | _Remove) -> None:
        if isinstance(command, _Insert):
            self._push(command.task, command.due_at)
        else:
            self._discard(command.task_id)

    async def _run(self) -> None:
        """Wait for the next due instant or the next command, whichever is first."""
        getter: asyncio.Future | None = None
        try:
            while True:
                await self._fire_due()
                if getter is None:
                    getter = asyncio.ensure_future(self._commands.get())
                done, _ = await asyncio.wait({getter}, timeout=self._seconds_until_next())
                if not done:
                    continue
                command = getter.result()
                getter = None
                if isinstance(command, _Stop):
                    return
                self._apply(command)
        except Exception:
            logger.exception("Scheduler timing loop crashed")
            raise
        finally:
            if getter is not None:
                getter.cancel()

    async def _fire_due(self) -> None:
        """Claim every entry whose due time has passed, in heap order."""
        now = self._clock()
        while (head := self._peek()) is not None and head.key[0] <= now:
            heapq.heappop(self._heap)
            self._entries.pop(head.task.id, None)
            await self._claim(head.task)

    async def _claim(self, task: NotificationTask) -> None:
        try:
            claimed = await self._store.update_status(task.id, task.version, TaskStatus.IN_FLIGHT)
        except (VersionConflict, InvalidTransition, TaskNotFound) as exc:
            logger.info("Fire of task %s abandoned: %s", task.id, exc)
            return
        except StoreUnavailable as exc:
            retry_at = self._clock() + timedelta(seconds=self._store_retry_delay)
            logger.warning(
                "Store unavailable claiming task %s, retrying at %s: %s",
                task.id,
                retry_at.isoformat(),
                exc,
            )
            self._push(task, due_at=retry_at)
            return
        logger.info("Fired task %s for %s", claimed.id, claimed.entity)
        self._ready.put_nowait(claimed)

    async def _worker(self, index: int) -> None:
        """Dispatch claimed tasks; re-enqueue the ones waiting for a retry."""
        while True:
            task = await self._ready.get()
            try:
                outcome = await self._dispatcher.dispatch(task)
            except Exception:
                logger.exception("Dispatch worker %d failed on task %s", index, task.id)
                continue
            finally:
                self._ready.task_done()
            if outcome is not None and outcome.status is TaskStatus.PENDING:
                self.enqueue(outcome)

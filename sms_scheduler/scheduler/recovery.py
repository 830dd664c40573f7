"""Startup recovery: rebuild the timing structure from the task store.

Runs once before the timing loop starts.  Overdue tasks inside the grace
window are queued so they fire as soon as the loop starts, through the same
optimistic ``in_flight`` claim as a normal fire.  Anything older is failed
as stale rather than sent long after the fact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sms_scheduler.errors import InvalidTransition, TaskNotFound, VersionConflict
from sms_scheduler.scheduler.models import FailureReason, TaskStatus, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from sms_scheduler.scheduler.engine import SchedulerEngine
    from sms_scheduler.scheduler.models import NotificationTask
    from sms_scheduler.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

_INTERRUPTED = "Process stopped before the send outcome was recorded"


@dataclass
class RecoveryReport:
    """Counts from one recovery pass.

    Attributes:
        requeued: Interrupted in-flight sends moved back to pending.
        due: Overdue tasks inside the grace window, queued to fire now.
        stale: Overdue tasks beyond the grace window, failed without sending.
        loaded: Future tasks loaded into the timing structure.
    """

    requeued: int = 0
    due: int = 0
    stale: int = 0
    loaded: int = 0


class RecoveryLoader:
    """Reconciles the scheduler's in-memory state with the store.

    Args:
        store: TaskStore to read durable state from.
        engine: SchedulerEngine to load tasks into.
        grace_period: Maximum lateness at which an overdue task is still sent.
        max_attempts: Attempt budget, applied to interrupted sends.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: TaskStore,
        engine: SchedulerEngine,
        *,
        grace_period: timedelta,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._engine = engine
        self._grace_period = grace_period
        self._max_attempts = max_attempts
        self._clock = clock
        # In-flight rows written after this instant belong to this process.
        self._started_at = clock()

    async def run(self) -> RecoveryReport:
        report = RecoveryReport()
        now = self._clock()

        for task in await self._store.query_in_flight():
            if task.updated_at is not None and task.updated_at >= self._started_at:
                continue
            if await self._requeue_interrupted(task):
                report.requeued += 1

        for task in await self._store.query_due(now):
            lateness = now - task.due_at
            if lateness <= self._grace_period:
                self._engine.enqueue(task)
                report.due += 1
                logger.info(
                    "Recovered overdue task %s for %s (late by %s)", task.id, task.entity, lateness
                )
            elif await self._fail_stale(task, lateness):
                report.stale += 1

        for task in await self._store.query_pending(now):
            self._engine.enqueue(task)
            report.loaded += 1

        logger.info(
            "Recovery complete: %d interrupted, %d overdue, %d stale, %d upcoming",
            report.requeued,
            report.due,
            report.stale,
            report.loaded,
        )
        return report

    async def _requeue_interrupted(self, task: NotificationTask) -> bool:
        """Count the interrupted attempt and put the task back on the retry edge."""
        attempts = task.attempts + 1
        try:
            reason = task.withdrawn_reason
            if reason is None and attempts >= self._max_attempts:
                reason = FailureReason.INTERRUPTED
            if reason is not None:
                await self._store.update_status(
                    task.id,
                    task.version,
                    TaskStatus.FAILED,
                    attempts=attempts,
                    last_error=_INTERRUPTED,
                    failure_reason=reason,
                )
                logger.warning("Interrupted task %s failed (%s)", task.id, reason)
                return True
            await self._store.update_status(
                task.id,
                task.version,
                TaskStatus.PENDING,
                attempts=attempts,
                last_error=_INTERRUPTED,
            )
        except (VersionConflict, InvalidTransition, TaskNotFound) as exc:
            logger.info("Skipping interrupted task %s: %s", task.id, exc)
            return False
        logger.warning("Requeued interrupted task %s for %s", task.id, task.entity)
        return True

    async def _fail_stale(self, task: NotificationTask, lateness: timedelta) -> bool:
        try:
            await self._store.update_status(
                task.id,
                task.version,
                TaskStatus.FAILED,
                last_error=f"Overdue by {lateness} at recovery",
                failure_reason=FailureReason.STALE_ON_RECOVERY,
            )
        except (VersionConflict, InvalidTransition, TaskNotFound) as exc:
            logger.info("Skipping stale task %s: %s", task.id, exc)
            return False
        logger.warning(
            "Stale on recovery: task %s for %s was due %s (late by %s), not sending",
            task.id,
            task.entity,
            task.due_at.isoformat(),
            lateness,
        )
        return True

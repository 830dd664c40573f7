"""Dispatcher: one delivery attempt per call, plus the retry policy."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sms_scheduler.errors import (
    InvalidTransition,
    PermanentDispatchError,
    StoreUnavailable,
    TransientDispatchError,
    VersionConflict,
)
from sms_scheduler.scheduler.models import FailureReason, TaskStatus, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from sms_scheduler.scheduler.models import NotificationTask
    from sms_scheduler.scheduler.store import TaskStore
    from sms_scheduler.sms.gateway import SmsGateway

logger = logging.getLogger(__name__)


class Dispatcher:
    """Sends in-flight tasks through the gateway and records the outcome.

    Args:
        store: TaskStore used for the versioned outcome write.
        gateway: SMS gateway capability.
        max_attempts: Total send attempts allowed per task.
        backoff_base: Seconds; retry delay is ``base * 2**attempts``.
        backoff_cap: Upper bound on the exponential part of the delay.
        backoff_jitter: Up to this many random seconds are added to each delay.
        send_timeout: Seconds a single gateway call may take.
        store_retry_attempts: How often to retry the outcome write while the
            store is unavailable.
        store_retry_delay: Seconds between those retries.
    """

    def __init__(
        self,
        store: TaskStore,
        gateway: SmsGateway,
        *,
        max_attempts: int = 3,
        backoff_base: float = 30.0,
        backoff_cap: float = 1800.0,
        backoff_jitter: float = 5.0,
        send_timeout: float = 10.0,
        store_retry_attempts: int = 3,
        store_retry_delay: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._backoff_jitter = backoff_jitter
        self._send_timeout = send_timeout
        self._store_retry_attempts = store_retry_attempts
        self._store_retry_delay = store_retry_delay
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff(self, attempts: int) -> float:
        """Seconds to wait before the next attempt after *attempts* sends."""
        delay = min(self._backoff_cap, self._backoff_base * (2**attempts))
        return delay + self._rng.uniform(0, self._backoff_jitter)

    async def dispatch(self, task: NotificationTask) -> NotificationTask | None:
        """Make one send attempt for an in-flight task.

        Returns the task as stored after the outcome write.  A returned task
        in ``pending`` status is waiting for a retry at ``next_attempt_at``.
        Returns None if another actor changed the task first or the store
        stayed unreachable.
        """
        attempts = task.attempts + 1
        logger.info(
            "Dispatching task %s for %s (attempt %d/%d)",
            task.id,
            task.entity,
            attempts,
            self._max_attempts,
        )
        try:
            receipt = await asyncio.wait_for(
                self._gateway.send(
                    task.recipient,
                    task.body,
                    task.dedupe_key,
                    timeout=self._send_timeout,
                ),
                timeout=self._send_timeout,
            )
        except TimeoutError:
            return await self._on_transient(
                task, attempts, f"Gateway timed out after {self._send_timeout}s"
            )
        except TransientDispatchError as exc:
            return await self._on_transient(task, attempts, str(exc))
        except PermanentDispatchError as exc:
            logger.warning("Task %s permanently rejected: %s", task.id, exc)
            return await self._record(
                task,
                TaskStatus.FAILED,
                attempts=attempts,
                last_error=str(exc),
                failure_reason=FailureReason.PERMANENT,
            )
        except Exception as exc:
            logger.exception("Unexpected gateway error for task %s", task.id)
            return await self._on_transient(task, attempts, repr(exc))

        logger.info("Task %s dispatched (provider_ref=%s)", task.id, receipt.provider_ref)
        return await self._record(
            task,
            TaskStatus.DISPATCHED,
            attempts=attempts,
            provider_ref=receipt.provider_ref,
            last_error=None,
        )

    async def _on_transient(
        self, task: NotificationTask, attempts: int, error: str
    ) -> NotificationTask | None:
        """Schedule a retry, or fail the task once attempts are exhausted."""
        reason = await self._withdrawn_reason(task)
        if reason is not None:
            return await self._fail_withdrawn(task, attempts, error, reason)

        if attempts >= self._max_attempts:
            logger.error(
                "Task %s failed after %d attempt(s): %s", task.id, attempts, error
            )
            return await self._record(
                task,
                TaskStatus.FAILED,
                attempts=attempts,
                last_error=error,
                failure_reason=FailureReason.TRANSIENT_EXHAUSTED,
            )

        delay = self.backoff(attempts)
        retry_at = self._clock() + timedelta(seconds=delay)
        logger.warning(
            "Task %s transient failure (attempt %d/%d), retrying in %.1fs: %s",
            task.id,
            attempts,
            self._max_attempts,
            delay,
            error,
        )
        retried = await self._record(
            task,
            TaskStatus.PENDING,
            attempts=attempts,
            next_attempt_at=retry_at,
            last_error=error,
        )
        if retried is None:
            # Superseded or cancelled between the check above and the write.
            reason = await self._withdrawn_reason(task)
            if reason is not None:
                return await self._fail_withdrawn(task, attempts, error, reason)
        return retried

    async def _withdrawn_reason(self, task: NotificationTask) -> FailureReason | None:
        try:
            current = await self._store.get_task(task.id)
        except StoreUnavailable:
            return None
        if current is None or current.status is not TaskStatus.IN_FLIGHT:
            return None
        return current.withdrawn_reason

    async def _fail_withdrawn(
        self, task: NotificationTask, attempts: int, error: str, reason: FailureReason
    ) -> NotificationTask | None:
        logger.info("Task %s was withdrawn while in flight (%s); not retrying", task.id, reason)
        return await self._record(
            task,
            TaskStatus.FAILED,
            attempts=attempts,
            last_error=error,
            failure_reason=reason,
        )

    async def _record(
        self, task: NotificationTask, status: TaskStatus, **fields: Any
    ) -> NotificationTask | None:
        """Write the outcome under the task's version, retrying store outages."""
        for attempt in range(self._store_retry_attempts + 1):
            try:
                return await self._store.update_status(task.id, task.version, status, **fields)
            except (VersionConflict, InvalidTransition) as exc:
                logger.info("Outcome for task %s abandoned: %s", task.id, exc)
                return None
            except StoreUnavailable:
                if attempt == self._store_retry_attempts:
                    break
                logger.warning(
                    "Store unavailable recording task %s, retrying in %.1fs",
                    task.id,
                    self._store_retry_delay,
                )
                await asyncio.sleep(self._store_retry_delay)
        logger.error(
            "Could not record %s for task %s; recovery will resolve it on restart",
            status,
            task.id,
        )
        return None

"""ArchiveJob: periodic archival of terminal tasks via APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sms_scheduler.errors import StoreUnavailable
from sms_scheduler.scheduler.models import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta

    from sms_scheduler.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

_JOB_ID = "archive-terminal-tasks"


class ArchiveJob:
    """Moves tasks that finished more than *retention* ago into the archive table.

    Args:
        store: TaskStore to archive from.
        retention: How long terminal tasks stay in the live table.
        interval: How often the sweep runs.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        retention: timedelta,
        interval: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._retention = retention
        self._interval = interval
        self._clock = clock
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Register the sweep and start APScheduler. Requires a running event loop."""
        if self._running:
            return
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._interval.total_seconds(), timezone="UTC"),
            id=_JOB_ID,
            name="Archive terminal notification tasks",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Archive job started (retention=%s, interval=%s)", self._retention, self._interval
        )

    def stop(self) -> None:
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Archive job stopped")

    async def run_once(self) -> int:
        """Archive eligible tasks now. Returns the number archived."""
        cutoff = self._clock() - self._retention
        try:
            return await self._store.archive_terminal(cutoff)
        except StoreUnavailable:
            logger.warning("Archive sweep skipped: task store unavailable")
            return 0

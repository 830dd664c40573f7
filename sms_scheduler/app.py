"""Application factory: wires store, gateway, dispatcher, engine, and recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from sms_scheduler.reminders import ReminderNotifications
from sms_scheduler.scheduler.dispatcher import Dispatcher
from sms_scheduler.scheduler.engine import SchedulerEngine
from sms_scheduler.scheduler.recovery import RecoveryLoader, RecoveryReport
from sms_scheduler.scheduler.retention import ArchiveJob
from sms_scheduler.scheduler.store import TaskStore
from sms_scheduler.sms import create_gateway

if TYPE_CHECKING:
    from sms_scheduler.config import Settings
    from sms_scheduler.sms.gateway import SmsGateway

logger = logging.getLogger(__name__)


@dataclass
class App:
    """A fully wired scheduler process."""

    store: TaskStore
    gateway: SmsGateway
    dispatcher: Dispatcher
    engine: SchedulerEngine
    recovery: RecoveryLoader
    notifications: ReminderNotifications
    archiver: ArchiveJob

    async def start(self) -> RecoveryReport:
        """Recover durable state, then start firing and archiving."""
        report = await self.recovery.run()
        await self.engine.start()
        self.archiver.start()
        logger.info("Scheduler process ready (gateway=%s)", self.gateway.name)
        return report

    async def stop(self) -> None:
        self.archiver.stop()
        await self.engine.stop()
        await self.gateway.close()


def build_app(settings: Settings, *, gateway: SmsGateway | None = None) -> App:
    """Build every component from *settings*. Pass *gateway* to override the provider."""
    store = TaskStore(settings.database_path)
    gateway = gateway or create_gateway(settings)
    dispatcher = Dispatcher(
        store,
        gateway,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base_seconds,
        backoff_cap=settings.backoff_cap_seconds,
        backoff_jitter=settings.backoff_jitter_seconds,
        send_timeout=settings.send_timeout_seconds,
        store_retry_delay=settings.store_retry_delay_seconds,
    )
    engine = SchedulerEngine(
        store,
        dispatcher,
        worker_count=settings.worker_pool_size,
        store_retry_delay=settings.store_retry_delay_seconds,
    )
    recovery = RecoveryLoader(
        store,
        engine,
        grace_period=timedelta(seconds=settings.recovery_grace_seconds),
        max_attempts=settings.max_attempts,
    )
    notifications = ReminderNotifications(engine, timezone=settings.timezone)
    archiver = ArchiveJob(
        store,
        retention=timedelta(days=settings.retention_days),
        interval=timedelta(minutes=settings.archive_interval_minutes),
    )
    return App(
        store=store,
        gateway=gateway,
        dispatcher=dispatcher,
        engine=engine,
        recovery=recovery,
        notifications=notifications,
        archiver=archiver,
    )

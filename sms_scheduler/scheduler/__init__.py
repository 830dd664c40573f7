"""Notification scheduling: models, persistence, dispatch, timing, and recovery."""

from sms_scheduler.scheduler.dispatcher import Dispatcher
from sms_scheduler.scheduler.engine import CancelOutcome, RescheduleResult, SchedulerEngine
from sms_scheduler.scheduler.models import (
    EntityRef,
    FailureReason,
    NotificationTask,
    TaskStatus,
)
from sms_scheduler.scheduler.recovery import RecoveryLoader, RecoveryReport
from sms_scheduler.scheduler.retention import ArchiveJob
from sms_scheduler.scheduler.store import Replacement, TaskStore

__all__ = [
    "ArchiveJob",
    "CancelOutcome",
    "Dispatcher",
    "EntityRef",
    "FailureReason",
    "NotificationTask",
    "RecoveryLoader",
    "RecoveryReport",
    "Replacement",
    "RescheduleResult",
    "SchedulerEngine",
    "TaskStatus",
    "TaskStore",
]

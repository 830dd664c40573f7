"""Exception hierarchy for scheduling, persistence, and dispatch."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sms_scheduler.scheduler.models import EntityRef, TaskStatus


class SchedulerError(Exception):
    """Base class for all errors raised by sms_scheduler."""


class ValidationError(SchedulerError):
    """A schedule request is missing a recipient, body, time, or entity."""


class ConflictError(SchedulerError):
    """An active task already exists for the entity."""

    def __init__(self, entity: EntityRef, existing_id: str | None = None) -> None:
        self.entity = entity
        self.existing_id = existing_id
        super().__init__(f"Active notification already exists for {entity}")


class VersionConflict(SchedulerError):
    """An optimistic write lost the race to another actor."""

    def __init__(self, task_id: str, expected: int, actual: int | None = None) -> None:
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Task {task_id} version mismatch (expected={expected}, actual={actual})"
        )


class InvalidTransition(SchedulerError):
    """The requested status change is not allowed from the current status."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id} cannot move from {current} to {requested}")


class TaskNotFound(SchedulerError):
    """No task exists with the given id."""


class StoreUnavailable(SchedulerError):
    """The task database could not be reached."""


class DispatchError(SchedulerError):
    """A gateway send attempt failed.

    Attributes:
        status: HTTP status returned by the provider, if any.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class TransientDispatchError(DispatchError):
    """Retryable failure: network error, timeout, rate limit, provider 5xx."""


class PermanentDispatchError(DispatchError):
    """Non-retryable rejection: invalid recipient or payload."""

"""NotificationTask data model and status state machine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from sms_scheduler.errors import ValidationError


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DISPATCHED = "dispatched"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(StrEnum):
    TRANSIENT_EXHAUSTED = "transient_exhausted"
    PERMANENT = "permanent"
    STALE_ON_RECOVERY = "stale_on_recovery"
    SUPERSEDED = "superseded"
    INTERRUPTED = "interrupted"
    CANCELLED_IN_FLIGHT = "cancelled_in_flight"


ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_FLIGHT})
TERMINAL_STATUSES = frozenset(
    {TaskStatus.DISPATCHED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# in_flight -> pending is the retry edge; everything else only moves forward.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_FLIGHT, TaskStatus.CANCELLED, TaskStatus.FAILED}
    ),
    TaskStatus.IN_FLIGHT: frozenset(
        {TaskStatus.DISPATCHED, TaskStatus.FAILED, TaskStatus.PENDING}
    ),
    TaskStatus.DISPATCHED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* in UTC. Naive datetimes are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    # Fixed width so ISO strings sort chronologically inside SQLite.
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


@dataclass(frozen=True)
class EntityRef:
    """Weak reference to the domain record a notification serves."""

    kind: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.entity_id}"


@dataclass
class NotificationTask:
    """A single SMS to send to one recipient at one instant.

    Attributes:
        id: Unique identifier (UUID hex), immutable.
        entity: The reminder/appointment this task serves.
        scheduled_at: When the message should go out. Never mutated.
        recipient: Destination phone number, captured at schedule time.
        body: Message text, captured at schedule time.
        status: Lifecycle state, see ``ALLOWED_TRANSITIONS``.
        attempts: Number of send attempts made so far.
        dedupe_key: Stable key passed to the gateway with every attempt.
        provider_ref: Gateway message id once dispatched.
        version: Optimistic-concurrency counter, bumped on every status write.
        created_at: Persisted creation time, first tie-breaker after due time.
        updated_at: Time of the last status write.
        next_attempt_at: Retry instant after a transient failure.
        last_error: Most recent failure description.
        failure_reason: Why the task ended up ``failed``.
        superseded_by: Id of the task that replaced this one while in flight.
        cancel_requested: Set when the entity was cancelled while this task
            was in flight; the task is then never retried.
        seq: Insertion sequence assigned by the store, final tie-breaker.
    """

    id: str
    entity: EntityRef
    scheduled_at: datetime
    recipient: str
    body: str
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    dedupe_key: str = ""
    provider_ref: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    failure_reason: FailureReason | None = None
    superseded_by: str | None = None
    cancel_requested: bool = False
    seq: int = 0

    def __post_init__(self) -> None:
        if self.scheduled_at is not None:
            self.scheduled_at = ensure_utc(self.scheduled_at)
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at
        if not self.dedupe_key:
            self.dedupe_key = make_dedupe_key(self.id)

    @classmethod
    def new(
        cls,
        entity: EntityRef,
        scheduled_at: datetime,
        recipient: str,
        body: str,
    ) -> NotificationTask:
        """Build a fresh Pending task with a new id."""
        return cls(
            id=make_task_id(),
            entity=entity,
            scheduled_at=scheduled_at,
            recipient=recipient,
            body=body,
        )

    # -- Convenience properties ------------------------------------------------

    @property
    def due_at(self) -> datetime:
        """The instant the timing loop should fire this task."""
        return self.next_attempt_at or self.scheduled_at

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES and self.withdrawn_reason is None

    @property
    def withdrawn_reason(self) -> FailureReason | None:
        """Why this task must not go back to pending, if it was replaced or cancelled."""
        if self.superseded_by:
            return FailureReason.SUPERSEDED
        if self.cancel_requested:
            return FailureReason.CANCELLED_IN_FLIGHT
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def sort_key(self) -> tuple[datetime, datetime, int, str]:
        return (self.due_at, self.created_at, self.seq, self.id)

    def validate(self) -> None:
        """Raise ValidationError if a required field is missing."""
        missing = [
            name
            for name, value in (
                ("recipient", self.recipient),
                ("body", self.body),
                ("scheduled_at", self.scheduled_at),
                ("entity kind", self.entity.kind if self.entity else None),
                ("entity id", self.entity.entity_id if self.entity else None),
            )
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            msg = f"Missing required field(s): {', '.join(missing)}"
            raise ValidationError(msg)

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``notification_tasks`` insert order."""
        return (
            self.id,
            self.entity.kind,
            self.entity.entity_id,
            to_iso(self.scheduled_at),
            self.recipient,
            self.body,
            str(self.status),
            self.attempts,
            self.dedupe_key,
            self.provider_ref,
            self.version,
            to_iso(self.created_at),
            to_iso(self.updated_at),
            to_iso(self.next_attempt_at),
            self.last_error,
            str(self.failure_reason) if self.failure_reason else None,
            self.superseded_by,
            int(self.cancel_requested),
        )

    @classmethod
    def from_row(cls, row: tuple) -> NotificationTask:
        """Deserialize from a ``SELECT *`` row (``seq`` is the last column)."""
        return cls(
            id=row[0],
            entity=EntityRef(row[1], row[2]),
            scheduled_at=from_iso(row[3]),
            recipient=row[4],
            body=row[5],
            status=TaskStatus(row[6]),
            attempts=row[7],
            dedupe_key=row[8],
            provider_ref=row[9],
            version=row[10],
            created_at=from_iso(row[11]),
            updated_at=from_iso(row[12]),
            next_attempt_at=from_iso(row[13]),
            last_error=row[14],
            failure_reason=FailureReason(row[15]) if row[15] else None,
            superseded_by=row[16],
            cancel_requested=bool(row[17]),
            seq=row[18],
        )


def make_task_id() -> str:
    """Generate a new task ID."""
    return uuid.uuid4().hex


def make_dedupe_key(task_id: str) -> str:
    """Derive the idempotency key sent to the gateway for every attempt."""
    return f"notif-{task_id}"

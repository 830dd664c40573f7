"""Reminder and appointment notifications: the domain side of scheduling.

The web layer owns the records themselves.  It calls these hooks after each
create/update/delete has been committed, and the hooks translate that into
schedule, reschedule, and cancel calls on the engine.
"""

from __future__ import annotations

import logging
import zoneinfo
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sms_scheduler.errors import ValidationError
from sms_scheduler.scheduler.models import EntityRef, ensure_utc, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from sms_scheduler.scheduler.engine import CancelOutcome, RescheduleResult, SchedulerEngine
    from sms_scheduler.scheduler.models import NotificationTask

logger = logging.getLogger(__name__)

REMINDER = "reminder"
APPOINTMENT = "appointment"
APPOINTMENT_NOTICE = "appointment_notice"

_TIME_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %I:%M %p")


@dataclass
class Reminder:
    id: str
    name: str
    phone: str
    time: datetime
    message: str


@dataclass
class Appointment:
    """An appointment as the web layer stores it: date and time are strings."""

    id: str
    date: str
    time: str
    doctor: str
    phone: str


def reminder_body(reminder: Reminder) -> str:
    return f"Reminder for {reminder.name}, {reminder.message}"


def appointment_body(appointment: Appointment) -> str:
    return (
        f"Reminder: You have an appointment scheduled with Dr. {appointment.doctor} "
        f"at {appointment.time} on {appointment.date}."
    )


def appointment_rescheduled_body(appointment: Appointment) -> str:
    return (
        f"Reminder: Your appointment has been rescheduled with Dr. {appointment.doctor} "
        f"at {appointment.time} on {appointment.date}."
    )


class ReminderNotifications:
    """Keeps each reminder/appointment's SMS in step with the record.

    Records whose time has already passed are not scheduled.

    Args:
        engine: SchedulerEngine to schedule through.
        timezone: IANA zone used to interpret appointment date/time strings
            and naive reminder times.
    """

    def __init__(
        self,
        engine: SchedulerEngine,
        *,
        timezone: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._tz = zoneinfo.ZoneInfo(timezone)
        self._clock = clock

    def _localise(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=self._tz)
        return ensure_utc(value)

    def appointment_time(self, appointment: Appointment) -> datetime:
        """Combine an appointment's date and time strings into a UTC instant."""
        raw = f"{appointment.date.strip()} {appointment.time.strip()}"
        for fmt in _TIME_FORMATS:
            try:
                return self._localise(datetime.strptime(raw, fmt))  # noqa: DTZ007
            except ValueError:
                continue
        msg = f"Unrecognised appointment date/time: {raw!r}"
        raise ValidationError(msg)

    def _is_past(self, when: datetime) -> bool:
        return when <= self._clock()

    # -- Reminders -------------------------------------------------------------

    async def reminder_created(self, reminder: Reminder) -> NotificationTask | None:
        when = self._localise(reminder.time)
        if self._is_past(when):
            logger.info("Reminder %s is in the past; not scheduling", reminder.id)
            return None
        return await self._engine.schedule(
            EntityRef(REMINDER, reminder.id), when, reminder.phone, reminder_body(reminder)
        )

    async def reminder_updated(self, reminder: Reminder) -> RescheduleResult | None:
        when = self._localise(reminder.time)
        entity = EntityRef(REMINDER, reminder.id)
        if self._is_past(when):
            await self._engine.cancel(entity)
            return None
        return await self._engine.reschedule(entity, when, reminder.phone, reminder_body(reminder))

    async def reminder_deleted(self, reminder_id: str) -> CancelOutcome:
        return await self._engine.cancel(EntityRef(REMINDER, reminder_id))

    # -- Appointments ----------------------------------------------------------

    async def appointment_created(self, appointment: Appointment) -> NotificationTask | None:
        when = self.appointment_time(appointment)
        if self._is_past(when):
            logger.info("Appointment %s is in the past; not scheduling", appointment.id)
            return None
        return await self._engine.schedule(
            EntityRef(APPOINTMENT, appointment.id),
            when,
            appointment.phone,
            appointment_body(appointment),
        )

    async def appointment_updated(self, appointment: Appointment) -> RescheduleResult | None:
        """Move the appointment reminder and notify the patient of the change.

        Call only once the record update has been committed: the change
        notice is sent immediately and cannot be taken back.
        """
        when = self.appointment_time(appointment)
        entity = EntityRef(APPOINTMENT, appointment.id)
        if self._is_past(when):
            await self._engine.cancel(entity)
            result = None
        else:
            result = await self._engine.reschedule(
                entity, when, appointment.phone, appointment_body(appointment)
            )
        await self._engine.reschedule(
            EntityRef(APPOINTMENT_NOTICE, appointment.id),
            self._clock(),
            appointment.phone,
            appointment_rescheduled_body(appointment),
        )
        return result

    async def appointment_deleted(self, appointment_id: str) -> CancelOutcome:
        await self._engine.cancel(EntityRef(APPOINTMENT_NOTICE, appointment_id))
        return await self._engine.cancel(EntityRef(APPOINTMENT, appointment_id))

"""Domain events consumed and emitted by the reminder pipeline."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from workshop_reminders.domain.models import ReminderKind


class BookingConfirmed(BaseModel):
    """Fired by the booking workflow once a booking is paid and confirmed."""

    booking_id: str


class BookingCancelled(BaseModel):
    """Fired by the booking workflow when a booking is withdrawn."""

    booking_id: str


class RemindersScheduled(BaseModel):
    booking_id: str
    reminder_ids: list[str]


class ReminderSent(BaseModel):
    reminder_id: str
    booking_id: str
    kind: ReminderKind
    sent_at: datetime
    message_id: str | None = None


class ReminderFailed(BaseModel):
    reminder_id: str
    booking_id: str
    kind: ReminderKind
    error: str
    failed_at: datetime


class RemindersCancelled(BaseModel):
    booking_id: str
    cancelled: int


class BatchProcessed(BaseModel):
    """Fired at the end of every sweep (via /tick or the worker)."""

    now: datetime
    due: int
    processed: int
    sent: int
    failed: int
    skipped: int

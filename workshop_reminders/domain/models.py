"""Domain models for the reminder scheduling and delivery pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class ReminderKind(StrEnum):
    T_MINUS_48H = "T_MINUS_48H"
    T_MINUS_24H = "T_MINUS_24H"
    T_MINUS_2H = "T_MINUS_2H"
    T_PLUS_2H = "T_PLUS_2H"


class ReminderState(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Offsets relative to the workshop start; negative means before.
REMINDER_OFFSETS: dict[ReminderKind, timedelta] = {
    ReminderKind.T_MINUS_48H: timedelta(hours=-48),
    ReminderKind.T_MINUS_24H: timedelta(hours=-24),
    ReminderKind.T_MINUS_2H: timedelta(hours=-2),
    ReminderKind.T_PLUS_2H: timedelta(hours=2),
}

TERMINAL_STATES = frozenset(
    {ReminderState.SENT, ReminderState.FAILED, ReminderState.CANCELLED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return f"reminder-{uuid.uuid4()}"


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class ReminderRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    booking_id: str
    workshop_id: str
    recipient_email: str
    recipient_name: str | None = None
    event_time: datetime
    kind: ReminderKind
    scheduled_for: datetime
    state: ReminderState = ReminderState.PENDING
    attempts: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "event_time",
        "scheduled_for",
        "last_attempt_at",
        "sent_at",
        "claimed_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class Template(BaseModel):
    """Subject and bodies for one reminder kind, with ``{{key}}`` placeholders."""

    kind: ReminderKind
    subject: str
    html_body: str
    text_body: str
    is_active: bool = True


class BookingContext(BaseModel):
    """What the booking collaborator knows about a booking."""

    booking_id: str
    workshop_id: str
    recipient_email: str
    recipient_name: str | None = None
    workshop_name: str | None = None
    workshop_start: datetime
    location: str | None = None
    zoom_link: str | None = None

    @field_validator("workshop_start")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class DispatchResult(BaseModel):
    success: bool
    message_id: str | None = None
    error: str | None = None


class RenderedMessage(BaseModel):
    subject: str
    html_body: str
    text_body: str


class BatchResult(BaseModel):
    """Summary of one sweep over the due reminders."""

    now: datetime
    due: int = 0
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class CancelResponse(BaseModel):
    booking_id: str
    cancelled: int

"""Service for creating reminder schedules and querying them."""

from __future__ import annotations

from datetime import datetime

from workshop_reminders.domain.bus import EventBus
from workshop_reminders.domain.errors import AlreadyScheduled
from workshop_reminders.domain.events import RemindersScheduled
from workshop_reminders.domain.models import (
    REMINDER_OFFSETS,
    ReminderRecord,
    ensure_aware,
    utcnow,
)
from workshop_reminders.domain.ports import BookingContextProvider, ReminderStore
from workshop_reminders.observability import get_logger

logger = get_logger(__name__)


def generate_reminders(
    booking_id: str,
    provider: BookingContextProvider,
    store: ReminderStore,
    bus: EventBus | None = None,
    now: datetime | None = None,
) -> list[ReminderRecord]:
    """Create the four PENDING reminders for a confirmed booking.

    Raises ``BookingNotFound`` if the booking cannot be resolved and
    ``AlreadyScheduled`` if the booking already has reminders; in both cases
    nothing is written. Nothing is dispatched here.
    """
    booking = provider.get_booking_context(booking_id)

    if store.list_for_booking(booking_id):
        logger.warning("Reminders already scheduled", booking_id=booking_id)
        raise AlreadyScheduled(booking_id)

    created_at = now or utcnow()
    records = [
        ReminderRecord(
            booking_id=booking_id,
            workshop_id=booking.workshop_id,
            recipient_email=booking.recipient_email,
            recipient_name=booking.recipient_name,
            event_time=booking.workshop_start,
            kind=kind,
            scheduled_for=booking.workshop_start + offset,
            created_at=created_at,
            updated_at=created_at,
        )
        for kind, offset in REMINDER_OFFSETS.items()
    ]
    # A concurrent generate for the same booking loses here on the
    # (booking_id, kind) uniqueness and raises AlreadyScheduled.
    store.add_many(records)

    for record in records:
        logger.info(
            "Scheduled reminder",
            reminder_id=record.id,
            booking_id=booking_id,
            kind=record.kind.value,
            scheduled_for=record.scheduled_for.isoformat(),
        )

    if bus is not None:
        bus.publish(
            RemindersScheduled(
                booking_id=booking_id, reminder_ids=[r.id for r in records]
            )
        )
    return records


def select_due(
    store: ReminderStore, now: datetime, limit: int | None = None
) -> list[ReminderRecord]:
    """Return PENDING reminders with ``scheduled_for <= now``, oldest first.

    Read-only; safe to call any number of times.
    """
    return store.list_due(ensure_aware(now), limit=limit)


def get_reminder_history(store: ReminderStore, booking_id: str) -> list[ReminderRecord]:
    """Every reminder ever scheduled for the booking, in schedule order."""
    return store.list_for_booking(booking_id)

"""Cancels outstanding reminders when a booking is withdrawn."""

from __future__ import annotations

from datetime import datetime

from workshop_reminders.domain.bus import EventBus
from workshop_reminders.domain.events import RemindersCancelled
from workshop_reminders.domain.models import utcnow
from workshop_reminders.domain.ports import ReminderStore
from workshop_reminders.observability import get_logger

logger = get_logger(__name__)


def cancel_for_booking(
    booking_id: str,
    store: ReminderStore,
    bus: EventBus | None = None,
    now: datetime | None = None,
) -> int:
    """Move every PENDING reminder of the booking to CANCELLED.

    SENT and FAILED reminders are left alone. Idempotent: a second call
    finds nothing pending and returns 0.
    """
    cancelled = store.cancel_pending(booking_id, now or utcnow())
    logger.info("Cancelled pending reminders", booking_id=booking_id, cancelled=cancelled)
    if bus is not None:
        bus.publish(RemindersCancelled(booking_id=booking_id, cancelled=cancelled))
    return cancelled

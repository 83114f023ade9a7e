"""Domain event handlers, wired up at application startup."""

from __future__ import annotations

from workshop_reminders.domain.bus import EventBus
from workshop_reminders.domain.events import (
    BookingCancelled,
    BookingConfirmed,
    ReminderFailed,
)
from workshop_reminders.domain.ports import BookingContextProvider, ReminderStore
from workshop_reminders.observability import get_logger
from workshop_reminders.services.cancellation import cancel_for_booking
from workshop_reminders.services.reminders import generate_reminders

logger = get_logger(__name__)


class HandlerRegistry:
    """Connects the booking workflow's events to the reminder pipeline."""

    def __init__(
        self,
        bus: EventBus,
        store: ReminderStore,
        provider: BookingContextProvider,
    ) -> None:
        self.bus = bus
        self.store = store
        self.provider = provider
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(BookingConfirmed, self.on_booking_confirmed)
        self.bus.subscribe(BookingCancelled, self.on_booking_cancelled)
        self.bus.subscribe(ReminderFailed, self.on_reminder_failed)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_booking_confirmed(self, event: BookingConfirmed) -> None:
        # BookingNotFound / AlreadyScheduled reach the publisher: the booking
        # workflow has to know when a booking ends up without reminders.
        generate_reminders(event.booking_id, self.provider, self.store, bus=self.bus)

    def on_booking_cancelled(self, event: BookingCancelled) -> None:
        cancel_for_booking(event.booking_id, self.store, bus=self.bus)

    def on_reminder_failed(self, event: ReminderFailed) -> None:
        logger.error(
            "Reminder delivery failed and will not be retried",
            reminder_id=event.reminder_id,
            booking_id=event.booking_id,
            kind=event.kind.value,
            error=event.error,
        )

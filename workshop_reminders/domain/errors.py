"""Errors raised by the reminder pipeline."""

from __future__ import annotations


class ReminderError(Exception):
    """Base class for pipeline errors."""


class BookingNotFound(ReminderError):
    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking not found: {booking_id}")
        self.booking_id = booking_id


class AlreadyScheduled(ReminderError):
    """Reminders already exist for the booking; nothing was written."""

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Reminders already scheduled for booking: {booking_id}")
        self.booking_id = booking_id


class DispatchFailure(ReminderError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StoreUnavailable(ReminderError):
    """The reminder store cannot be reached; callers must not continue."""


class ReminderNotFound(ReminderError):
    def __init__(self, reminder_id: str) -> None:
        super().__init__(f"Reminder not found: {reminder_id}")
        self.reminder_id = reminder_id


class ProviderNotConfigured(ReminderError):
    """No usable booking context provider; processing would fail every reminder."""

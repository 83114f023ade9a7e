"""Capabilities the pipeline consumes, injected at construction."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from workshop_reminders.domain.models import (
    BookingContext,
    DispatchResult,
    ReminderRecord,
    ReminderState,
)


class BookingContextProvider(Protocol):
    def get_booking_context(self, booking_id: str) -> BookingContext:
        """Return the booking's context or raise ``BookingNotFound``."""
        ...


class EmailChannel(Protocol):
    def send(
        self, to: str, subject: str, html_body: str, text_body: str
    ) -> DispatchResult: ...


class ReminderStore(Protocol):
    """Persistence for reminder records.

    Every method may raise ``StoreUnavailable``. ``claim``, ``transition`` and
    ``cancel_pending`` are compare-and-set operations on ``state``.
    """

    def add_many(self, records: list[ReminderRecord]) -> None:
        """Insert all records or none; raise ``AlreadyScheduled`` on a
        duplicate ``(booking_id, kind)``."""
        ...

    def get(self, reminder_id: str) -> ReminderRecord | None: ...

    def list_for_booking(self, booking_id: str) -> list[ReminderRecord]: ...

    def list_due(
        self, now: datetime, limit: int | None = None
    ) -> list[ReminderRecord]: ...

    def claim(
        self, reminder_id: str, now: datetime, stale_before: datetime
    ) -> ReminderRecord | None:
        """Mark a PENDING, unclaimed (or stale-claimed) record as in flight.

        Increments ``attempts``; returns the updated record, or None when the
        record is no longer claimable.
        """
        ...

    def transition(
        self,
        reminder_id: str,
        expected: ReminderState,
        target: ReminderState,
        now: datetime,
        error: str | None = None,
    ) -> ReminderRecord | None:
        """Move ``expected -> target``; None when the stored state differs."""
        ...

    def cancel_pending(self, booking_id: str, now: datetime) -> int:
        """Cancel every PENDING record of the booking; return how many."""
        ...

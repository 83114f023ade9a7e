"""In-memory reminder store and booking directory."""

from __future__ import annotations

import threading
from datetime import datetime

from workshop_reminders.domain.errors import AlreadyScheduled, BookingNotFound
from workshop_reminders.domain.models import (
    BookingContext,
    ReminderKind,
    ReminderRecord,
    ReminderState,
)


class InMemoryReminderStore:
    """Dict-backed ReminderStore, keyed by id with a unique (booking_id, kind) index.

    All reads return copies so callers never mutate stored rows; every
    compare-and-set runs under one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, ReminderRecord] = {}
        self._by_booking_kind: dict[tuple[str, ReminderKind], str] = {}

    def add_many(self, records: list[ReminderRecord]) -> None:
        with self._lock:
            keys = [(r.booking_id, r.kind) for r in records]
            if len(set(keys)) != len(keys):
                raise AlreadyScheduled(records[0].booking_id)
            for key in keys:
                if key in self._by_booking_kind:
                    raise AlreadyScheduled(key[0])
            for record in records:
                self._store[record.id] = record.model_copy()
                self._by_booking_kind[(record.booking_id, record.kind)] = record.id

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._lock:
            record = self._store.get(reminder_id)
            return record.model_copy() if record is not None else None

    def list_for_booking(self, booking_id: str) -> list[ReminderRecord]:
        with self._lock:
            rows = [r.model_copy() for r in self._store.values() if r.booking_id == booking_id]
        return sorted(rows, key=lambda r: r.scheduled_for)

    def list_due(self, now: datetime, limit: int | None = None) -> list[ReminderRecord]:
        with self._lock:
            rows = [
                r.model_copy()
                for r in self._store.values()
                if r.state == ReminderState.PENDING and r.scheduled_for <= now
            ]
        rows.sort(key=lambda r: (r.scheduled_for, r.created_at))
        return rows[:limit] if limit else rows

    def claim(
        self, reminder_id: str, now: datetime, stale_before: datetime
    ) -> ReminderRecord | None:
        with self._lock:
            record = self._store.get(reminder_id)
            if record is None or record.state != ReminderState.PENDING:
                return None
            if record.claimed_at is not None and record.claimed_at > stale_before:
                return None
            record.attempts += 1
            record.last_attempt_at = now
            record.claimed_at = now
            record.updated_at = now
            return record.model_copy()

    def transition(
        self,
        reminder_id: str,
        expected: ReminderState,
        target: ReminderState,
        now: datetime,
        error: str | None = None,
    ) -> ReminderRecord | None:
        with self._lock:
            record = self._store.get(reminder_id)
            if record is None or record.state != expected:
                return None
            record.state = target
            record.updated_at = now
            if target == ReminderState.SENT:
                record.sent_at = now
            if error is not None:
                record.last_error = error
            return record.model_copy()

    def cancel_pending(self, booking_id: str, now: datetime) -> int:
        cancelled = 0
        with self._lock:
            for record in self._store.values():
                if record.booking_id == booking_id and record.state == ReminderState.PENDING:
                    record.state = ReminderState.CANCELLED
                    record.updated_at = now
                    cancelled += 1
        return cancelled

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._by_booking_kind.clear()


class BookingDirectory:
    """Dict-backed BookingContextProvider, keyed by booking id.

    Stands in for the booking manager; the booking workflow registers
    contexts here as bookings are confirmed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, BookingContext] = {}

    def add(self, context: BookingContext) -> None:
        with self._lock:
            self._store[context.booking_id] = context

    def remove(self, booking_id: str) -> None:
        with self._lock:
            self._store.pop(booking_id, None)

    def get_booking_context(self, booking_id: str) -> BookingContext:
        with self._lock:
            context = self._store.get(booking_id)
        if context is None:
            raise BookingNotFound(booking_id)
        return context

    def list_all(self) -> list[BookingContext]:
        with self._lock:
            return list(self._store.values())

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

"""Shared fixtures: a fresh store, booking directory, fake channel and processor."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from workshop_reminders.domain.bus import EventBus
from workshop_reminders.domain.errors import BookingNotFound
from workshop_reminders.domain.events import (
    BatchProcessed,
    ReminderFailed,
    RemindersCancelled,
    RemindersScheduled,
    ReminderSent,
)
from workshop_reminders.domain.models import BookingContext, DispatchResult
from workshop_reminders.repos.memory import BookingDirectory, InMemoryReminderStore
from workshop_reminders.services.processor import ReminderProcessor
from workshop_reminders.services.templates import TemplateCatalog

WORKSHOP_START = datetime(2025, 7, 10, 9, 0, tzinfo=timezone.utc)

CAPTURED_EVENTS = (
    RemindersScheduled,
    ReminderSent,
    ReminderFailed,
    RemindersCancelled,
    BatchProcessed,
)


class FakeEmailChannel:
    """Deterministic EmailChannel.

    Behaviour is keyed on a fragment of the subject line:
    ``failures`` returns a failed DispatchResult, ``errors`` raises,
    ``blocking`` waits on ``release`` (to simulate a hung provider).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[dict] = []
        self.failures: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.blocking: set[str] = set()
        self.release = threading.Event()

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DispatchResult:
        for fragment in self.blocking:
            if fragment in subject:
                self.release.wait(timeout=5)
        for fragment, exc in self.errors.items():
            if fragment in subject:
                raise exc
        for fragment, reason in self.failures.items():
            if fragment in subject:
                return DispatchResult(success=False, error=reason)
        with self._lock:
            self.sent.append(
                {"to": to, "subject": subject, "html": html_body, "text": text_body}
            )
            message_id = f"msg-{len(self.sent)}"
        return DispatchResult(success=True, message_id=message_id)


def make_booking(booking_id: str = "B1", **overrides) -> BookingContext:
    defaults = dict(
        booking_id=booking_id,
        workshop_id="W1",
        recipient_email=f"{booking_id.lower()}@example.com",
        recipient_name="Ada Lovelace",
        workshop_name="Intro to Vibe Coding",
        workshop_start=WORKSHOP_START,
        location="Studio 4",
    )
    defaults.update(overrides)
    return BookingContext(**defaults)


class SeededBookings:
    """Read-only provider knowing only B1; loadable as ``conftest:SeededBookings``."""

    def __init__(self) -> None:
        self._bookings = {"B1": make_booking("B1")}

    def get_booking_context(self, booking_id: str) -> BookingContext:
        try:
            return self._bookings[booking_id]
        except KeyError:
            raise BookingNotFound(booking_id) from None


@pytest.fixture()
def env():
    """Fresh store + bookings + channel + bus + processor for each test."""

    class Env:
        pass

    e = Env()
    e.store = InMemoryReminderStore()
    e.bookings = BookingDirectory()
    e.channel = FakeEmailChannel()
    e.catalog = TemplateCatalog()
    e.bus = EventBus()
    e.events = []
    for event_type in CAPTURED_EVENTS:
        e.bus.subscribe(event_type, e.events.append)
    e.processor = ReminderProcessor(
        e.store,
        e.bookings,
        e.channel,
        e.catalog,
        e.bus,
        dispatch_timeout=2.0,
        max_workers=1,
    )
    e.bookings.add(make_booking("B1"))
    yield e
    e.channel.release.set()

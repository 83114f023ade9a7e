"""Tests for the reminder processor state machine and batch sweeps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeEmailChannel, make_booking
from workshop_reminders.domain.errors import StoreUnavailable
from workshop_reminders.domain.events import BatchProcessed, ReminderFailed, ReminderSent
from workshop_reminders.domain.models import ReminderKind, ReminderState
from workshop_reminders.repos.memory import BookingDirectory, InMemoryReminderStore
from workshop_reminders.services.cancellation import cancel_for_booking
from workshop_reminders.services.processor import ReminderProcessor
from workshop_reminders.services.reminders import generate_reminders

_NOW = datetime(2025, 7, 10, 7, 30, tzinfo=timezone.utc)


def _by_kind(store, booking_id="B1"):
    return {r.kind: r for r in store.list_for_booking(booking_id)}


# ---------------------------------------------------------------------------
# Single record
# ---------------------------------------------------------------------------


def test_process_success_marks_sent(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.SENT
    assert result.attempts == 1
    assert result.sent_at == _NOW
    assert result.last_attempt_at == _NOW
    assert result.last_error is None
    assert env.store.get(record.id).state == ReminderState.SENT

    assert len(env.channel.sent) == 1
    sent = env.channel.sent[0]
    assert sent["to"] == "b1@example.com"
    assert sent["subject"] == "Get Ready! Intro to Vibe Coding is in 2 Days"
    assert "Hi Ada Lovelace," in sent["text"]


def test_process_dispatch_failure_marks_failed(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_2H]
    env.channel.failures["Starting Soon"] = "mailbox unavailable"

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.FAILED
    assert result.attempts == 1
    assert result.last_attempt_at == _NOW
    assert result.last_error == "mailbox unavailable"
    assert result.sent_at is None


def test_process_unknown_booking_marks_failed(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_24H]
    env.bookings.remove("B1")

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.FAILED
    assert result.attempts == 1
    assert "Booking not found: B1" in result.last_error
    assert env.channel.sent == []


def test_process_channel_exception_marks_failed(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_24H]
    env.channel.errors["Tomorrow"] = ConnectionError("smtp down")

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.FAILED
    assert result.last_error == "ConnectionError: smtp down"


def test_process_dispatch_timeout_marks_failed(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_24H]
    env.channel.blocking.add("Tomorrow")
    processor = ReminderProcessor(
        env.store, env.bookings, env.channel, dispatch_timeout=0.05, max_workers=1
    )

    try:
        result = processor.process(record, _NOW)
    finally:
        env.channel.release.set()

    assert result.state == ReminderState.FAILED
    assert result.attempts == 1
    assert "timed out" in result.last_error


def test_hung_dispatch_does_not_time_out_the_next_reminder(env):
    env.bookings.add(make_booking("B1", workshop_name="Hung Workshop"))
    env.bookings.add(make_booking("B2"))
    generate_reminders("B1", env.bookings, env.store)
    generate_reminders("B2", env.bookings, env.store)
    env.channel.blocking.add("Hung Workshop")
    processor = ReminderProcessor(
        env.store, env.bookings, env.channel, dispatch_timeout=0.3, max_workers=1
    )

    try:
        hung = processor.process(_by_kind(env.store, "B1")[ReminderKind.T_MINUS_48H], _NOW)
        healthy = processor.process(
            _by_kind(env.store, "B2")[ReminderKind.T_MINUS_24H], _NOW
        )
        delivered = [m["to"] for m in env.channel.sent]
    finally:
        env.channel.release.set()

    assert hung.state == ReminderState.FAILED
    assert "timed out" in hung.last_error
    assert healthy.state == ReminderState.SENT
    assert healthy.last_error is None
    assert delivered == ["b2@example.com"]


def test_batch_with_hung_booking_still_sends_other_bookings(env):
    env.bookings.add(make_booking("B1", workshop_name="Hung Workshop"))
    env.bookings.add(make_booking("B2"))
    generate_reminders("B1", env.bookings, env.store)
    generate_reminders("B2", env.bookings, env.store)
    env.channel.blocking.add("Hung Workshop")
    processor = ReminderProcessor(
        env.store, env.bookings, env.channel, dispatch_timeout=0.2, max_workers=1
    )

    try:
        result = processor.process_due_batch(_NOW)
    finally:
        env.channel.release.set()

    assert (result.due, result.sent, result.failed) == (6, 3, 3)
    assert [r.state for r in env.store.list_for_booking("B2")] == [
        ReminderState.SENT,
        ReminderState.SENT,
        ReminderState.SENT,
        ReminderState.PENDING,
    ]
    assert {r.last_error for r in env.store.list_for_booking("B1")[:3]} == {
        "Dispatch timed out after 0.2s"
    }


def test_process_uses_record_recipient_name_when_booking_has_none(env):
    env.bookings.add(make_booking("B2", recipient_name="Grace Hopper"))
    generate_reminders("B2", env.bookings, env.store)
    env.bookings.add(make_booking("B2", recipient_name=None))
    record = _by_kind(env.store, "B2")[ReminderKind.T_MINUS_48H]

    env.processor.process(record, _NOW)

    assert "Hi Grace Hopper," in env.channel.sent[0]["text"]


def test_process_is_at_most_once(env):
    """A stale copy of an already processed record is not dispatched again."""
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]

    first = env.processor.process(record, _NOW)
    second = env.processor.process(record, _NOW + timedelta(minutes=1))

    assert first.state == ReminderState.SENT
    assert second is None
    assert len(env.channel.sent) == 1
    assert env.store.get(record.id).attempts == 1


def test_claimed_record_is_skipped_by_overlapping_run(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]
    # Another sweep claimed it a minute ago and is still dispatching.
    env.store.claim(record.id, _NOW - timedelta(minutes=1), _NOW - timedelta(hours=1))

    assert env.processor.process(record, _NOW) is None
    assert env.channel.sent == []
    assert env.store.get(record.id).state == ReminderState.PENDING


def test_stale_claim_is_taken_over(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]
    env.store.claim(record.id, _NOW - timedelta(hours=1), _NOW - timedelta(hours=2))

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.SENT
    assert result.attempts == 2


def test_cancelled_record_is_not_processed(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]
    cancel_for_booking("B1", env.store)

    assert env.processor.process(record, _NOW) is None
    assert env.store.get(record.id).state == ReminderState.CANCELLED
    assert env.store.get(record.id).attempts == 0


def test_cancellation_while_in_flight_keeps_cancelled(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]
    original_send = env.channel.send

    def send_then_cancel(*args):
        result = original_send(*args)
        cancel_for_booking("B1", env.store)
        return result

    env.channel.send = send_then_cancel

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.CANCELLED
    assert env.store.get(record.id).state == ReminderState.CANCELLED


def test_process_publishes_sent_and_failed_events(env):
    generate_reminders("B1", env.bookings, env.store)
    records = _by_kind(env.store)
    env.channel.failures["Starting Soon"] = "bounced"

    env.processor.process(records[ReminderKind.T_MINUS_48H], _NOW)
    env.processor.process(records[ReminderKind.T_MINUS_2H], _NOW)

    sent = [e for e in env.events if isinstance(e, ReminderSent)]
    failed = [e for e in env.events if isinstance(e, ReminderFailed)]
    assert [e.kind for e in sent] == [ReminderKind.T_MINUS_48H]
    assert sent[0].message_id == "msg-1"
    assert [e.kind for e in failed] == [ReminderKind.T_MINUS_2H]
    assert failed[0].error == "bounced"


def test_failing_event_handler_does_not_break_processing(env):
    generate_reminders("B1", env.bookings, env.store)
    record = _by_kind(env.store)[ReminderKind.T_MINUS_48H]

    def explode(event):
        raise RuntimeError("subscriber bug")

    env.bus.subscribe(ReminderSent, explode)

    result = env.processor.process(record, _NOW)

    assert result.state == ReminderState.SENT


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def test_batch_b1_scenario_with_one_dispatch_failure(env):
    generate_reminders("B1", env.bookings, env.store)
    env.channel.failures["Starting Soon"] = "mailbox full"

    result = env.processor.process_due_batch(_NOW)

    assert result.due == 3
    assert result.processed == 3
    assert result.sent == 2
    assert result.failed == 1
    assert result.skipped == 0

    records = _by_kind(env.store)
    assert records[ReminderKind.T_MINUS_48H].state == ReminderState.SENT
    assert records[ReminderKind.T_MINUS_24H].state == ReminderState.SENT
    failed = records[ReminderKind.T_MINUS_2H]
    assert failed.state == ReminderState.FAILED
    assert failed.attempts == 1
    assert failed.last_error == "mailbox full"
    assert records[ReminderKind.T_PLUS_2H].state == ReminderState.PENDING
    assert records[ReminderKind.T_PLUS_2H].attempts == 0


def test_batch_sends_oldest_first(env):
    generate_reminders("B1", env.bookings, env.store)

    env.processor.process_due_batch(_NOW)

    subjects = [m["subject"] for m in env.channel.sent]
    assert subjects[0].startswith("Get Ready!")
    assert subjects[1].startswith("Tomorrow")
    assert subjects[2].startswith("Starting Soon")


def test_batch_exception_in_one_record_does_not_abort_others(env):
    generate_reminders("B1", env.bookings, env.store)
    env.channel.errors["Get Ready"] = RuntimeError("boom")

    result = env.processor.process_due_batch(_NOW)

    assert result.processed == 3
    assert result.failed == 1
    assert result.sent == 2
    for record in env.store.list_for_booking("B1")[:3]:
        assert record.is_terminal


def test_batch_run_twice_processes_nothing_new(env):
    generate_reminders("B1", env.bookings, env.store)

    first = env.processor.process_due_batch(_NOW)
    second = env.processor.process_due_batch(_NOW)

    assert first.processed == 3
    assert second.due == 0
    assert second.processed == 0
    assert len(env.channel.sent) == 3


def test_batch_publishes_summary(env):
    generate_reminders("B1", env.bookings, env.store)

    env.processor.process_due_batch(_NOW)

    summaries = [e for e in env.events if isinstance(e, BatchProcessed)]
    assert len(summaries) == 1
    assert summaries[0].processed == 3
    assert summaries[0].now == _NOW


def test_batch_respects_limit(env):
    generate_reminders("B1", env.bookings, env.store)
    processor = ReminderProcessor(
        env.store, env.bookings, env.channel, max_workers=1, batch_limit=2
    )

    result = processor.process_due_batch(_NOW)

    assert result.processed == 2
    assert _by_kind(env.store)[ReminderKind.T_MINUS_2H].state == ReminderState.PENDING


def test_parallel_batch_across_bookings():
    store = InMemoryReminderStore()
    channel = FakeEmailChannel()
    bookings = BookingDirectory()
    for i in range(8):
        bookings.add(make_booking(f"B{i}"))
        generate_reminders(f"B{i}", bookings, store)
    channel.failures["Starting Soon"] = "rejected"

    processor = ReminderProcessor(store, bookings, channel, max_workers=4)
    result = processor.process_due_batch(_NOW)

    assert result.due == 24
    assert result.processed == 24
    assert result.sent == 16
    assert result.failed == 8
    assert len(channel.sent) == 16
    for i in range(8):
        states = [r.state for r in store.list_for_booking(f"B{i}")]
        assert states == [
            ReminderState.SENT,
            ReminderState.SENT,
            ReminderState.FAILED,
            ReminderState.PENDING,
        ]


class _BrokenStore(InMemoryReminderStore):
    def claim(self, reminder_id, now, stale_before):
        raise StoreUnavailable("connection refused")


def test_store_unavailable_propagates_from_batch(env):
    store = _BrokenStore()
    generate_reminders("B1", env.bookings, store)
    processor = ReminderProcessor(store, env.bookings, env.channel, max_workers=1)

    with pytest.raises(StoreUnavailable):
        processor.process_due_batch(_NOW)

    assert env.channel.sent == []

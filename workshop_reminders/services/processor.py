"""Reminder processor: claims due reminders, renders, dispatches, records outcome.

State machine (terminal states have no outgoing edges here)::

    PENDING --dispatch ok------> SENT
    PENDING --error------------> FAILED
    PENDING --booking cancelled-> CANCELLED   (cancellation handler)

A record is claimed with a compare-and-set before anything is sent, so
overlapping sweeps never dispatch the same reminder twice. ``attempts`` is
only ever incremented by that claim.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone, tzinfo

from workshop_reminders.config import Settings
from workshop_reminders.domain.bus import EventBus
from workshop_reminders.domain.errors import (
    BookingNotFound,
    DispatchFailure,
    StoreUnavailable,
)
from workshop_reminders.domain.events import BatchProcessed, ReminderFailed, ReminderSent
from workshop_reminders.domain.models import (
    BatchResult,
    DispatchResult,
    ReminderRecord,
    ReminderState,
    RenderedMessage,
    ensure_aware,
    utcnow,
)
from workshop_reminders.domain.ports import (
    BookingContextProvider,
    EmailChannel,
    ReminderStore,
)
from workshop_reminders.observability import get_logger
from workshop_reminders.services.reminders import select_due
from workshop_reminders.services.templates import TemplateCatalog, build_context

logger = get_logger(__name__)


class ReminderProcessor:
    """Drives due reminders through the state machine.

    Has no loop of its own: an external trigger (``/tick``, the worker
    command, cron) calls :meth:`process_due_batch` once per tick.
    """

    def __init__(
        self,
        store: ReminderStore,
        provider: BookingContextProvider,
        channel: EmailChannel,
        catalog: TemplateCatalog | None = None,
        bus: EventBus | None = None,
        *,
        dispatch_timeout: float = 30.0,
        max_workers: int = 4,
        claim_ttl: timedelta = timedelta(minutes=15),
        batch_limit: int | None = None,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._store = store
        self._provider = provider
        self._channel = channel
        self._catalog = catalog or TemplateCatalog()
        self._bus = bus
        self._dispatch_timeout = dispatch_timeout
        self._max_workers = max(1, max_workers)
        self._claim_ttl = claim_ttl
        self._batch_limit = batch_limit
        self._tz = tz

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ReminderStore,
        provider: BookingContextProvider,
        channel: EmailChannel,
        catalog: TemplateCatalog | None = None,
        bus: EventBus | None = None,
    ) -> ReminderProcessor:
        return cls(
            store,
            provider,
            channel,
            catalog,
            bus,
            dispatch_timeout=settings.dispatch_timeout_seconds,
            max_workers=settings.max_workers,
            claim_ttl=timedelta(seconds=settings.claim_ttl_seconds),
            batch_limit=settings.effective_batch_limit(),
            tz=settings.tz(),
        )

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    def process(
        self, record: ReminderRecord, now: datetime | None = None
    ) -> ReminderRecord | None:
        """Process one reminder and return it in its final state.

        Returns None when the record could not be claimed (already handled
        or being handled by another sweep, or no longer PENDING). Per-record
        errors end in FAILED; only ``StoreUnavailable`` propagates.
        """
        now = ensure_aware(now or utcnow())
        log = logger.bind(
            reminder_id=record.id, booking_id=record.booking_id, kind=record.kind.value
        )

        claimed = self._store.claim(record.id, now, now - self._claim_ttl)
        if claimed is None:
            log.info("Reminder not claimable, skipping")
            return None
        log.info("Processing reminder", attempts=claimed.attempts, to=claimed.recipient_email)

        try:
            message = self._render(claimed)
            result = self._dispatch(claimed.recipient_email, message)
        except StoreUnavailable:
            raise
        except (BookingNotFound, DispatchFailure) as exc:
            return self._finish(claimed, ReminderState.FAILED, now, error=str(exc))
        except Exception as exc:
            log.exception("Unexpected error while processing reminder")
            return self._finish(
                claimed, ReminderState.FAILED, now, error=f"{type(exc).__name__}: {exc}"
            )
        return self._finish(claimed, ReminderState.SENT, now, message_id=result.message_id)

    def _render(self, record: ReminderRecord) -> RenderedMessage:
        booking = self._provider.get_booking_context(record.booking_id)
        context = build_context(booking, self._tz)
        if not booking.recipient_name and record.recipient_name:
            context["attendeeName"] = record.recipient_name
        return self._catalog.render_message(record.kind, context)

    def _dispatch(self, to: str, message: RenderedMessage) -> DispatchResult:
        """Send on a dedicated thread and wait at most ``dispatch_timeout``.

        The clock starts when the send starts, so a hung send never eats
        into the time budget of the reminders dispatched after it. A thread
        that outlives the timeout is abandoned (daemon) and its late result
        is discarded.
        """
        outcome: dict[str, object] = {}

        def send() -> None:
            try:
                outcome["result"] = self._channel.send(
                    to, message.subject, message.html_body, message.text_body
                )
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=send, name="reminder-dispatch", daemon=True)
        worker.start()
        worker.join(self._dispatch_timeout)
        if worker.is_alive():
            raise DispatchFailure(f"Dispatch timed out after {self._dispatch_timeout:g}s")
        if "error" in outcome:
            raise outcome["error"]
        result = outcome["result"]
        if not result.success:
            raise DispatchFailure(result.error or "Failed to send email")
        return result

    def _finish(
        self,
        claimed: ReminderRecord,
        target: ReminderState,
        now: datetime,
        error: str | None = None,
        message_id: str | None = None,
    ) -> ReminderRecord | None:
        log = logger.bind(
            reminder_id=claimed.id, booking_id=claimed.booking_id, kind=claimed.kind.value
        )
        updated = self._store.transition(
            claimed.id, ReminderState.PENDING, target, now, error=error
        )
        if updated is None:
            current = self._store.get(claimed.id)
            log.warning(
                "Reminder left PENDING while in flight; outcome not recorded",
                outcome=target.value,
                current_state=current.state.value if current else None,
                error=error,
            )
            return current

        if target == ReminderState.SENT:
            log.info("Reminder sent", message_id=message_id, attempts=updated.attempts)
            self._publish(
                ReminderSent(
                    reminder_id=updated.id,
                    booking_id=updated.booking_id,
                    kind=updated.kind,
                    sent_at=updated.sent_at or now,
                    message_id=message_id,
                )
            )
        else:
            log.warning("Reminder failed", error=error, attempts=updated.attempts)
            self._publish(
                ReminderFailed(
                    reminder_id=updated.id,
                    booking_id=updated.booking_id,
                    kind=updated.kind,
                    error=error or "",
                    failed_at=now,
                )
            )
        return updated

    def _publish(self, event: object) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish(event)
        except Exception:
            logger.exception("Event handler failed", event_type=type(event).__name__)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_due_batch(self, now: datetime | None = None) -> BatchResult:
        """Process every due reminder once.

        Reminders of one booking run in order on one thread; different
        bookings run in parallel up to ``max_workers``. ``StoreUnavailable``
        aborts the batch and propagates.
        """
        now = ensure_aware(now or utcnow())
        due = select_due(self._store, now, limit=self._batch_limit)
        logger.info("Found due reminders", due=len(due), now=now.isoformat())

        groups: dict[str, list[ReminderRecord]] = defaultdict(list)
        for record in due:
            groups[record.booking_id].append(record)

        outcomes: list[ReminderRecord | None] = []
        if self._max_workers == 1 or len(groups) <= 1:
            for records in groups.values():
                outcomes.extend(self._process_group(records, now))
        else:
            workers = min(self._max_workers, len(groups))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="reminder-batch"
            ) as pool:
                futures = [
                    pool.submit(self._process_group, records, now)
                    for records in groups.values()
                ]
                for future in futures:
                    outcomes.extend(future.result())

        result = BatchResult(
            now=now,
            due=len(due),
            processed=sum(1 for o in outcomes if o is not None),
            sent=sum(1 for o in outcomes if o is not None and o.state == ReminderState.SENT),
            failed=sum(
                1 for o in outcomes if o is not None and o.state == ReminderState.FAILED
            ),
            skipped=sum(1 for o in outcomes if o is None),
        )
        logger.info(
            "Reminder batch complete",
            due=result.due,
            processed=result.processed,
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
        )
        self._publish(BatchProcessed(**result.model_dump()))
        return result

    def _process_group(
        self, records: list[ReminderRecord], now: datetime
    ) -> list[ReminderRecord | None]:
        return [self.process(record, now) for record in records]

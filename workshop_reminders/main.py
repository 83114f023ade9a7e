"""FastAPI application: HTTP surface of the reminder pipeline."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from workshop_reminders.bootstrap import Pipeline, build_pipeline
from workshop_reminders.config import get_settings
from workshop_reminders.domain.errors import (
    AlreadyScheduled,
    BookingNotFound,
    ReminderNotFound,
    StoreUnavailable,
)
from workshop_reminders.domain.events import BookingConfirmed
from workshop_reminders.domain.models import (
    BatchResult,
    BookingContext,
    CancelResponse,
    ReminderRecord,
    utcnow,
)
from workshop_reminders.observability import setup_logging
from workshop_reminders.services.cancellation import cancel_for_booking
from workshop_reminders.services.reminders import (
    generate_reminders,
    get_reminder_history,
    select_due,
)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    """Build the app around *pipeline*, or around one built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = pipeline.settings if pipeline is not None else get_settings()
        setup_logging(settings.log_level, settings.log_json)
        if pipeline is None:
            app.state.pipeline = build_pipeline(settings)
        yield
        app.state.pipeline.close()

    app = FastAPI(title="Workshop Reminder Service", lifespan=lifespan)
    if pipeline is not None:
        app.state.pipeline = pipeline

    # ── Error mapping ─────────────────────────────────────────────────

    @app.exception_handler(BookingNotFound)
    @app.exception_handler(ReminderNotFound)
    async def _not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(AlreadyScheduled)
    async def _conflict(request: Request, exc: AlreadyScheduled) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def _unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Reminder store unavailable"},
        )

    # ── Routes ────────────────────────────────────────────────────────

    @app.post(
        "/bookings",
        response_model=list[ReminderRecord],
        status_code=status.HTTP_201_CREATED,
    )
    def confirm_booking(
        booking: BookingContext, p: Pipeline = Depends(get_pipeline)
    ) -> list[ReminderRecord]:
        """Register a confirmed booking and schedule its reminders."""
        if p.directory is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Bookings are resolved by the configured booking provider",
            )
        p.directory.add(booking)
        p.bus.publish(BookingConfirmed(booking_id=booking.booking_id))
        return get_reminder_history(p.store, booking.booking_id)

    @app.post(
        "/bookings/{booking_id}/reminders",
        response_model=list[ReminderRecord],
        status_code=status.HTTP_201_CREATED,
    )
    def schedule_booking_reminders(
        booking_id: str, p: Pipeline = Depends(get_pipeline)
    ) -> list[ReminderRecord]:
        """Create the reminder schedule for a confirmed booking."""
        return generate_reminders(booking_id, p.provider, p.store, bus=p.bus)

    @app.get("/bookings/{booking_id}/reminders", response_model=list[ReminderRecord])
    def reminder_history(
        booking_id: str, p: Pipeline = Depends(get_pipeline)
    ) -> list[ReminderRecord]:
        """Return every reminder of a booking, in schedule order."""
        return get_reminder_history(p.store, booking_id)

    @app.post("/bookings/{booking_id}/reminders/cancel", response_model=CancelResponse)
    def cancel_booking_reminders(
        booking_id: str, p: Pipeline = Depends(get_pipeline)
    ) -> CancelResponse:
        """Cancel the booking's outstanding reminders."""
        cancelled = cancel_for_booking(booking_id, p.store, bus=p.bus)
        return CancelResponse(booking_id=booking_id, cancelled=cancelled)

    @app.get("/reminders/due", response_model=list[ReminderRecord])
    def due_reminders(
        now: datetime | None = None, p: Pipeline = Depends(get_pipeline)
    ) -> list[ReminderRecord]:
        """List reminders that are due at *now* without processing them."""
        return select_due(p.store, now or utcnow())

    @app.get("/reminders/{reminder_id}", response_model=ReminderRecord)
    def get_reminder(reminder_id: str, p: Pipeline = Depends(get_pipeline)) -> ReminderRecord:
        record = p.store.get(reminder_id)
        if record is None:
            raise ReminderNotFound(reminder_id)
        return record

    @app.post("/tick", response_model=BatchResult)
    def tick(now: datetime | None = None, p: Pipeline = Depends(get_pipeline)) -> BatchResult:
        """Process every reminder due at *now*.

        Pass *now* as a query param to control the simulated clock.
        Defaults to the current UTC time when omitted.
        """
        return p.processor.process_due_batch(now)

    return app


app = create_app()

"""
One-shot reminder job.

Runs a single sweep over due reminders and exits; schedule it from cron
(e.g. every 5 minutes). Exit code 0 on success, 1 if the sweep failed.
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone

import dateparser

from workshop_reminders.bootstrap import build_pipeline
from workshop_reminders.config import get_settings
from workshop_reminders.domain.errors import ReminderError
from workshop_reminders.domain.ports import BookingContextProvider
from workshop_reminders.observability import get_logger, setup_logging

logger = get_logger(__name__)


def parse_now(raw: str | None) -> datetime | None:
    """Parse an ISO timestamp or a phrase like ``in 2 hours`` as UTC."""
    if raw is None:
        return None
    parsed = dateparser.parse(
        raw,
        settings={
            "TIMEZONE": "UTC",
            "RETURN_AS_TIMEZONE_AWARE": True,
            "PREFER_DATES_FROM": "future",
        },
    )
    if parsed is None:
        raise ValueError(f"Could not understand time: {raw!r}")
    return parsed.astimezone(timezone.utc)


def run(
    now: datetime | None = None, provider: BookingContextProvider | None = None
) -> int:
    """Process one batch.

    Bookings are resolved through *provider* or, when none is passed, the
    provider named by ``REMINDERS_BOOKING_PROVIDER``. With neither the job
    refuses to run: a worker process has no bookings of its own, and every
    due reminder would fail for good.
    """
    settings = get_settings()
    if provider is None and not settings.booking_provider:
        logger.error(
            "No booking provider configured; set REMINDERS_BOOKING_PROVIDER "
            "to 'package.module:attribute'"
        )
        return 1
    if settings.store_backend == "memory":
        logger.warning("In-memory store starts empty; set REMINDERS_STORE_BACKEND=sql")
    try:
        pipeline = build_pipeline(settings, provider=provider)
    except ReminderError:
        logger.exception("Reminder job could not start")
        return 1
    try:
        result = pipeline.processor.process_due_batch(now)
    except ReminderError:
        logger.exception("Reminder job failed")
        return 1
    finally:
        pipeline.close()
    logger.info("Reminder job complete", **result.model_dump(mode="json"))
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="Process due workshop reminders once.")
    parser.add_argument("--now", help="Override the current time (ISO or natural language).")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    try:
        now = parse_now(args.now)
    except ValueError as exc:
        parser.error(str(exc))
    sys.exit(run(now))


if __name__ == "__main__":
    main()

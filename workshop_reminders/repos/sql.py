"""SQLAlchemy-backed reminder store.

One ``reminder_schedules`` row per (booking, kind), enforced by a unique
constraint; due-reminder sweeps use the (state, scheduled_for) index.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from workshop_reminders.domain.errors import AlreadyScheduled, StoreUnavailable
from workshop_reminders.domain.models import ReminderRecord, ReminderState
from workshop_reminders.observability import get_logger

logger = get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes stored as UTC.

    SQLite has no zone support, so values are stored naive and re-tagged
    as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class ReminderRow(Base):
    __tablename__ = "reminder_schedules"

    id = Column(String, primary_key=True)
    booking_id = Column(String, nullable=False)
    workshop_id = Column(String, nullable=False, index=True)
    recipient_email = Column(String, nullable=False)
    recipient_name = Column(String, nullable=True)
    event_time = Column(UTCDateTime, nullable=False)
    kind = Column(String(20), nullable=False)
    scheduled_for = Column(UTCDateTime, nullable=False)
    state = Column(String(20), nullable=False, default=ReminderState.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("booking_id", "kind", name="uq_reminder_booking_kind"),
        Index("idx_reminders_pending", "state", "scheduled_for"),
        Index("idx_reminders_booking", "booking_id"),
    )

    def __repr__(self) -> str:
        return f"<ReminderRow {self.id} kind={self.kind} state={self.state}>"


def create_store_engine(database_url: str) -> Engine:
    """Build an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def _to_row(record: ReminderRecord) -> ReminderRow:
    values = record.model_dump()
    values["kind"] = record.kind.value
    values["state"] = record.state.value
    return ReminderRow(**values)


def _to_record(row: ReminderRow) -> ReminderRecord:
    return ReminderRecord.model_validate(row, from_attributes=True)


class SqlReminderStore:
    """ReminderStore over a relational table; CAS operations are single UPDATEs."""

    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_schema:
            try:
                Base.metadata.create_all(engine)
            except DBAPIError as exc:
                raise StoreUnavailable(f"Cannot initialise reminder schema: {exc}") from exc

    @classmethod
    def from_url(cls, database_url: str) -> SqlReminderStore:
        return cls(create_store_engine(database_url))

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _begin(self) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as exc:
            logger.error("Reminder store unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _fetch(self, session: Session, reminder_id: str) -> ReminderRecord | None:
        row = session.execute(
            select(ReminderRow).where(ReminderRow.id == reminder_id)
        ).scalar_one_or_none()
        return _to_record(row) if row is not None else None

    def add_many(self, records: list[ReminderRecord]) -> None:
        if not records:
            return
        try:
            with self._begin() as session:
                session.add_all(_to_row(record) for record in records)
        except IntegrityError as exc:
            raise AlreadyScheduled(records[0].booking_id) from exc

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._begin() as session:
            return self._fetch(session, reminder_id)

    def list_for_booking(self, booking_id: str) -> list[ReminderRecord]:
        with self._begin() as session:
            rows = session.execute(
                select(ReminderRow)
                .where(ReminderRow.booking_id == booking_id)
                .order_by(ReminderRow.scheduled_for)
            ).scalars()
            return [_to_record(row) for row in rows]

    def list_due(self, now: datetime, limit: int | None = None) -> list[ReminderRecord]:
        stmt = (
            select(ReminderRow)
            .where(
                ReminderRow.state == ReminderState.PENDING.value,
                ReminderRow.scheduled_for <= now,
            )
            .order_by(ReminderRow.scheduled_for, ReminderRow.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._begin() as session:
            return [_to_record(row) for row in session.execute(stmt).scalars()]

    def claim(
        self, reminder_id: str, now: datetime, stale_before: datetime
    ) -> ReminderRecord | None:
        stmt = (
            update(ReminderRow)
            .where(
                ReminderRow.id == reminder_id,
                ReminderRow.state == ReminderState.PENDING.value,
                or_(
                    ReminderRow.claimed_at.is_(None),
                    ReminderRow.claimed_at <= stale_before,
                ),
            )
            .values(
                attempts=ReminderRow.attempts + 1,
                last_attempt_at=now,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._begin() as session:
            if session.execute(stmt).rowcount != 1:
                return None
            return self._fetch(session, reminder_id)

    def transition(
        self,
        reminder_id: str,
        expected: ReminderState,
        target: ReminderState,
        now: datetime,
        error: str | None = None,
    ) -> ReminderRecord | None:
        values: dict = {"state": target.value, "updated_at": now}
        if target == ReminderState.SENT:
            values["sent_at"] = now
        if error is not None:
            values["last_error"] = error
        stmt = (
            update(ReminderRow)
            .where(ReminderRow.id == reminder_id, ReminderRow.state == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._begin() as session:
            if session.execute(stmt).rowcount != 1:
                return None
            return self._fetch(session, reminder_id)

    def cancel_pending(self, booking_id: str, now: datetime) -> int:
        stmt = (
            update(ReminderRow)
            .where(
                ReminderRow.booking_id == booking_id,
                ReminderRow.state == ReminderState.PENDING.value,
            )
            .values(state=ReminderState.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self._begin() as session:
            return session.execute(stmt).rowcount

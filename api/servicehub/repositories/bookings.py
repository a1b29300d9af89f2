"""Booking persistence.

``save`` applies a BookingChange as a single conditional UPDATE keyed on the
booking id, the version the change was computed from and the change's
guards, followed by the history inserts, all in one transaction. If the row
moved on in the meantime nothing is written and StaleBooking is raised; the
caller reloads and re-decides (see ``apply_change``). There is no in-process locking, so this holds
across any number of worker instances.
"""

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicehub.core.errors import NotFound, StaleBooking
from servicehub.domain.booking import Booking, BookingStatus, PaymentStatus, StatusChange, from_row, to_row
from servicehub.models.booking import BookingRecord, StatusChangeRecord
from servicehub.services.booking_state import BookingChange

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class BookingRepository(Protocol):
    async def get(self, booking_id: int) -> Booking | None: ...

    async def add(self, booking: Booking) -> Booking: ...

    async def save(self, change: BookingChange) -> Booking: ...

    async def find(
        self,
        *,
        customer_id: str | None = None,
        provider_id: str | None = None,
        status: BookingStatus | None = None,
        payment_status: PaymentStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Booking], int]: ...


def _history_record(booking_id: int, entry: StatusChange) -> StatusChangeRecord:
    return StatusChangeRecord(
        booking_id=booking_id,
        status=entry.status,
        changed_by=entry.changed_by,
        changed_at=entry.changed_at,
        reason=entry.reason,
        comments=entry.comments,
    )


def _to_domain(record: BookingRecord) -> Booking:
    row = {column.key: getattr(record, column.key) for column in BookingRecord.__table__.columns}
    history = tuple(
        StatusChange(
            status=BookingStatus(h.status),
            changed_by=h.changed_by,
            changed_at=h.changed_at,
            reason=h.reason,
            comments=h.comments,
        )
        for h in record.status_history
    )
    return from_row(row, history)


class SqlBookingRepository:
    """BookingRepository backed by PostgreSQL. Each call runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, booking_id: int) -> Booking | None:
        async with self._session_factory() as db:
            record = await db.get(BookingRecord, booking_id)
            return _to_domain(record) if record else None

    async def add(self, booking: Booking) -> Booking:
        async with self._session_factory() as db, db.begin():
            record = BookingRecord(**to_row(booking), version=0)
            db.add(record)
            await db.flush()
            db.add_all(_history_record(record.id, entry) for entry in booking.status_history)
            booking_id = record.id

        logger.info("Booking created: %s (id=%s)", booking.booking_number, booking_id)
        return await self.get(booking_id)

    async def save(self, change: BookingChange) -> Booking:
        booking_id = change.previous.id
        conditions = [BookingRecord.id == booking_id, BookingRecord.version == change.expected_version]
        for guard in change.guards:
            column = getattr(BookingRecord, guard.column)
            conditions.append(column.is_(None) if guard.value is None else column == guard.value)

        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(BookingRecord)
                .where(*conditions)
                .values(**change.updates, version=BookingRecord.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleBooking("Booking was modified concurrently")
            db.add_all(_history_record(booking_id, entry) for entry in change.history)

        return replace(change.booking, version=change.expected_version + 1)

    async def find(
        self,
        *,
        customer_id: str | None = None,
        provider_id: str | None = None,
        status: BookingStatus | None = None,
        payment_status: PaymentStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Booking], int]:
        filters = []
        if customer_id is not None:
            filters.append(BookingRecord.customer_id == customer_id)
        if provider_id is not None:
            filters.append(BookingRecord.provider_id == provider_id)
        if status is not None:
            filters.append(BookingRecord.status == status)
        if payment_status is not None:
            filters.append(BookingRecord.payment_status == payment_status)

        async with self._session_factory() as db:
            total = await db.scalar(select(func.count()).select_from(BookingRecord).where(*filters))
            result = await db.execute(
                select(BookingRecord)
                .where(*filters)
                .order_by(BookingRecord.scheduled_date.desc())
                .offset(offset)
                .limit(limit)
            )
            return [_to_domain(r) for r in result.scalars().all()], total or 0


async def load_booking(repository: BookingRepository, booking_id: int) -> Booking:
    booking = await repository.get(booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


async def apply_change(
    repository: BookingRepository,
    booking_id: int,
    plan: Callable[[Booking], BookingChange | None],
    *,
    attempts: int = MAX_WRITE_ATTEMPTS,
) -> tuple[Booking, bool]:
    """Decide a change from the latest snapshot and write it, re-deciding on conflict.

    ``plan`` returns None when there is nothing to do. Returns the resulting
    booking and whether a write happened.
    """
    for attempt in range(1, attempts + 1):
        booking = await load_booking(repository, booking_id)
        change = plan(booking)
        if change is None:
            return booking, False
        try:
            return await repository.save(change), True
        except StaleBooking:
            logger.info("Booking %s changed concurrently (attempt %d), re-evaluating", booking_id, attempt)
    raise StaleBooking("Booking is being modified by another request, please retry")

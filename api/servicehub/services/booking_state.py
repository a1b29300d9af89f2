"""Booking state machine.

Owns the booking status transition table, the payment sub-state table and the
side effects bound to each change. Every operation takes a Booking snapshot
and returns a BookingChange: the new snapshot, the history entries to append
and the guards the conditional write must satisfy. Persistence is left to the
repository, which applies a change as one atomic, version-checked write.

Permission checks are the caller's job; this module assumes the actor is
allowed to make the change.
"""

import dataclasses
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from servicehub.core.errors import InvalidState, InvalidTransition, ValidationFailed
from servicehub.domain.booking import (
    Booking,
    BookingStatus,
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    StatusChange,
    WorkSummary,
    to_row,
)
from servicehub.services.pricing import compute_refund_amount, round_amount

TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, allowed in TRANSITIONS.items() if not allowed)
WORK_SUMMARY_STATUSES = frozenset({BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED})

# Recorded work duration, minutes
MIN_ACTUAL_DURATION = 1
MAX_ACTUAL_DURATION = 1440

# Work summary limits
MAX_DESCRIPTION_LENGTH = 1000
MAX_NOTES_LENGTH = 500
MAX_IMAGES = 10
MAX_MATERIALS = 50


@dataclass(frozen=True)
class Guard:
    """A column condition the conditional write must match (None means IS NULL)."""

    column: str
    value: Any = None


@dataclass(frozen=True)
class BookingChange:
    previous: Booking
    booking: Booking
    history: tuple[StatusChange, ...] = ()
    guards: tuple[Guard, ...] = ()

    @property
    def expected_version(self) -> int:
        return self.previous.version

    @property
    def updates(self) -> dict[str, Any]:
        """Columns whose value differs between the previous and new snapshot."""
        before = to_row(self.previous)
        after = to_row(self.booking)
        return {column: value for column, value in after.items() if before[column] != value}

    def then(self, other: "BookingChange") -> "BookingChange":
        """Chain a change computed from this change's result into one write."""
        if other.previous is not self.booking:
            raise ValueError("Changes must be chained on the resulting snapshot")
        return BookingChange(
            previous=self.previous,
            booking=other.booking,
            history=self.history + other.history,
            guards=self.guards + tuple(g for g in other.guards if g not in self.guards),
        )


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def generate_booking_number(now: datetime | None = None) -> str:
    """Human-readable number: BK + last 6 digits of epoch millis + 6 hex chars.

    Uniqueness is enforced by the database constraint, not checked here.
    """
    millis = str(int(_now(now).timestamp() * 1000))
    return f"BK{millis[-6:]}{secrets.token_hex(3).upper()}"


def can_transition(current: BookingStatus, requested: BookingStatus) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def transition(
    booking: Booking,
    new_status: BookingStatus,
    changed_by: str,
    reason: str | None = None,
    comments: str | None = None,
    *,
    now: datetime | None = None,
) -> BookingChange:
    """Move a booking to ``new_status``, applying the side effects of the target status."""
    new_status = BookingStatus(new_status)
    if not can_transition(booking.status, new_status):
        raise InvalidTransition(booking.status.value, new_status.value)

    now = _now(now)
    fields: dict[str, Any] = {"status": new_status}

    if new_status == BookingStatus.CANCELLED:
        fields["cancellation_date"] = now
        fields["cancellation_reason"] = reason

    elif new_status == BookingStatus.IN_PROGRESS:
        summary = booking.work_summary or WorkSummary()
        if summary.work_start_time is None:
            fields["work_summary"] = replace(summary, work_start_time=now)

    elif new_status == BookingStatus.COMPLETED:
        summary = booking.work_summary
        if summary is not None and summary.work_end_time is None:
            fields["work_summary"] = replace(summary, work_end_time=now)
            if summary.work_start_time is not None:
                minutes = (now - summary.work_start_time).total_seconds() / 60
                fields["actual_duration"] = max(MIN_ACTUAL_DURATION, min(MAX_ACTUAL_DURATION, round_amount(minutes)))

    entry = StatusChange(status=new_status, changed_by=changed_by, changed_at=now, reason=reason, comments=comments)
    fields["status_history"] = booking.status_history + (entry,)
    return BookingChange(previous=booking, booking=replace(booking, **fields), history=(entry,))


def cancel(
    booking: Booking,
    changed_by: str,
    cancelled_by: CancelledBy,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> BookingChange:
    """Cancel a booking, recording who cancelled and the refund it qualifies for."""
    if booking.status == BookingStatus.CANCELLED:
        raise InvalidState("Booking is already cancelled")
    if booking.status in (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
        raise InvalidState(f"Cannot cancel booking in {booking.status.value} status")

    now = _now(now)
    change = transition(booking, BookingStatus.CANCELLED, changed_by, reason, now=now)
    cancelled = replace(
        change.booking,
        cancelled_by=CancelledBy(cancelled_by),
        refund_amount=calculate_refund(booking, now),
    )
    return replace(change, booking=cancelled)


def calculate_refund(booking: Booking, now: datetime | None = None) -> int:
    return compute_refund_amount(booking.pricing.total_amount, booking.scheduled_date, _now(now))


def add_work_summary(booking: Booking, fields: Mapping[str, Any]) -> BookingChange:
    """Merge the given fields into the booking's work summary."""
    if booking.status not in WORK_SUMMARY_STATUSES:
        raise InvalidState("Can only add work summary to in-progress or completed bookings")

    known = {f.name for f in dataclasses.fields(WorkSummary)}
    unknown = set(fields) - known
    if unknown:
        raise ValidationFailed(f"Unknown work summary fields: {', '.join(sorted(unknown))}")

    merged = {k: tuple(v) if isinstance(v, list) else v for k, v in fields.items() if v is not None}
    summary = replace(booking.work_summary or WorkSummary(), **merged)
    _check_work_summary(summary)
    return BookingChange(previous=booking, booking=replace(booking, work_summary=summary))


def _check_work_summary(summary: WorkSummary) -> None:
    if summary.work_description and len(summary.work_description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationFailed(f"Work description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
    if summary.additional_notes and len(summary.additional_notes) > MAX_NOTES_LENGTH:
        raise ValidationFailed(f"Additional notes cannot exceed {MAX_NOTES_LENGTH} characters")
    if len(summary.before_images) > MAX_IMAGES or len(summary.after_images) > MAX_IMAGES:
        raise ValidationFailed(f"Cannot have more than {MAX_IMAGES} images")
    if len(summary.materials_used) > MAX_MATERIALS:
        raise ValidationFailed(f"Cannot have more than {MAX_MATERIALS} materials")


def update_payment_status(
    booking: Booking,
    status: PaymentStatus,
    transaction_id: str | None = None,
    method: PaymentMethod | None = None,
    amount: int | None = None,
    *,
    now: datetime | None = None,
) -> BookingChange:
    """Set the payment sub-state. Independent of the booking status table."""
    status = PaymentStatus(status)
    current = booking.payment.status
    if status not in PAYMENT_TRANSITIONS[current]:
        raise InvalidState(f"Cannot change payment status from {current.value} to {status.value}")

    fields: dict[str, Any] = {"status": status}
    if transaction_id:
        fields["transaction_id"] = transaction_id
    if method:
        fields["method"] = PaymentMethod(method)
    if amount is not None:
        fields["paid_amount"] = amount
        fields["paid_at"] = _now(now)

    payment = replace(booking.payment, **fields)
    return BookingChange(previous=booking, booking=replace(booking, payment=payment))


def claim_refund(booking: Booking, key: str, *, replacing: str | None = None) -> BookingChange:
    """Reserve the booking's single refund for the request identified by ``key``.

    The write only succeeds while no refund is recorded and the claim slot
    holds ``replacing`` (normally empty), so two concurrent refund requests
    cannot both reach the gateway.
    """
    payment = replace(booking.payment, refund_claim_key=key)
    return BookingChange(
        previous=booking,
        booking=replace(booking, payment=payment),
        guards=(Guard("refund_transaction_id"), Guard("refund_claim_key", replacing)),
    )


def release_refund_claim(booking: Booking, key: str) -> BookingChange:
    payment = replace(booking.payment, refund_claim_key=None)
    return BookingChange(
        previous=booking,
        booking=replace(booking, payment=payment),
        guards=(Guard("refund_claim_key", key),),
    )


def record_refund(
    booking: Booking,
    refund_transaction_id: str,
    amount: int,
    *,
    now: datetime | None = None,
) -> BookingChange:
    """Record a gateway refund against a paid booking.

    Full refund when the refunded amount equals the total owed, partial
    otherwise. Guarded on the absence of a recorded refund transaction.
    """
    status = (
        PaymentStatus.REFUNDED if amount == booking.pricing.total_amount else PaymentStatus.PARTIALLY_REFUNDED
    )
    if status not in PAYMENT_TRANSITIONS[booking.payment.status]:
        raise InvalidState(f"Cannot record a refund for a {booking.payment.status.value} payment")

    payment = replace(
        booking.payment,
        status=status,
        refund_transaction_id=refund_transaction_id,
        refund_amount=amount,
        refunded_at=_now(now),
        refund_claim_key=None,
    )
    return BookingChange(
        previous=booking,
        booking=replace(booking, payment=payment),
        guards=(Guard("refund_transaction_id"),),
    )

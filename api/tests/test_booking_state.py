"""Booking state machine: transition table, side effects, payment sub-state and refund bookkeeping."""

import itertools
import re
from datetime import timedelta

import pytest
from fakes import CUSTOMER, NOW, PROVIDER, make_booking, paid

from servicehub.core.errors import InvalidState, InvalidTransition, ValidationFailed
from servicehub.domain.booking import (
    BookingStatus,
    CancelledBy,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    WorkSummary,
)
from servicehub.services import booking_state
from servicehub.services.booking_state import TRANSITIONS, Guard


def _step(booking, status, at=NOW):
    return booking_state.transition(booking, status, PROVIDER.identity, now=at).booking


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "requested"),
        [(c, r) for c, allowed in TRANSITIONS.items() for r in allowed],
    )
    def test_legal_transitions(self, current, requested):
        booking = make_booking(status=current)
        change = booking_state.transition(booking, requested, PROVIDER.identity, now=NOW)
        assert change.booking.status == requested
        assert change.history[-1].status == requested

    @pytest.mark.parametrize(
        ("current", "requested"),
        [(c, r) for c, r in itertools.product(BookingStatus, BookingStatus) if r not in TRANSITIONS[c]],
    )
    def test_illegal_transitions(self, current, requested):
        booking = make_booking(status=current)
        with pytest.raises(InvalidTransition) as exc:
            booking_state.transition(booking, requested, PROVIDER.identity, now=NOW)
        assert booking.status == current
        assert exc.value.message == f"Cannot change status from {current.value} to {requested.value}"

    def test_terminal_statuses(self):
        assert booking_state.TERMINAL_STATUSES == {
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
            BookingStatus.NO_SHOW,
        }

    def test_history_only_grows(self):
        booking = make_booking()
        seen = booking.status_history
        for status in (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
            booking = _step(booking, status)
            assert len(booking.status_history) == len(seen) + 1
            assert booking.status_history[: len(seen)] == seen
            seen = booking.status_history

    def test_history_entry_records_actor_reason_and_comments(self):
        change = booking_state.transition(
            make_booking(), BookingStatus.CONFIRMED, PROVIDER.identity, "Accepted", "See you soon", now=NOW
        )
        entry = change.history[0]
        assert (entry.changed_by, entry.changed_at, entry.reason, entry.comments) == (
            PROVIDER.identity,
            NOW,
            "Accepted",
            "See you soon",
        )

    def test_updates_only_touch_changed_columns(self):
        change = booking_state.transition(make_booking(), BookingStatus.CONFIRMED, PROVIDER.identity, now=NOW)
        assert change.updates == {"status": BookingStatus.CONFIRMED}
        assert change.expected_version == 0


class TestSideEffects:
    def test_cancel_via_transition_sets_cancellation_fields(self):
        booking = _step(make_booking(), BookingStatus.CANCELLED)
        assert booking.cancellation_date == NOW
        change = booking_state.transition(make_booking(), BookingStatus.CANCELLED, CUSTOMER.identity, "Changed plans")
        assert change.booking.cancellation_reason == "Changed plans"

    def test_start_sets_work_start_time(self):
        booking = _step(make_booking(status=BookingStatus.CONFIRMED), BookingStatus.IN_PROGRESS)
        assert booking.work_summary.work_start_time == NOW

    def test_start_keeps_existing_start_time(self):
        earlier = NOW - timedelta(minutes=5)
        booking = make_booking(status=BookingStatus.CONFIRMED, work_summary=WorkSummary(work_start_time=earlier))
        assert _step(booking, BookingStatus.IN_PROGRESS).work_summary.work_start_time == earlier

    def test_complete_sets_end_time_and_duration(self):
        booking = _step(make_booking(status=BookingStatus.CONFIRMED), BookingStatus.IN_PROGRESS)
        booking = _step(booking, BookingStatus.COMPLETED, at=NOW + timedelta(minutes=90))
        assert booking.work_summary.work_end_time == NOW + timedelta(minutes=90)
        assert booking.actual_duration == 90

    @pytest.mark.parametrize(("elapsed", "expected"), [(timedelta(seconds=20), 1), (timedelta(hours=30), 1440)])
    def test_duration_is_clamped(self, elapsed, expected):
        booking = _step(make_booking(status=BookingStatus.CONFIRMED), BookingStatus.IN_PROGRESS)
        booking = _step(booking, BookingStatus.COMPLETED, at=NOW + elapsed)
        assert booking.actual_duration == expected


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    def test_records_canceller_and_refund_preview(self):
        change = booking_state.cancel(make_booking(), CUSTOMER.identity, CancelledBy.CUSTOMER, "Not needed", now=NOW)
        booking = change.booking
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancelled_by == CancelledBy.CUSTOMER
        assert booking.refund_amount == 1000
        assert len(change.history) == 1

    def test_refund_preview_follows_tiers(self):
        booking = make_booking(scheduled_in=timedelta(hours=6))
        change = booking_state.cancel(booking, CUSTOMER.identity, CancelledBy.CUSTOMER, now=NOW)
        assert change.booking.refund_amount == 500

    @pytest.mark.parametrize(
        "status", [BookingStatus.CANCELLED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED]
    )
    def test_rejects_late_statuses(self, status):
        with pytest.raises(InvalidState):
            booking_state.cancel(make_booking(status=status), CUSTOMER.identity, CancelledBy.CUSTOMER, now=NOW)


# ---------------------------------------------------------------------------
# Payment sub-state
# ---------------------------------------------------------------------------


class TestPaymentStatus:
    def test_mark_paid(self):
        change = booking_state.update_payment_status(
            make_booking(), PaymentStatus.PAID, "pay_1", PaymentMethod.RAZORPAY, 1000, now=NOW
        )
        payment = change.booking.payment
        assert (payment.status, payment.transaction_id, payment.paid_amount, payment.paid_at) == (
            PaymentStatus.PAID,
            "pay_1",
            1000,
            NOW,
        )
        assert change.booking.status_history == make_booking().status_history

    @pytest.mark.parametrize(
        ("current", "requested"),
        [
            (PaymentStatus.FAILED, PaymentStatus.PAID),
            (PaymentStatus.PAID, PaymentStatus.PENDING),
            (PaymentStatus.REFUNDED, PaymentStatus.PAID),
            (PaymentStatus.PENDING, PaymentStatus.REFUNDED),
        ],
    )
    def test_illegal_payment_transitions(self, current, requested):
        booking = make_booking(payment=PaymentInfo(status=current))
        with pytest.raises(InvalidState):
            booking_state.update_payment_status(booking, requested, now=NOW)

    def test_paid_and_confirmed_chain_into_one_change(self):
        booking = make_booking()
        change = booking_state.update_payment_status(booking, PaymentStatus.PAID, "pay_1", amount=1000, now=NOW)
        change = change.then(
            booking_state.transition(change.booking, BookingStatus.CONFIRMED, "system", "Payment completed", now=NOW)
        )
        assert change.previous is booking
        assert change.booking.status == BookingStatus.CONFIRMED
        assert change.booking.payment.status == PaymentStatus.PAID
        assert [h.reason for h in change.history] == ["Payment completed"]
        assert {"status", "payment_status", "transaction_id"} <= change.updates.keys()

    def test_then_requires_the_resulting_snapshot(self):
        booking = make_booking()
        first = booking_state.update_payment_status(booking, PaymentStatus.PAID, "pay_1", now=NOW)
        unrelated = booking_state.transition(booking, BookingStatus.CONFIRMED, "system", now=NOW)
        with pytest.raises(ValueError):
            first.then(unrelated)


class TestRefundBookkeeping:
    def _cancelled_paid(self, **kwargs):
        return make_booking(status=BookingStatus.CANCELLED, payment=paid(), cancellation_date=NOW, **kwargs)

    def test_claim_is_guarded(self):
        change = booking_state.claim_refund(self._cancelled_paid(), "key-1")
        assert change.booking.payment.refund_claim_key == "key-1"
        assert change.guards == (Guard("refund_transaction_id"), Guard("refund_claim_key", None))

    def test_claim_replacing_previous_key(self):
        booking = self._cancelled_paid()
        change = booking_state.claim_refund(booking, "key-2", replacing="key-1")
        assert Guard("refund_claim_key", "key-1") in change.guards

    def test_full_refund(self):
        change = booking_state.record_refund(self._cancelled_paid(), "rfnd_1", 1000, now=NOW)
        payment = change.booking.payment
        assert payment.status == PaymentStatus.REFUNDED
        assert (payment.refund_transaction_id, payment.refund_amount, payment.refunded_at) == ("rfnd_1", 1000, NOW)
        assert payment.refund_claim_key is None
        assert change.guards == (Guard("refund_transaction_id"),)

    def test_partial_refund(self):
        change = booking_state.record_refund(self._cancelled_paid(), "rfnd_1", 750, now=NOW)
        assert change.booking.payment.status == PaymentStatus.PARTIALLY_REFUNDED

    def test_refund_requires_paid_payment(self):
        with pytest.raises(InvalidState):
            booking_state.record_refund(make_booking(status=BookingStatus.CANCELLED), "rfnd_1", 1000, now=NOW)


# ---------------------------------------------------------------------------
# Work summary
# ---------------------------------------------------------------------------


class TestWorkSummary:
    def test_merges_fields(self):
        booking = make_booking(status=BookingStatus.IN_PROGRESS, work_summary=WorkSummary(work_start_time=NOW))
        change = booking_state.add_work_summary(
            booking, {"work_description": "Replaced filter", "materials_used": ["filter", "gas"]}
        )
        summary = change.booking.work_summary
        assert summary.work_start_time == NOW
        assert summary.work_description == "Replaced filter"
        assert summary.materials_used == ("filter", "gas")

    def test_only_for_started_work(self):
        with pytest.raises(InvalidState):
            booking_state.add_work_summary(make_booking(), {"work_description": "x"})

    @pytest.mark.parametrize(
        "fields",
        [
            {"work_description": "x" * 1001},
            {"additional_notes": "x" * 501},
            {"before_images": [f"img{i}.jpg" for i in range(11)]},
            {"materials_used": [f"m{i}" for i in range(51)]},
            {"rating": 5},
        ],
    )
    def test_limits(self, fields):
        booking = make_booking(status=BookingStatus.COMPLETED)
        with pytest.raises(ValidationFailed):
            booking_state.add_work_summary(booking, fields)


def test_booking_number_format():
    number = booking_state.generate_booking_number(NOW)
    assert re.fullmatch(r"BK\d{6}[0-9A-F]{6}", number)
    assert number[2:8] == str(int(NOW.timestamp() * 1000))[-6:]

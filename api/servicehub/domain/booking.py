"""Booking value types.

A Booking is an immutable snapshot. Changes are produced by the state
machine in ``servicehub.services.booking_state`` as a new snapshot plus the
writes needed to persist it; nothing mutates a Booking in place.

``to_row`` / ``from_row`` flatten a snapshot to the column layout of the
``bookings`` table (payment sub-state flattened, nested structures as JSON)
so repositories can diff two snapshots and evaluate write guards.
"""

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class BookingStatus(enum.StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class PaymentStatus(enum.StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(enum.StrEnum):
    RAZORPAY = "razorpay"
    CASH = "cash"
    UPI = "upi"


class DiscountType(enum.StrEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CancelledBy(enum.StrEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


@dataclass(frozen=True)
class Address:
    street: str
    city: str
    state: str
    pincode: str
    country: str = "India"
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True)
class AdditionalCharge:
    name: str
    amount: int
    description: str | None = None


@dataclass(frozen=True)
class Pricing:
    """Monetary snapshot, whole currency units. total_amount is what is owed."""

    base_amount: int
    tax_amount: int
    total_amount: int
    additional_charges: tuple[AdditionalCharge, ...] = ()
    discount: int = 0
    discount_type: DiscountType | None = None


@dataclass(frozen=True)
class PaymentInfo:
    status: PaymentStatus = PaymentStatus.PENDING
    method: PaymentMethod | None = None
    transaction_id: str | None = None
    paid_amount: int = 0
    paid_at: datetime | None = None
    refund_transaction_id: str | None = None
    refund_amount: int = 0
    refunded_at: datetime | None = None
    # Idempotency key of a refund request sent (or about to be sent) to the gateway.
    refund_claim_key: str | None = None

    @property
    def refund_recorded(self) -> bool:
        return self.refund_transaction_id is not None or self.refund_amount > 0


@dataclass(frozen=True)
class WorkSummary:
    work_start_time: datetime | None = None
    work_end_time: datetime | None = None
    work_description: str | None = None
    before_images: tuple[str, ...] = ()
    after_images: tuple[str, ...] = ()
    materials_used: tuple[str, ...] = ()
    additional_notes: str | None = None


@dataclass(frozen=True)
class StatusChange:
    status: BookingStatus
    changed_by: str
    changed_at: datetime
    reason: str | None = None
    comments: str | None = None


@dataclass(frozen=True)
class Booking:
    booking_number: str
    customer_id: str
    provider_id: str
    service_id: str
    scheduled_date: datetime
    estimated_duration: int
    address: Address
    contact_phone: str
    pricing: Pricing
    status: BookingStatus = BookingStatus.PENDING
    status_history: tuple[StatusChange, ...] = ()
    payment: PaymentInfo = field(default_factory=PaymentInfo)
    special_instructions: str | None = None
    work_summary: WorkSummary | None = None
    actual_duration: int | None = None
    cancelled_by: CancelledBy | None = None
    cancellation_reason: str | None = None
    cancellation_date: datetime | None = None
    refund_amount: int | None = None
    id: int | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def work_summary_to_json(summary: WorkSummary | None) -> dict | None:
    if summary is None:
        return None
    return {
        "work_start_time": _iso(summary.work_start_time),
        "work_end_time": _iso(summary.work_end_time),
        "work_description": summary.work_description,
        "before_images": list(summary.before_images),
        "after_images": list(summary.after_images),
        "materials_used": list(summary.materials_used),
        "additional_notes": summary.additional_notes,
    }


def work_summary_from_json(data: Mapping | None) -> WorkSummary | None:
    if data is None:
        return None
    return WorkSummary(
        work_start_time=_parse_iso(data.get("work_start_time")),
        work_end_time=_parse_iso(data.get("work_end_time")),
        work_description=data.get("work_description"),
        before_images=tuple(data.get("before_images") or ()),
        after_images=tuple(data.get("after_images") or ()),
        materials_used=tuple(data.get("materials_used") or ()),
        additional_notes=data.get("additional_notes"),
    )


def to_row(booking: Booking) -> dict[str, Any]:
    """Flatten a booking to its ``bookings`` table columns (history excluded)."""
    address = booking.address
    pricing = booking.pricing
    payment = booking.payment
    return {
        "booking_number": booking.booking_number,
        "customer_id": booking.customer_id,
        "provider_id": booking.provider_id,
        "service_id": booking.service_id,
        "scheduled_date": booking.scheduled_date,
        "estimated_duration": booking.estimated_duration,
        "actual_duration": booking.actual_duration,
        "address": {
            "street": address.street,
            "city": address.city,
            "state": address.state,
            "pincode": address.pincode,
            "country": address.country,
            "latitude": address.latitude,
            "longitude": address.longitude,
        },
        "contact_phone": booking.contact_phone,
        "special_instructions": booking.special_instructions,
        "status": booking.status,
        "base_amount": pricing.base_amount,
        "additional_charges": [
            {"name": c.name, "amount": c.amount, "description": c.description} for c in pricing.additional_charges
        ],
        "discount": pricing.discount,
        "discount_type": pricing.discount_type,
        "tax_amount": pricing.tax_amount,
        "total_amount": pricing.total_amount,
        "payment_status": payment.status,
        "payment_method": payment.method,
        "transaction_id": payment.transaction_id,
        "paid_amount": payment.paid_amount,
        "paid_at": payment.paid_at,
        "refund_transaction_id": payment.refund_transaction_id,
        "payment_refund_amount": payment.refund_amount,
        "refunded_at": payment.refunded_at,
        "refund_claim_key": payment.refund_claim_key,
        "work_summary": work_summary_to_json(booking.work_summary),
        "cancelled_by": booking.cancelled_by,
        "cancellation_reason": booking.cancellation_reason,
        "cancellation_date": booking.cancellation_date,
        "refund_amount": booking.refund_amount,
    }


def from_row(row: Mapping[str, Any], history: tuple[StatusChange, ...] = ()) -> Booking:
    """Rebuild a booking snapshot from a column mapping and its history."""
    address = row["address"] or {}
    discount_type = row.get("discount_type")
    method = row.get("payment_method")
    cancelled_by = row.get("cancelled_by")
    return Booking(
        id=row.get("id"),
        version=row.get("version") or 0,
        booking_number=row["booking_number"],
        customer_id=row["customer_id"],
        provider_id=row["provider_id"],
        service_id=row["service_id"],
        scheduled_date=row["scheduled_date"],
        estimated_duration=row["estimated_duration"],
        actual_duration=row.get("actual_duration"),
        address=Address(**address),
        contact_phone=row["contact_phone"],
        special_instructions=row.get("special_instructions"),
        status=BookingStatus(row["status"]),
        status_history=history,
        pricing=Pricing(
            base_amount=row["base_amount"],
            tax_amount=row["tax_amount"],
            total_amount=row["total_amount"],
            additional_charges=tuple(AdditionalCharge(**c) for c in row.get("additional_charges") or ()),
            discount=row.get("discount") or 0,
            discount_type=DiscountType(discount_type) if discount_type else None,
        ),
        payment=PaymentInfo(
            status=PaymentStatus(row["payment_status"]),
            method=PaymentMethod(method) if method else None,
            transaction_id=row.get("transaction_id"),
            paid_amount=row.get("paid_amount") or 0,
            paid_at=row.get("paid_at"),
            refund_transaction_id=row.get("refund_transaction_id"),
            refund_amount=row.get("payment_refund_amount") or 0,
            refunded_at=row.get("refunded_at"),
            refund_claim_key=row.get("refund_claim_key"),
        ),
        work_summary=work_summary_from_json(row.get("work_summary")),
        cancelled_by=CancelledBy(cancelled_by) if cancelled_by else None,
        cancellation_reason=row.get("cancellation_reason"),
        cancellation_date=row.get("cancellation_date"),
        refund_amount=row.get("refund_amount"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )

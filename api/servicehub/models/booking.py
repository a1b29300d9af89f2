"""Booking tables.

``bookings`` holds one row per booking with the payment sub-state flattened
into columns, so refund and capture writes can be made conditional on them.
``version`` is bumped by every write; writers update ``WHERE version = :seen``.
``booking_status_changes`` is the append-only status history.
"""

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from servicehub.domain.booking import BookingStatus, CancelledBy, DiscountType, PaymentMethod, PaymentStatus
from servicehub.models.base import Base, TimestampMixin


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda e: [x.value for x in e])


booking_status_enum = _enum(BookingStatus, "booking_status")


class BookingRecord(TimestampMixin, Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(primary_key=True)
    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Who (opaque references resolved by the directory)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # When / where
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes, 15-1440
    actual_duration: Mapped[int | None] = mapped_column(Integer)
    address: Mapped[dict] = mapped_column(JSONB, nullable=False)
    contact_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    special_instructions: Mapped[str | None] = mapped_column(Text)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        booking_status_enum, default=BookingStatus.PENDING, nullable=False
    )

    # Pricing snapshot (whole rupees, frozen at creation)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    additional_charges: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    discount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    discount_type: Mapped[DiscountType | None] = mapped_column(_enum(DiscountType, "discount_type"))
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # Payment sub-state
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False
    )
    payment_method: Mapped[PaymentMethod | None] = mapped_column(_enum(PaymentMethod, "payment_method"))
    transaction_id: Mapped[str | None] = mapped_column(String(100))
    paid_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_transaction_id: Mapped[str | None] = mapped_column(String(100))
    payment_refund_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_claim_key: Mapped[str | None] = mapped_column(String(64))

    # Work
    work_summary: Mapped[dict | None] = mapped_column(JSONB)

    # Cancellation
    cancelled_by: Mapped[CancelledBy | None] = mapped_column(_enum(CancelledBy, "cancelled_by"))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancellation_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_amount: Mapped[int | None] = mapped_column(Integer)

    # Relationships
    status_history: Mapped[list["StatusChangeRecord"]] = relationship(
        back_populates="booking", order_by="StatusChangeRecord.id", lazy="selectin"
    )

    __table_args__ = (
        Index("ix_bookings_customer", "customer_id", "status", "scheduled_date"),
        Index("ix_bookings_provider", "provider_id", "status", "scheduled_date"),
        Index("ix_bookings_payment_status", "payment_status"),
        Index("ix_bookings_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<BookingRecord {self.booking_number} {self.status} v{self.version}>"


class StatusChangeRecord(Base):
    """One row per status transition. Rows are only ever inserted."""

    __tablename__ = "booking_status_changes"

    id: Mapped[int] = mapped_column(primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    status: Mapped[BookingStatus] = mapped_column(booking_status_enum, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    comments: Mapped[str | None] = mapped_column(String(500))

    booking: Mapped["BookingRecord"] = relationship(back_populates="status_history")

    def __repr__(self) -> str:
        return f"<StatusChangeRecord booking={self.booking_id} {self.status}>"

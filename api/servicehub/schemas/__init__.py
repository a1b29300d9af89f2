"""Pydantic schemas for API serialisation."""

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from servicehub.domain.booking import BookingStatus, CancelledBy, DiscountType, PaymentMethod, PaymentStatus

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: T


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = -(-total // limit) if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            items_per_page=limit,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


# --- Bookings ---


class AddressIn(BaseModel):
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    pincode: str = Field(pattern=r"^\d{6}$")
    country: str = "India"
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


class BookingCreate(BaseModel):
    provider_id: str
    service_id: str
    scheduled_date: datetime
    address: AddressIn
    contact_phone: str = Field(pattern=r"^\+?[0-9]{10,15}$")
    special_instructions: str | None = Field(default=None, max_length=500)


class StatusUpdate(BaseModel):
    status: BookingStatus
    reason: str | None = Field(default=None, max_length=200)
    comments: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class WorkSummaryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    work_description: str | None = None
    before_images: list[str] | None = None
    after_images: list[str] | None = None
    materials_used: list[str] | None = None
    additional_notes: str | None = None


class AddressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    street: str
    city: str
    state: str
    pincode: str
    country: str
    latitude: float | None
    longitude: float | None


class AdditionalChargeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    amount: int
    description: str | None


class PricingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_amount: int
    additional_charges: list[AdditionalChargeOut]
    discount: int
    discount_type: DiscountType | None
    tax_amount: int
    total_amount: int


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: PaymentStatus
    method: PaymentMethod | None
    transaction_id: str | None
    paid_amount: int
    paid_at: datetime | None
    refund_transaction_id: str | None
    refund_amount: int
    refunded_at: datetime | None


class StatusChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: BookingStatus
    changed_by: str
    changed_at: datetime
    reason: str | None
    comments: str | None


class WorkSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    work_start_time: datetime | None
    work_end_time: datetime | None
    work_description: str | None
    before_images: list[str]
    after_images: list[str]
    materials_used: list[str]
    additional_notes: str | None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_number: str
    customer_id: str
    provider_id: str
    service_id: str
    scheduled_date: datetime
    estimated_duration: int
    actual_duration: int | None
    address: AddressOut
    contact_phone: str
    special_instructions: str | None
    status: BookingStatus
    status_history: list[StatusChangeOut]
    pricing: PricingOut
    payment: PaymentOut
    work_summary: WorkSummaryOut | None
    cancelled_by: CancelledBy | None
    cancellation_reason: str | None
    cancellation_date: datetime | None
    refund_amount: int | None
    created_at: datetime | None
    updated_at: datetime | None


class BookingList(BaseModel):
    bookings: list[BookingOut]
    pagination: Pagination


# --- Payments ---


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: int = Field(alias="bookingId")


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: int
    currency: str
    status: str
    receipt: str | None


class CreateOrderOut(BaseModel):
    order: OrderOut
    booking_id: int
    booking_number: str
    key_id: str


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    booking_id: int = Field(alias="bookingId")


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: int = Field(alias="bookingId")
    reason: str | None = Field(default=None, max_length=200)
    retry_unknown: bool = False


class RefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    amount: int
    status: str


class RefundResultOut(BaseModel):
    refund: RefundOut
    booking: BookingOut


class TransactionOut(BaseModel):
    id: int
    booking_number: str
    service_id: str
    amount: int
    platform_fee: int
    provider_payout: int
    payment_status: PaymentStatus
    transaction_id: str | None
    paid_amount: int
    paid_at: datetime | None
    refund_amount: int
    refunded_at: datetime | None
    scheduled_date: datetime
    created_at: datetime | None


class TransactionList(BaseModel):
    transactions: list[TransactionOut]
    pagination: Pagination


class PaymentMethodsOut(BaseModel):
    available: bool
    methods: list[str]
    currency: str

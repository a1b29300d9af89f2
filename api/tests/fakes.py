"""In-memory collaborators for tests that run without a database or gateway."""

import asyncio
import itertools
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta

from servicehub.core.auth import create_access_token
from servicehub.core.errors import GatewayError, StaleBooking
from servicehub.domain.booking import (
    Address,
    Booking,
    BookingStatus,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    Pricing,
    StatusChange,
    to_row,
)
from servicehub.domain.caller import Caller, Role
from servicehub.repositories.directory import Contact, ProviderProfile, ServiceOffer
from servicehub.services.booking_state import BookingChange
from servicehub.services.gateway import GatewayOrder, GatewayPayment, GatewayRefund, RazorpayGateway
from servicehub.services.notifications import Notification

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

CUSTOMER = Caller("user-customer", Role.CUSTOMER)
OTHER_CUSTOMER = Caller("user-other", Role.CUSTOMER)
PROVIDER = Caller("user-provider", Role.PROVIDER)
OTHER_PROVIDER = Caller("user-provider-2", Role.PROVIDER)
ADMIN = Caller("user-admin", Role.ADMIN)

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


def make_booking(
    *,
    scheduled_in: timedelta = timedelta(hours=48),
    total: int = 1000,
    status: BookingStatus = BookingStatus.PENDING,
    payment: PaymentInfo | None = None,
    **overrides,
) -> Booking:
    fields = dict(
        booking_number="BK123456ABCDEF",
        customer_id=CUSTOMER.identity,
        provider_id="prov-1",
        service_id="svc-1",
        scheduled_date=NOW + scheduled_in,
        estimated_duration=60,
        address=Address(street="12 MG Road", city="Bengaluru", state="Karnataka", pincode="560001"),
        contact_phone="9876543210",
        pricing=Pricing(base_amount=total - 150, tax_amount=150, total_amount=total),
        status=status,
        status_history=(StatusChange(BookingStatus.PENDING, CUSTOMER.identity, NOW, "Booking created"),),
        payment=payment or PaymentInfo(),
    )
    fields.update(overrides)
    return Booking(**fields)


def paid(transaction_id: str = "pay_1", amount: int = 1000) -> PaymentInfo:
    return PaymentInfo(
        status=PaymentStatus.PAID,
        method=PaymentMethod.RAZORPAY,
        transaction_id=transaction_id,
        paid_amount=amount,
        paid_at=NOW,
    )


class InMemoryBookingRepository:
    """Same conditional-write semantics as SqlBookingRepository: version plus guards."""

    def __init__(self) -> None:
        self._rows: dict[int, Booking] = {}
        self._ids = itertools.count(1)
        self.saves = 0

    def put(self, booking: Booking) -> Booking:
        stored = replace(booking, id=booking.id or next(self._ids), created_at=booking.created_at or NOW)
        self._rows[stored.id] = stored
        return stored

    async def get(self, booking_id: int) -> Booking | None:
        return self._rows.get(booking_id)

    async def add(self, booking: Booking) -> Booking:
        return self.put(replace(booking, id=None, version=0))

    async def save(self, change: BookingChange) -> Booking:
        current = self._rows.get(change.previous.id)
        if current is None or current.version != change.expected_version:
            raise StaleBooking("Booking was modified concurrently")
        row = to_row(current)
        for guard in change.guards:
            if row[guard.column] != guard.value:
                raise StaleBooking("Booking was modified concurrently")

        self.saves += 1
        stored = replace(change.booking, version=current.version + 1)
        self._rows[stored.id] = stored
        return stored

    async def find(
        self,
        *,
        customer_id=None,
        provider_id=None,
        status=None,
        payment_status=None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Booking], int]:
        matches = [
            b
            for b in self._rows.values()
            if (customer_id is None or b.customer_id == customer_id)
            and (provider_id is None or b.provider_id == provider_id)
            and (status is None or b.status == status)
            and (payment_status is None or b.payment.status == payment_status)
        ]
        matches.sort(key=lambda b: b.scheduled_date, reverse=True)
        return matches[offset : offset + limit], len(matches)


class InMemoryDirectory:
    def __init__(self) -> None:
        self.providers = {
            "prov-1": ProviderProfile("prov-1", PROVIDER.identity, True, frozenset({"svc-1", "svc-2"})),
            "prov-2": ProviderProfile("prov-2", OTHER_PROVIDER.identity, False, frozenset({"svc-1"})),
        }
        self.services = {
            "svc-1": ServiceOffer("svc-1", "AC Service", 1000, 60),
            "svc-2": ServiceOffer("svc-2", "Retired Service", 500, 30, is_active=False),
            "svc-3": ServiceOffer("svc-3", "Deep Cleaning", 2500, 240),
        }
        self.contacts = {
            CUSTOMER.identity: Contact(CUSTOMER.identity, "Asha", "asha@example.com"),
            PROVIDER.identity: Contact(PROVIDER.identity, "Ravi", "ravi@example.com"),
        }
        self.completed: dict[str, int] = {}

    async def get_provider(self, provider_id: str) -> ProviderProfile | None:
        return self.providers.get(provider_id)

    async def provider_for_user(self, user_id: str) -> ProviderProfile | None:
        return next((p for p in self.providers.values() if p.user_id == user_id), None)

    async def get_service(self, service_id: str) -> ServiceOffer | None:
        return self.services.get(service_id)

    async def get_contact(self, user_id: str) -> Contact | None:
        return self.contacts.get(user_id)

    async def record_completed_booking(self, provider_id: str) -> None:
        self.completed[provider_id] = self.completed.get(provider_id, 0) + 1


class FakeGateway(RazorpayGateway):
    """Real signing and webhook dispatch; orders, payments and refunds kept in memory."""

    def __init__(self) -> None:
        super().__init__(key_id=KEY_ID, key_secret=KEY_SECRET)
        self.payments: dict[str, GatewayPayment] = {}
        self.orders: list[tuple[GatewayOrder, str | None]] = []
        self.refund_calls: list[dict] = []
        self.refund_error: Exception | None = None

    def add_payment(self, payment_id: str, booking_id: int | None, amount: int = 1000, order_id: str = "order_1"):
        notes = {"booking_id": str(booking_id)} if booking_id is not None else {}
        payment = GatewayPayment(
            id=payment_id, amount=amount, status="captured", order_id=order_id, method="upi", notes=notes
        )
        self.payments[payment_id] = payment
        return payment

    async def create_order(self, amount, currency=None, receipt=None, notes=None, *, idempotency_key=None):
        order = GatewayOrder(
            id=f"order_{len(self.orders) + 1}",
            amount=amount,
            currency=currency or self.currency,
            status="created",
            receipt=receipt,
            notes=dict(notes or {}),
        )
        self.orders.append((order, idempotency_key))
        return order

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        try:
            return self.payments[payment_id]
        except KeyError:
            raise GatewayError("Payment gateway rejected the request", "The id provided does not exist") from None

    async def refund(self, payment_id, amount=None, notes=None, *, idempotency_key=None) -> GatewayRefund:
        self.refund_calls.append(
            {"payment_id": payment_id, "amount": amount, "notes": dict(notes or {}), "key": idempotency_key}
        )
        # Yield so concurrent callers interleave at the network boundary.
        await asyncio.sleep(0)
        if self.refund_error is not None:
            raise self.refund_error
        return GatewayRefund(
            id=f"rfnd_{len(self.refund_calls)}",
            payment_id=payment_id,
            amount=amount,
            status="processed",
            notes=dict(notes or {}),
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def events(self, recipient: str | None = None) -> list[str]:
        return [str(n.event) for n in self.sent if recipient is None or n.recipient == recipient]


class FailingNotifier:
    def send(self, notification: Notification) -> None:
        raise ConnectionError("broker unreachable")


def auth_headers(caller: Caller) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(caller.identity, caller.role)}"}


def webhook_body(event: str, **entities: Mapping) -> dict:
    return {
        "entity": "event",
        "event": event,
        "payload": {name: {"entity": dict(entity)} for name, entity in entities.items()},
    }

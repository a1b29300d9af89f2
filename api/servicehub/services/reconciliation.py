"""Payment reconciliation: where booking rules meet payment mechanics.

Every mutation goes through ``apply_change``: load the current snapshot, decide
the change from it, and write it conditionally. If the booking moved on in
between (another request, a webhook, another worker instance) the write is
rejected and the decision is re-made against the fresh snapshot. That is
what makes the verify/webhook race and the refund/webhook race safe without
any lock.

Refunds are claimed before the gateway is called: a refund claim key is
written onto the booking, and only the request holding it may call the
gateway. A definite gateway failure releases the claim. An uncertain one
(timeout, transport error, 5xx) keeps it, so the refund can't be sent twice;
it is settled by the ``refund.created`` webhook or by an admin retrying with
``retry_unknown`` (a fresh idempotency key).
"""

import json
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from servicehub.core.errors import (
    Forbidden,
    GatewayUnavailable,
    InvalidSignature,
    InvalidState,
    NoRefundDue,
    NotFound,
    PaymentOutcomeUnknown,
    ValidationFailed,
)
from servicehub.domain.booking import Booking, BookingStatus, PaymentMethod, PaymentStatus
from servicehub.domain.caller import SYSTEM_ACTOR, Caller, Role
from servicehub.repositories.bookings import BookingRepository, apply_change, load_booking
from servicehub.repositories.directory import Directory
from servicehub.services import booking_state
from servicehub.services.access import ensure_customer, is_assigned_provider, provider_id_for
from servicehub.services.booking_state import BookingChange
from servicehub.services.gateway import (
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    RazorpayGateway,
    WebhookOutcome,
    parse_webhook_event,
    validate_webhook_signature,
)
from servicehub.services.notifications import NotificationEvent, NotificationSink, notify
from servicehub.services.pricing import compute_refund_amount

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})
PAYMENT_COMPLETED = "Payment completed"

# Decides the change to make from the current snapshot; None means nothing to do.
Plan = Callable[[Booking], BookingChange | None]


@dataclass(frozen=True)
class PaymentOrder:
    order: GatewayOrder
    booking: Booking


@dataclass(frozen=True)
class RefundResult:
    booking: Booking
    refund: GatewayRefund


def _booking_id_from_notes(notes: Mapping[str, str]) -> int | None:
    try:
        return int(notes["booking_id"])
    except (KeyError, ValueError):
        return None


class ReconciliationService:
    def __init__(
        self,
        repository: BookingRepository,
        gateway: RazorpayGateway,
        notifier: NotificationSink,
        directory: Directory,
        *,
        webhook_secret: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._notifier = notifier
        self._directory = directory
        self._webhook_secret = webhook_secret
        self._clock = clock or (lambda: datetime.now(UTC))

    # -----------------------------------------------------------------------
    # Payment orders and verification
    # -----------------------------------------------------------------------

    async def create_payment_order_for_booking(self, booking_id: int, caller: Caller) -> PaymentOrder:
        booking = await load_booking(self._repository, booking_id)
        ensure_customer(caller, booking)
        if booking.status not in PAYABLE_STATUSES:
            raise InvalidState("Cannot create payment for this booking")
        if booking.payment.status == PaymentStatus.PAID:
            raise InvalidState("Booking is already paid")
        if booking.payment.status != PaymentStatus.PENDING:
            raise InvalidState(f"Cannot create payment for a {booking.payment.status.value} payment")

        order = await self._gateway.create_order(
            booking.pricing.total_amount,
            receipt=f"booking_{booking.booking_number}",
            notes={
                "booking_id": str(booking.id),
                "booking_number": booking.booking_number,
                "customer_id": booking.customer_id,
                "provider_id": booking.provider_id,
                "service_id": booking.service_id,
            },
            idempotency_key=str(uuid.uuid4()),
        )
        logger.info("Payment order %s created for booking %s", order.id, booking.booking_number)
        return PaymentOrder(order=order, booking=booking)

    def _plan_paid(self, payment: GatewayPayment, actor: str, *, strict: bool) -> Plan:
        """Mark paid and auto-confirm a pending booking, as one write.

        A booking already paid with the same transaction is a no-op. With
        ``strict`` any other conflicting state is an error; without it the
        event is dropped (webhooks must not fail on stale deliveries).
        """

        def plan(booking: Booking) -> BookingChange | None:
            current = booking.payment
            if current.status == PaymentStatus.PAID and current.transaction_id == payment.id:
                return None
            if current.status != PaymentStatus.PENDING:
                if strict:
                    raise InvalidState(f"Cannot mark a {current.status.value} payment as paid")
                logger.warning(
                    "Ignoring capture of %s for booking %s: payment is %s",
                    payment.id,
                    booking.booking_number,
                    current.status.value,
                )
                return None

            now = self._clock()
            change = booking_state.update_payment_status(
                booking, PaymentStatus.PAID, payment.id, PaymentMethod.RAZORPAY, payment.amount, now=now
            )
            if booking.status == BookingStatus.PENDING:
                confirm = booking_state.transition(
                    change.booking, BookingStatus.CONFIRMED, actor, PAYMENT_COMPLETED, now=now
                )
                change = change.then(confirm)
            return change

        return plan

    async def verify_payment(
        self,
        booking_id: int,
        caller: Caller,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> Booking:
        """Confirm a checkout the client reports as completed."""
        booking = await load_booking(self._repository, booking_id)
        ensure_customer(caller, booking)

        if not self._gateway.verify_signature(order_id, payment_id, signature):
            logger.warning("Payment signature mismatch for booking %s", booking.booking_number)
            raise InvalidSignature("Invalid payment signature")

        payment = await self._gateway.fetch_payment(payment_id)
        noted = _booking_id_from_notes(payment.notes)
        if noted is not None and noted != booking.id:
            raise InvalidState("Payment does not belong to this booking")

        plan = self._plan_paid(payment, caller.identity, strict=True)
        updated, applied = await apply_change(self._repository, booking_id, plan)
        if applied:
            self._notify_paid(booking, updated)
        logger.info("Payment verified for booking %s: %s", updated.booking_number, payment.id)
        return updated

    def _notify_paid(self, before: Booking, after: Booking) -> None:
        paid = after.payment.paid_amount
        notify(self._notifier, after.customer_id, NotificationEvent.PAYMENT_SUCCESS, after, amount=paid)
        if before.status != BookingStatus.CONFIRMED and after.status == BookingStatus.CONFIRMED:
            notify(self._notifier, after.customer_id, NotificationEvent.BOOKING_CONFIRMED, after)

    # -----------------------------------------------------------------------
    # Refunds
    # -----------------------------------------------------------------------

    async def _ensure_can_refund(self, caller: Caller, booking: Booking) -> None:
        if caller.is_admin or caller.identity == booking.customer_id:
            return
        if await is_assigned_provider(self._directory, caller, booking):
            return
        raise Forbidden("Access denied")

    def _refund_amount(self, booking: Booking) -> int:
        cancelled_at = booking.cancellation_date or self._clock()
        return compute_refund_amount(booking.pricing.total_amount, booking.scheduled_date, cancelled_at)

    def _plan_claim(self, key: str, *, retry_unknown: bool) -> Plan:
        def plan(booking: Booking) -> BookingChange:
            if booking.status != BookingStatus.CANCELLED:
                raise InvalidState("Refund is only possible for cancelled bookings")
            if booking.payment.status != PaymentStatus.PAID or booking.payment.refund_recorded:
                raise InvalidState("Booking has no refundable payment")
            if not booking.payment.transaction_id:
                raise InvalidState("Booking was not paid through the payment gateway")
            replacing = booking.payment.refund_claim_key
            if replacing is not None and not retry_unknown:
                raise InvalidState("A refund for this booking is already in progress")
            if self._refund_amount(booking) <= 0:
                raise NoRefundDue("No refund is due for this booking")
            return booking_state.claim_refund(booking, key, replacing=replacing)

        return plan

    def _plan_record(self, refund: GatewayRefund, *, strict: bool) -> Plan:
        def plan(booking: Booking) -> BookingChange | None:
            recorded = booking.payment.refund_transaction_id
            if recorded == refund.id:
                return None
            if booking.payment.refund_recorded or booking.payment.status != PaymentStatus.PAID:
                if strict:
                    raise InvalidState("Booking has no refundable payment")
                logger.warning(
                    "Ignoring refund %s for booking %s: payment is %s (refund %s)",
                    refund.id,
                    booking.booking_number,
                    booking.payment.status.value,
                    recorded,
                )
                return None
            return booking_state.record_refund(booking, refund.id, refund.amount, now=self._clock())

        return plan

    async def process_refund(
        self,
        booking_id: int,
        caller: Caller,
        reason: str | None = None,
        *,
        retry_unknown: bool = False,
    ) -> RefundResult:
        """Refund a cancelled, paid booking according to the cancellation tiers.

        ``retry_unknown`` (admins only) replaces a claim left behind by a
        refund whose outcome is unknown and resends with a fresh key.
        """
        booking = await load_booking(self._repository, booking_id)
        await self._ensure_can_refund(caller, booking)
        if retry_unknown and not caller.is_admin:
            raise Forbidden("Only admins can retry a refund with an unknown outcome")
        if not self._gateway.is_available():
            raise GatewayUnavailable("Payment gateway is not configured")

        key = str(uuid.uuid4())
        plan = self._plan_claim(key, retry_unknown=retry_unknown)
        claimed, _ = await apply_change(self._repository, booking_id, plan)
        amount = self._refund_amount(claimed)

        try:
            refund = await self._gateway.refund(
                claimed.payment.transaction_id,
                amount,
                notes={"booking_id": str(claimed.id), "reason": reason or "Booking cancelled"},
                idempotency_key=key,
            )
        except PaymentOutcomeUnknown:
            logger.error(
                "Refund for booking %s has an unknown outcome; claim %s kept for reconciliation",
                claimed.booking_number,
                key,
            )
            raise
        except Exception:
            # Nothing was sent, or the gateway gave a definite answer.
            await self._release_claim(booking_id, key)
            raise

        updated, _ = await apply_change(self._repository, booking_id, self._plan_record(refund, strict=True))
        notify(self._notifier, updated.customer_id, NotificationEvent.PAYMENT_REFUNDED, updated, amount=refund.amount)
        logger.info("Refund %s of %s recorded for booking %s", refund.id, refund.amount, updated.booking_number)
        return RefundResult(booking=updated, refund=refund)

    async def _release_claim(self, booking_id: int, key: str) -> None:
        def plan(booking: Booking) -> BookingChange | None:
            if booking.payment.refund_claim_key != key:
                return None
            return booking_state.release_refund_claim(booking, key)

        await apply_change(self._repository, booking_id, plan)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def list_transactions(
        self,
        caller: Caller,
        payment_status: PaymentStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Booking], int]:
        filters: dict = {}
        if caller.role == Role.PROVIDER:
            provider_id = await provider_id_for(self._directory, caller)
            if provider_id is None:
                return [], 0
            filters["provider_id"] = provider_id
        elif not caller.is_admin:
            filters["customer_id"] = caller.identity
        return await self._repository.find(
            **filters, payment_status=payment_status, offset=(page - 1) * limit, limit=limit
        )

    async def get_payment_details(self, payment_id: str) -> GatewayPayment:
        return await self._gateway.fetch_payment(payment_id)

    async def get_order_details(self, order_id: str) -> GatewayOrder:
        return await self._gateway.fetch_order(order_id)

    async def get_refund_details(self, refund_id: str) -> GatewayRefund:
        return await self._gateway.fetch_refund(refund_id)

    # -----------------------------------------------------------------------
    # Webhooks
    # -----------------------------------------------------------------------

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        if not validate_webhook_signature(raw_body, signature, self._webhook_secret):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignature("Invalid webhook signature")
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationFailed("Malformed webhook payload") from exc
        if not isinstance(payload, dict):
            raise ValidationFailed("Malformed webhook payload")

        event = parse_webhook_event(payload)
        outcome = await self._gateway.process_webhook_event(event, self)
        logger.info("Webhook %s: %s", event.name, outcome)
        return outcome

    async def _webhook_mutate(
        self, notes: Mapping[str, str], source: str, plan: Plan
    ) -> tuple[Booking, bool] | None:
        booking_id = _booking_id_from_notes(notes)
        if booking_id is None:
            logger.warning("Webhook for %s carries no booking reference", source)
            return None
        try:
            return await apply_change(self._repository, booking_id, plan)
        except NotFound:
            logger.warning("Webhook for %s references unknown booking %s", source, booking_id)
            return None

    async def on_payment_captured(self, payment: GatewayPayment) -> WebhookOutcome:
        booking_id = _booking_id_from_notes(payment.notes)
        before = await self._repository.get(booking_id) if booking_id is not None else None
        plan = self._plan_paid(payment, SYSTEM_ACTOR, strict=False)
        result = await self._webhook_mutate(payment.notes, payment.id, plan)
        if result is None:
            return WebhookOutcome.IGNORED
        updated, applied = result
        if not applied:
            return WebhookOutcome.DUPLICATE
        self._notify_paid(before or updated, updated)
        return WebhookOutcome.PROCESSED

    async def on_payment_failed(self, payment: GatewayPayment) -> WebhookOutcome:
        def plan(booking: Booking) -> BookingChange | None:
            current = booking.payment
            if current.status != PaymentStatus.PENDING:
                logger.info(
                    "Ignoring failure of %s for booking %s: payment is %s",
                    payment.id,
                    booking.booking_number,
                    current.status.value,
                )
                return None
            return booking_state.update_payment_status(
                booking, PaymentStatus.FAILED, payment.id, PaymentMethod.RAZORPAY, now=self._clock()
            )

        result = await self._webhook_mutate(payment.notes, payment.id, plan)
        if result is None:
            return WebhookOutcome.IGNORED
        updated, applied = result
        if not applied:
            return WebhookOutcome.DUPLICATE
        notify(self._notifier, updated.customer_id, NotificationEvent.PAYMENT_FAILED, updated)
        return WebhookOutcome.PROCESSED

    async def on_refund_created(self, refund: GatewayRefund) -> WebhookOutcome:
        notes = refund.notes
        if _booking_id_from_notes(notes) is None:
            # Refunds issued from the dashboard carry no notes; the payment does.
            notes = (await self._gateway.fetch_payment(refund.payment_id)).notes

        result = await self._webhook_mutate(notes, refund.id, self._plan_record(refund, strict=False))
        if result is None:
            return WebhookOutcome.IGNORED
        updated, applied = result
        if not applied:
            return WebhookOutcome.DUPLICATE
        notify(self._notifier, updated.customer_id, NotificationEvent.PAYMENT_REFUNDED, updated, amount=refund.amount)
        return WebhookOutcome.PROCESSED

    async def on_order_paid(self, order: GatewayOrder) -> WebhookOutcome:
        # The payment itself is reconciled by payment.captured.
        logger.info("Order %s paid (booking %s)", order.id, order.notes.get("booking_id"))
        return WebhookOutcome.IGNORED

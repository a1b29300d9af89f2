"""Razorpay integration for payment processing.

Talks to the Razorpay REST API over httpx. Amounts cross this boundary in
whole rupees and are converted to and from paise here; every response is
mapped onto a narrow pydantic result type so raw gateway JSON never leaves
this module.

Failure semantics:
- not configured (no key id/secret): GatewayUnavailable, nothing is sent;
- gateway rejected the request (4xx): GatewayError with the upstream message;
- timeout, transport failure or 5xx on a call that moves money (order
  creation, refund): PaymentOutcomeUnknown. These are never retried here;
  the caller reconciles via webhook or retries with a fresh idempotency key.
"""

import enum
import hashlib
import hmac
import logging
from collections.abc import Awaitable, Mapping
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from servicehub.core.errors import GatewayError, GatewayUnavailable, PaymentOutcomeUnknown
from servicehub.services.pricing import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

SUPPORTED_PAYMENT_METHODS = ("card", "netbanking", "wallet", "upi", "emi")
IDEMPOTENCY_HEADER = "X-Idempotency-Key"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class _GatewayModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class GatewayOrder(_GatewayModel):
    id: str
    amount: int  # rupees
    currency: str
    status: str
    receipt: str | None = None
    notes: dict[str, str] = Field(default_factory=dict)


class GatewayPayment(_GatewayModel):
    id: str
    amount: int  # rupees
    currency: str = "INR"
    status: str
    order_id: str | None = None
    method: str | None = None
    notes: dict[str, str] = Field(default_factory=dict)


class GatewayRefund(_GatewayModel):
    id: str
    payment_id: str
    amount: int  # rupees
    status: str
    notes: dict[str, str] = Field(default_factory=dict)


def _notes(raw: Any) -> dict[str, str]:
    # Razorpay sends an empty list instead of an empty object when there are no notes
    if isinstance(raw, Mapping):
        return {str(k): str(v) for k, v in raw.items()}
    return {}


def _parse(model: type[_GatewayModel], data: Mapping[str, Any]) -> Any:
    try:
        fields = dict(data)
        fields["notes"] = _notes(data.get("notes"))
        if "amount" in fields:
            fields["amount"] = from_minor_units(int(fields["amount"]))
        return model.model_validate(fields)
    except (ValidationError, TypeError, ValueError) as exc:
        raise GatewayError(f"Unexpected {model.__name__} response from gateway", str(exc)) from exc


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookEventType(enum.StrEnum):
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    REFUND_CREATED = "refund.created"
    ORDER_PAID = "order.paid"
    IGNORED = "ignored"


class WebhookOutcome(enum.StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class WebhookEvent(_GatewayModel):
    type: WebhookEventType
    name: str  # event name as sent by the gateway
    payment: GatewayPayment | None = None
    refund: GatewayRefund | None = None
    order: GatewayOrder | None = None


class WebhookHandler(Protocol):
    def on_payment_captured(self, payment: GatewayPayment) -> Awaitable[WebhookOutcome]: ...

    def on_payment_failed(self, payment: GatewayPayment) -> Awaitable[WebhookOutcome]: ...

    def on_refund_created(self, refund: GatewayRefund) -> Awaitable[WebhookOutcome]: ...

    def on_order_paid(self, order: GatewayOrder) -> Awaitable[WebhookOutcome]: ...


def _entity(payload: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    container = (payload.get("payload") or {}).get(key) or {}
    entity = container.get("entity")
    return entity if isinstance(entity, Mapping) else None


def parse_webhook_event(payload: Mapping[str, Any]) -> WebhookEvent:
    """Map a webhook body onto a typed event. Unknown events become IGNORED."""
    name = str(payload.get("event", ""))
    try:
        event_type = WebhookEventType(name)
    except ValueError:
        return WebhookEvent(type=WebhookEventType.IGNORED, name=name)

    payment = _entity(payload, "payment")
    refund = _entity(payload, "refund")
    order = _entity(payload, "order")
    return WebhookEvent(
        type=event_type,
        name=name,
        payment=_parse(GatewayPayment, payment) if payment else None,
        refund=_parse(GatewayRefund, refund) if refund else None,
        order=_parse(GatewayOrder, order) if order else None,
    )


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _signatures_match(expected: str, signature: str) -> bool:
    # Compare as bytes; compare_digest rejects non-ASCII str input.
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogatepass"))


def validate_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check a webhook signature against the raw, unparsed request body."""
    if not signature or not secret:
        return False
    return _signatures_match(sign(secret, raw_body), signature)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class RazorpayGateway:
    """HTTP client for the Razorpay orders, payments and refunds APIs."""

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        currency: str = "INR",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._key_id = key_id
        self._key_secret = key_secret
        self._base_url = base_url.rstrip("/")
        self.currency = currency
        self._timeout = timeout
        self._transport = transport
        if not self.is_available():
            logger.warning("Razorpay credentials not found. Payment features will be limited.")

    def is_available(self) -> bool:
        return bool(self._key_id and self._key_secret)

    @staticmethod
    def supported_payment_methods() -> tuple[str, ...]:
        return SUPPORTED_PAYMENT_METHODS

    def _require_configured(self) -> None:
        if not self.is_available():
            raise GatewayUnavailable("Payment gateway is not configured")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        moves_money: bool = False,
    ) -> dict[str, Any]:
        self._require_configured()
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=(self._key_id, self._key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json_body, headers=headers)
        except httpx.TransportError as exc:
            logger.error("Razorpay %s %s failed in transit: %s", method, path, exc)
            if moves_money:
                raise PaymentOutcomeUnknown(
                    "Payment gateway did not respond; outcome unknown", str(exc)
                ) from exc
            raise GatewayError("Payment gateway request failed", str(exc)) from exc

        if response.status_code >= 400:
            upstream = _error_description(response)
            logger.error("Razorpay %s %s returned %s: %s", method, path, response.status_code, upstream)
            if moves_money and response.status_code >= 500:
                raise PaymentOutcomeUnknown(
                    "Payment gateway error; outcome unknown", upstream, upstream_status=response.status_code
                )
            raise GatewayError("Payment gateway rejected the request", upstream, upstream_status=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("Payment gateway returned an unreadable response", response.text[:200]) from exc
        if not isinstance(data, dict):
            raise GatewayError("Payment gateway returned an unexpected response")
        return data

    async def create_order(
        self,
        amount: int,
        currency: str | None = None,
        receipt: str | None = None,
        notes: Mapping[str, str] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> GatewayOrder:
        """Create a payment order for ``amount`` rupees."""
        data = await self._request(
            "POST",
            "/orders",
            json_body={
                "amount": to_minor_units(amount),
                "currency": currency or self.currency,
                "receipt": receipt,
                "notes": dict(notes or {}),
            },
            idempotency_key=idempotency_key,
            moves_money=True,
        )
        order = _parse(GatewayOrder, data)
        logger.info("Payment order created: %s", order.id)
        return order

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the checkout signature HMAC-SHA256(order_id|payment_id) with the key secret."""
        self._require_configured()
        if not signature:
            return False
        expected = sign(self._key_secret, f"{order_id}|{payment_id}".encode())
        return _signatures_match(expected, signature)

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        return _parse(GatewayPayment, await self._request("GET", f"/payments/{payment_id}"))

    async def fetch_order(self, order_id: str) -> GatewayOrder:
        return _parse(GatewayOrder, await self._request("GET", f"/orders/{order_id}"))

    async def fetch_refund(self, refund_id: str) -> GatewayRefund:
        return _parse(GatewayRefund, await self._request("GET", f"/refunds/{refund_id}"))

    async def refund(
        self,
        payment_id: str,
        amount: int | None = None,
        notes: Mapping[str, str] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> GatewayRefund:
        """Refund ``amount`` rupees of a payment, or the whole payment when omitted."""
        body: dict[str, Any] = {"notes": dict(notes or {})}
        if amount is not None:
            body["amount"] = to_minor_units(amount)
        if idempotency_key:
            body["receipt"] = idempotency_key
        data = await self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            json_body=body,
            idempotency_key=idempotency_key,
            moves_money=True,
        )
        refund = _parse(GatewayRefund, data)
        logger.info("Payment refunded: %s, Refund ID: %s", payment_id, refund.id)
        return refund

    async def process_webhook_event(self, event: WebhookEvent, handler: WebhookHandler) -> WebhookOutcome:
        """Dispatch a parsed webhook event to the matching handler."""
        logger.info("Processing webhook event: %s", event.name)
        if event.type == WebhookEventType.PAYMENT_CAPTURED and event.payment:
            return await handler.on_payment_captured(event.payment)
        if event.type == WebhookEventType.PAYMENT_FAILED and event.payment:
            return await handler.on_payment_failed(event.payment)
        if event.type == WebhookEventType.REFUND_CREATED and event.refund:
            return await handler.on_refund_created(event.refund)
        if event.type == WebhookEventType.ORDER_PAID and event.order:
            return await handler.on_order_paid(event.order)

        logger.info("Unhandled webhook event ignored: %s", event.name or "<unnamed>")
        return WebhookOutcome.IGNORED


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("description"):
        return str(error["description"])
    return response.text[:200]

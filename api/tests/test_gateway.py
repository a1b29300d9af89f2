"""Razorpay adapter: signatures, unit conversion, failure mapping and webhook dispatch."""

import base64
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from fakes import KEY_ID, KEY_SECRET, WEBHOOK_SECRET, webhook_body

from servicehub.core.errors import GatewayError, GatewayUnavailable, PaymentOutcomeUnknown
from servicehub.services.gateway import (
    IDEMPOTENCY_HEADER,
    RazorpayGateway,
    WebhookEventType,
    WebhookOutcome,
    parse_webhook_event,
    sign,
    validate_webhook_signature,
)


def _gateway(handler=None, **kwargs) -> RazorpayGateway:
    transport = httpx.MockTransport(handler) if handler else None
    options = {"key_id": KEY_ID, "key_secret": KEY_SECRET, "transport": transport, **kwargs}
    return RazorpayGateway(**options)


def _checkout_signature(order_id: str, payment_id: str) -> str:
    return sign(KEY_SECRET, f"{order_id}|{payment_id}".encode())


# ---------------------------------------------------------------------------
# Checkout signature
# ---------------------------------------------------------------------------


class TestVerifySignature:
    def test_round_trip(self):
        signature = _checkout_signature("order_1", "pay_1")
        assert _gateway().verify_signature("order_1", "pay_1", signature) is True

    def test_mutated_signature(self):
        signature = _checkout_signature("order_1", "pay_1")
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]
        assert _gateway().verify_signature("order_1", "pay_1", flipped) is False

    def test_mutated_ids(self):
        signature = _checkout_signature("order_1", "pay_1")
        gateway = _gateway()
        assert gateway.verify_signature("order_2", "pay_1", signature) is False
        assert gateway.verify_signature("order_1", "pay_2", signature) is False

    def test_wrong_secret(self):
        signature = sign("another_secret", b"order_1|pay_1")
        assert _gateway().verify_signature("order_1", "pay_1", signature) is False

    def test_empty_signature(self):
        assert _gateway().verify_signature("order_1", "pay_1", "") is False

    def test_non_ascii_signature(self):
        assert _gateway().verify_signature("order_1", "pay_1", "\u00e9" * 64) is False


# ---------------------------------------------------------------------------
# Not configured
# ---------------------------------------------------------------------------


class TestNotConfigured:
    def _unconfigured(self):
        def handler(request):
            raise AssertionError("no request should be sent")

        return _gateway(handler, key_id="", key_secret="")

    def test_reports_unavailable(self):
        assert self._unconfigured().is_available() is False

    async def test_create_order(self):
        with pytest.raises(GatewayUnavailable):
            await self._unconfigured().create_order(1180, receipt="r")

    async def test_refund(self):
        with pytest.raises(GatewayUnavailable):
            await self._unconfigured().refund("pay_1", 100)

    def test_verify_signature(self):
        with pytest.raises(GatewayUnavailable):
            self._unconfigured().verify_signature("order_1", "pay_1", "sig")

    def test_payment_methods(self):
        assert RazorpayGateway.supported_payment_methods() == ("card", "netbanking", "wallet", "upi", "emi")


# ---------------------------------------------------------------------------
# Requests and conversion
# ---------------------------------------------------------------------------


async def test_create_order_converts_units_and_sends_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["key"] = request.headers.get(IDEMPOTENCY_HEADER)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(
            200,
            json={
                "id": "order_9",
                "entity": "order",
                "amount": 118000,
                "amount_paid": 0,
                "currency": "INR",
                "status": "created",
                "receipt": "booking_BK1",
                "notes": {"booking_id": "7"},
            },
        )

    order = await _gateway(handler).create_order(
        1180, receipt="booking_BK1", notes={"booking_id": "7"}, idempotency_key="key-1"
    )

    assert seen["path"] == "/v1/orders"
    assert seen["body"]["amount"] == 118000
    assert seen["body"]["currency"] == "INR"
    assert seen["key"] == "key-1"
    assert seen["auth"] == "Basic " + base64.b64encode(f"{KEY_ID}:{KEY_SECRET}".encode()).decode()
    assert (order.id, order.amount, order.notes) == ("order_9", 1180, {"booking_id": "7"})


async def test_partial_refund():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"id": "rfnd_1", "payment_id": "pay_1", "amount": 75000, "status": "processed", "notes": []},
        )

    refund = await _gateway(handler).refund("pay_1", 750, idempotency_key="key-2")

    assert seen["path"] == "/v1/payments/pay_1/refund"
    assert seen["body"]["amount"] == 75000
    assert (refund.id, refund.amount, refund.notes) == ("rfnd_1", 750, {})


async def test_full_refund_omits_amount():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        body = {"id": "rfnd_2", "payment_id": "pay_1", "amount": 100000, "status": "processed"}
        return httpx.Response(200, json=body)

    await _gateway(handler).refund("pay_1")
    assert "amount" not in seen["body"]


async def test_fetch_payment():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        return httpx.Response(
            200,
            json={
                "id": "pay_1",
                "amount": 118000,
                "currency": "INR",
                "status": "captured",
                "order_id": "order_1",
                "method": "upi",
                "notes": {"booking_id": "3"},
                "vpa": "asha@upi",
            },
        )

    payment = await _gateway(handler).fetch_payment("pay_1")
    assert (payment.amount, payment.order_id, payment.notes["booking_id"]) == (1180, "order_1", "3")


# ---------------------------------------------------------------------------
# Failure mapping
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_refund_timeout_is_unknown_outcome(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PaymentOutcomeUnknown):
            await _gateway(handler).refund("pay_1", 100, idempotency_key="key-3")

    async def test_create_order_5xx_is_unknown_outcome(self):
        with pytest.raises(PaymentOutcomeUnknown) as exc:
            await _gateway(lambda r: httpx.Response(502, text="Bad Gateway")).create_order(100)
        assert exc.value.upstream_status == 502

    async def test_rejection_carries_upstream_message(self):
        def handler(request):
            return httpx.Response(
                400,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "The amount must be atleast INR 1.00"}},
            )

        with pytest.raises(GatewayError) as exc:
            await _gateway(handler).create_order(0)
        assert not isinstance(exc.value, PaymentOutcomeUnknown)
        assert exc.value.upstream_message == "The amount must be atleast INR 1.00"
        assert exc.value.upstream_status == 400

    async def test_read_failures_are_plain_gateway_errors(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError) as exc:
            await _gateway(handler).fetch_payment("pay_1")
        assert not isinstance(exc.value, PaymentOutcomeUnknown)

    async def test_unexpected_response_shape(self):
        with pytest.raises(GatewayError):
            await _gateway(lambda r: httpx.Response(200, json={"unexpected": True})).fetch_order("order_1")


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhookSignature:
    def test_valid(self):
        body = json.dumps(webhook_body("payment.captured")).encode()
        assert validate_webhook_signature(body, sign(WEBHOOK_SECRET, body), WEBHOOK_SECRET)

    def test_reserialized_body_fails(self):
        payload = webhook_body("payment.captured")
        raw = json.dumps(payload, indent=2).encode()
        signature = sign(WEBHOOK_SECRET, raw)
        assert not validate_webhook_signature(json.dumps(payload).encode(), signature, WEBHOOK_SECRET)

    def test_missing_signature_or_secret(self):
        body = b"{}"
        assert not validate_webhook_signature(body, None, WEBHOOK_SECRET)
        assert not validate_webhook_signature(body, sign(WEBHOOK_SECRET, body), "")

    def test_non_ascii_signature(self):
        assert not validate_webhook_signature(b"{}", "\u00e9" * 64, WEBHOOK_SECRET)


class TestWebhookEvents:
    def test_parse_payment_captured(self):
        payload = webhook_body(
            "payment.captured",
            payment={"id": "pay_1", "amount": 100000, "status": "captured", "notes": {"booking_id": "1"}},
        )
        event = parse_webhook_event(payload)
        assert event.type == WebhookEventType.PAYMENT_CAPTURED
        assert event.payment.amount == 1000
        assert event.refund is None

    def test_unknown_event_is_ignored_variant(self):
        event = parse_webhook_event(webhook_body("subscription.charged"))
        assert event.type == WebhookEventType.IGNORED
        assert event.name == "subscription.charged"

    async def test_dispatch(self):
        handler = AsyncMock()
        handler.on_refund_created.return_value = WebhookOutcome.PROCESSED
        payload = webhook_body(
            "refund.created", refund={"id": "rfnd_1", "payment_id": "pay_1", "amount": 50000, "status": "processed"}
        )

        outcome = await _gateway().process_webhook_event(parse_webhook_event(payload), handler)

        assert outcome == WebhookOutcome.PROCESSED
        handler.on_refund_created.assert_awaited_once()
        assert handler.on_refund_created.await_args.args[0].amount == 500
        handler.on_payment_captured.assert_not_awaited()

    async def test_dispatch_ignored(self):
        handler = AsyncMock()
        outcome = await _gateway().process_webhook_event(parse_webhook_event(webhook_body("invoice.paid")), handler)
        assert outcome == WebhookOutcome.IGNORED
        handler.on_payment_captured.assert_not_awaited()
        handler.on_order_paid.assert_not_awaited()

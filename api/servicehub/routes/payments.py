"""Payment routes: order creation, checkout verification, refunds and the gateway webhook."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from servicehub.core.config import settings
from servicehub.core.dependencies import get_caller, get_gateway, get_reconciliation_service
from servicehub.core.errors import Forbidden, InvalidSignature
from servicehub.domain.booking import Booking, PaymentStatus
from servicehub.domain.caller import Caller
from servicehub.schemas import (
    ApiResponse,
    BookingOut,
    CreateOrderOut,
    CreateOrderRequest,
    OrderOut,
    Pagination,
    PaymentMethodsOut,
    RefundOut,
    RefundRequest,
    RefundResultOut,
    TransactionList,
    TransactionOut,
    VerifyPaymentRequest,
)
from servicehub.services.gateway import GatewayOrder, GatewayPayment, GatewayRefund, RazorpayGateway
from servicehub.services.pricing import calculate_platform_fee
from servicehub.services.reconciliation import ReconciliationService

router = APIRouter(prefix="/payments", tags=["payments"])

MAX_PAGE_SIZE = 50
SIGNATURE_HEADERS = ("x-signature", "x-razorpay-signature")


def _transaction(booking: Booking) -> TransactionOut:
    fee = calculate_platform_fee(booking.pricing.total_amount, settings.platform_fee_rate)
    return TransactionOut(
        id=booking.id,
        booking_number=booking.booking_number,
        service_id=booking.service_id,
        amount=booking.pricing.total_amount,
        platform_fee=fee.fee,
        provider_payout=fee.net_amount,
        payment_status=booking.payment.status,
        transaction_id=booking.payment.transaction_id,
        paid_amount=booking.payment.paid_amount,
        paid_at=booking.payment.paid_at,
        refund_amount=booking.payment.refund_amount,
        refunded_at=booking.payment.refunded_at,
        scheduled_date=booking.scheduled_date,
        created_at=booking.created_at,
    )


def _require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("Admin access required")


@router.post("/create-order", response_model=ApiResponse[CreateOrderOut])
async def create_order(
    body: CreateOrderRequest,
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.create_payment_order_for_booking(body.booking_id, caller)
    data = CreateOrderOut(
        order=OrderOut.model_validate(result.order),
        booking_id=result.booking.id,
        booking_number=result.booking.booking_number,
        key_id=settings.gateway_key_id,
    )
    return ApiResponse(message="Payment order created successfully", data=data)


@router.post("/verify", response_model=ApiResponse[BookingOut])
async def verify_payment(
    body: VerifyPaymentRequest,
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    booking = await service.verify_payment(
        body.booking_id,
        caller,
        order_id=body.razorpay_order_id,
        payment_id=body.razorpay_payment_id,
        signature=body.razorpay_signature,
    )
    return ApiResponse(message="Payment verified successfully", data=BookingOut.model_validate(booking))


@router.post("/refund", response_model=ApiResponse[RefundResultOut])
async def process_refund(
    body: RefundRequest,
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    result = await service.process_refund(body.booking_id, caller, body.reason, retry_unknown=body.retry_unknown)
    data = RefundResultOut(
        refund=RefundOut.model_validate(result.refund),
        booking=BookingOut.model_validate(result.booking),
    )
    return ApiResponse(message="Refund processed successfully", data=data)


@router.get("/transactions", response_model=ApiResponse[TransactionList])
async def list_transactions(
    status_filter: PaymentStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    limit = min(limit, MAX_PAGE_SIZE)
    bookings, total = await service.list_transactions(caller, status_filter, page, limit)
    data = TransactionList(
        transactions=[_transaction(b) for b in bookings],
        pagination=Pagination.build(page, limit, total),
    )
    return ApiResponse(message="Transactions retrieved successfully", data=data)


@router.get("/methods", response_model=ApiResponse[PaymentMethodsOut])
async def payment_methods(gateway: RazorpayGateway = Depends(get_gateway)):
    data = PaymentMethodsOut(
        available=gateway.is_available(),
        methods=list(gateway.supported_payment_methods()),
        currency=gateway.currency,
    )
    return ApiResponse(message="Payment methods retrieved successfully", data=data)


# ---------------------------------------------------------------------------
# Gateway lookups (admin)
# ---------------------------------------------------------------------------


@router.get("/gateway/payments/{payment_id}", response_model=ApiResponse[GatewayPayment])
async def payment_details(
    payment_id: str,
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    _require_admin(caller)
    return ApiResponse(message="Payment details retrieved", data=await service.get_payment_details(payment_id))


@router.get("/gateway/orders/{order_id}", response_model=ApiResponse[GatewayOrder])
async def order_details(
    order_id: str,
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    _require_admin(caller)
    return ApiResponse(message="Order details retrieved", data=await service.get_order_details(order_id))


@router.get("/gateway/refunds/{refund_id}", response_model=ApiResponse[GatewayRefund])
async def refund_details(
    refund_id: str,
    caller: Caller = Depends(get_caller),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    _require_admin(caller)
    return ApiResponse(message="Refund details retrieved", data=await service.get_refund_details(refund_id))


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


@router.post("/webhook/gateway")
async def gateway_webhook(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Handle payment gateway webhook events.

    The signature is checked against the raw body exactly as received; the
    rejection message never says why.
    """
    payload = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)

    try:
        await service.handle_webhook(payload, signature)
    except InvalidSignature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature") from None

    return {"status": "ok"}

"""
Razorpay payment routes: webhook, checkout verification and payment status.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.auth import CurrentUser, get_current_user
from app.database import get_db
from app.http.requests.schemas import VerifyPaymentRequest
from app.services.errors import AuthenticationError, ProviderError, ValidationError
from app.services.idempotency import IdempotencyLedger, get_idempotency_ledger
from app.services.order_locator import locate
from app.services.payment_reconciler import PaymentWebhookReconciler
from app.services.razorpay_service import RazorpayService, get_razorpay_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    razorpay: RazorpayService = Depends(get_razorpay_service),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
):
    """
    Razorpay webhook. The signature covers the raw bytes, so the body is read before any parsing.
    400 on a bad signature, 500 when the secret is not configured, 200 otherwise.
    """
    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    reconciler = PaymentWebhookReconciler(db, razorpay, ledger)
    try:
        return await reconciler.handle(raw_body, signature)
    except AuthenticationError as e:
        # Bad signature is a 400 here, not the 401 shipping webhooks use.
        raise ValidationError(e.message, rule="signature")


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    razorpay: RazorpayService = Depends(get_razorpay_service),
    ledger: IdempotencyLedger = Depends(get_idempotency_ledger),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Checkout callback from the storefront: razorpay_order_id|razorpay_payment_id signed with the key secret."""
    order = locate(db, body.order_id, body.order_type).order
    order = await PaymentWebhookReconciler(db, razorpay, ledger).confirm_checkout(
        order, body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature
    )
    return {
        "success": True,
        "message": "Payment verified successfully",
        "data": {
            "orderId": order.id,
            "status": order.status.value,
            "paymentStatus": order.payment_status.value,
        },
    }


@router.get("/status/{order_id}")
async def payment_status(
    order_id: str,
    order_type: Optional[str] = Query(None, alias="orderType"),
    db: Session = Depends(get_db),
    razorpay: RazorpayService = Depends(get_razorpay_service),
    current_user: CurrentUser = Depends(get_current_user),
):
    order = locate(db, order_id, order_type).order
    razorpay_status = None
    if order.payment_provider_payment_id and razorpay.key_id:
        try:
            razorpay_status = (await razorpay.fetch_payment(order.payment_provider_payment_id)).get("status")
        except ProviderError as e:
            logger.warning("Could not fetch Razorpay payment %s: %s", order.payment_provider_payment_id, e.message)
    return {
        "success": True,
        "data": {
            "orderId": order.id,
            "orderStatus": order.status.value,
            "paymentStatus": order.payment_status.value,
            "razorpayStatus": razorpay_status,
            "razorpayOrderId": order.payment_provider_order_id,
            "razorpayPaymentId": order.payment_provider_payment_id,
            "paidAt": order.payment_paid_at.isoformat() if order.payment_paid_at else None,
            "refundStatus": order.refund_status.value,
            "refundAmount": str(order.refund_amount or 0),
            "refunds": list(order.refunds or []),
        },
    }

"""
Payment API endpoints for Razorpay integration.

Handles:
- Payment order creation for the amount due
- Checkout signature verification
- Legacy combined process endpoint
- Webhook handling for payment events
- Amount calculation and payment status
- Admin refunds
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request

from app.api.deps import DB, AdminUser, CurrentUser, Gateway
from app.schemas.common import APIResponse
from app.schemas.payment import (
    CalculatePaymentRequest,
    CreatePaymentIntentRequest,
    PaymentCalculation,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentVerificationResponse,
    ProcessPaymentRequest,
    RefundRequest,
    VerifyPaymentRequest,
    WebhookAck,
)
from app.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()


# ==================== CHECKOUT ====================

@router.post("/create-order", response_model=APIResponse[PaymentIntentResponse])
async def create_payment_order(
    data: CreatePaymentIntentRequest,
    db: DB,
    gateway: Gateway,
    principal: CurrentUser,
):
    """
    Create a Razorpay order for the amount currently due.

    The returned details are used by the frontend to launch Razorpay's
    checkout.
    """
    intent = await PaymentService(db, gateway).create_intent(data.order_id, data.amount, principal)
    return APIResponse(message="Payment order created", data=intent)


@router.post("/verify", response_model=APIResponse[PaymentVerificationResponse])
async def verify_payment(
    data: VerifyPaymentRequest,
    db: DB,
    gateway: Gateway,
    principal: CurrentUser,
):
    """Verify the checkout callback signature and settle the payment."""
    result = await PaymentService(db, gateway).verify(
        data.gateway_order_id,
        data.gateway_payment_id,
        data.signature,
        payment_id=data.payment_id,
        principal=principal,
    )
    return APIResponse(message="Payment verified successfully", data=result)


@router.post("/process", response_model=APIResponse[PaymentVerificationResponse])
async def process_payment(
    data: ProcessPaymentRequest,
    db: DB,
    gateway: Gateway,
    principal: CurrentUser,
):
    """Older clients: verification keyed by the order as well."""
    result = await PaymentService(db, gateway).process_payment(
        data.order_id,
        data.gateway_order_id,
        data.gateway_payment_id,
        data.signature,
        data.payment_id,
        principal,
    )
    return APIResponse(message="Payment processed successfully", data=result)


@router.post("/webhook", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    db: DB,
    gateway: Gateway,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
):
    """
    Handle Razorpay webhook events.

    Once the signature checks out the response is always success, so the
    gateway does not keep redelivering events that were already applied.
    """
    body = await request.body()
    await PaymentService(db, gateway).handle_webhook(body, x_razorpay_signature)
    return WebhookAck()


@router.post("/calculate", response_model=APIResponse[PaymentCalculation])
async def calculate_payment(
    data: CalculatePaymentRequest,
    db: DB,
    gateway: Gateway,
    principal: CurrentUser,
):
    result = await PaymentService(db, gateway).calculate(data.order_id, principal)
    return APIResponse(data=result)


@router.get("/{payment_id}", response_model=APIResponse[PaymentResponse])
async def get_payment_status(payment_id: str, db: DB, gateway: Gateway, principal: CurrentUser):
    payment = await PaymentService(db, gateway).get_payment(payment_id, principal)
    return APIResponse(data=payment)


# ==================== ADMIN ====================

@admin_router.post("/{payment_id}/refund", response_model=APIResponse[PaymentResponse])
async def refund_payment(
    payment_id: str,
    data: RefundRequest,
    db: DB,
    gateway: Gateway,
    admin: AdminUser,
):
    """Refund a completed payment, fully or partially."""
    payment = await PaymentService(db, gateway).refund(payment_id, data.amount, data.reason, admin)
    return APIResponse(message="Refund initiated", data=payment)

"""Payment schemas for Razorpay API requests/responses."""
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, Field

from app.schemas.base import CamelModel, BaseCreateSchema


_ORDER_REF = AliasChoices("orderId", "order_id")
_GATEWAY_ORDER_ID = AliasChoices(
    "gatewayOrderId", "gateway_order_id", "razorpayOrderId", "razorpay_order_id"
)
_GATEWAY_PAYMENT_ID = AliasChoices(
    "gatewayPaymentId", "gateway_payment_id", "razorpayPaymentId", "razorpay_payment_id"
)
_SIGNATURE = AliasChoices("signature", "razorpaySignature", "razorpay_signature")


class CreatePaymentIntentRequest(BaseCreateSchema):
    """API request to create a gateway payment order for an order's amount due."""
    order_id: str = Field(..., min_length=1, validation_alias=_ORDER_REF, description="Order UUID or human order id")
    amount: float = Field(..., gt=0, description="Amount in INR")


class PaymentIntentResponse(CamelModel):
    """Everything the checkout widget needs to launch."""
    payment_id: str
    order_id: str
    amount: float
    currency: str
    gateway_order_id: str
    razorpay_order_id: str
    key: str


class VerifyPaymentRequest(BaseCreateSchema):
    """API request to verify a checkout callback."""
    gateway_order_id: str = Field(..., validation_alias=_GATEWAY_ORDER_ID, description="Razorpay order ID")
    gateway_payment_id: str = Field(..., validation_alias=_GATEWAY_PAYMENT_ID, description="Razorpay payment ID")
    signature: str = Field(..., validation_alias=_SIGNATURE, description="Razorpay signature for verification")
    payment_id: Optional[str] = Field(None, validation_alias=AliasChoices("paymentId", "payment_id"))


class ProcessPaymentRequest(VerifyPaymentRequest):
    """Legacy combined endpoint: verification plus an order cross-check."""
    order_id: str = Field(..., min_length=1, validation_alias=_ORDER_REF)


class PaymentVerificationResponse(CamelModel):
    order_id: str
    payment_id: str
    payment_status: str
    verified_at: datetime


class CalculatePaymentRequest(BaseCreateSchema):
    order_id: str = Field(..., min_length=1, validation_alias=_ORDER_REF)


class PaymentCalculation(CamelModel):
    """Amount currently due on an order and how it was derived."""
    order_id: str
    payment_option: str
    payment_status: str
    purpose: Optional[str] = None
    final_total: float
    amount_paid: float
    advance_amount: Optional[float] = None
    remaining_amount: Optional[float] = None
    amount_due: float
    currency: str


class PaymentResponse(CamelModel):
    payment_id: str
    order_id: str
    amount: float
    currency: str
    purpose: str
    payment_method: str
    gateway: str
    gateway_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refunded_amount: Optional[float] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


class RefundRequest(BaseCreateSchema):
    """API request to refund a completed payment, fully or partially."""
    amount: Optional[float] = Field(None, gt=0, description="Refund amount (for partial refund)")
    reason: Optional[str] = Field(None, max_length=500, description="Reason for refund")


class WebhookAck(CamelModel):
    success: bool = True

from pydantic import AliasChoices, Field, field_validator
from typing import Annotated, Optional, List, Literal, Union
from datetime import datetime
import uuid

from app.core.money import round_money
from app.models.service import TIME_SLOTS
from app.schemas.base import CamelModel, BaseCreateSchema, BaseResponseSchema


PaymentOptionLiteral = Literal["payNow", "payAdvance", "payLater"]

ORDER_MONEY_FIELDS = (
    "total",
    "product_discount",
    "payment_discount",
    "coupon_discount",
    "discount",
    "final_total",
    "advance_amount",
    "remaining_amount",
    "amount_paid",
)

ITEM_MONEY_FIELDS = (
    "price",
    "list_price",
    "unit_price",
    "monthly_price",
    "security_deposit",
    "installation_charges",
)


# ==================== ORDER ITEM SCHEMAS ====================

class BookingDetails(CamelModel):
    """Scheduling and contact details for a service item."""
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    date: Optional[str] = Field(
        None,
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        validation_alias=AliasChoices("date", "preferredDate", "preferred_date"),
    )
    time: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("time", "preferredTime", "preferred_time"),
    )
    address: Optional[str] = None
    near_landmark: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("nearLandmark", "near_landmark", "landmark"),
    )
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    alternate_number: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("alternateNumber", "alternate_number"),
    )
    address_type: Literal["myself", "other"] = Field(
        "myself",
        validation_alias=AliasChoices("addressType", "address_type"),
    )
    contact_name: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("contactName", "contact_name"),
    )
    contact_phone: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("contactPhone", "contact_phone"),
    )
    description: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("description", "notes"),
    )
    images: Optional[List[str]] = None

    @field_validator("time")
    @classmethod
    def check_time_slot(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in TIME_SLOTS:
            raise ValueError(f"time must be one of {', '.join(TIME_SLOTS)}")
        return v


class RentalItemInput(CamelModel):
    """Rental line: either a per-duration price or a monthly plan."""
    type: Literal["rental"] = "rental"
    product_id: uuid.UUID = Field(
        ...,
        validation_alias=AliasChoices("productId", "product_id", "acId", "ac_id"),
    )
    quantity: int = Field(1, ge=1)
    price: Optional[float] = Field(None, ge=0)
    duration: Optional[int] = None
    is_monthly_payment: bool = Field(
        False,
        validation_alias=AliasChoices("isMonthlyPayment", "is_monthly_payment"),
    )
    monthly_price: Optional[float] = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("monthlyPrice", "monthly_price"),
    )
    monthly_tenure: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("monthlyTenure", "monthly_tenure"),
    )
    security_deposit: Optional[float] = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("securityDeposit", "security_deposit"),
    )


class ServiceItemInput(CamelModel):
    """Service line; the price is taken as supplied."""
    type: Literal["service"] = "service"
    service_id: uuid.UUID = Field(
        ...,
        validation_alias=AliasChoices("serviceId", "service_id"),
    )
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    booking_details: Optional[BookingDetails] = Field(
        None,
        validation_alias=AliasChoices("bookingDetails", "booking_details"),
    )


OrderItemInput = Annotated[Union[RentalItemInput, ServiceItemInput], Field(discriminator="type")]


class CustomerInfo(CamelModel):
    user_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class PaymentProof(CamelModel):
    """Gateway checkout result attached to a payNow order at creation."""
    gateway_order_id: str = Field(
        ...,
        validation_alias=AliasChoices(
            "gatewayOrderId", "gateway_order_id", "razorpayOrderId", "razorpay_order_id"
        ),
    )
    gateway_payment_id: str = Field(
        ...,
        validation_alias=AliasChoices(
            "gatewayPaymentId", "gateway_payment_id", "razorpayPaymentId", "razorpay_payment_id"
        ),
    )
    signature: str = Field(
        ...,
        validation_alias=AliasChoices(
            "signature", "razorpaySignature", "razorpay_signature"
        ),
    )


# ==================== ORDER SCHEMAS ====================

class OrderCreate(BaseCreateSchema):
    """
    Order creation request.

    Monetary figures supplied by the client (total, discount, finalTotal,
    advanceAmount, remainingAmount) are cross-checked, never trusted.
    """
    order_id: Optional[str] = Field(None, min_length=1, max_length=50)
    items: List[OrderItemInput] = Field(..., min_length=1)
    payment_option: PaymentOptionLiteral
    coupon_code: Optional[str] = Field(None, max_length=50)
    customer_info: Optional[CustomerInfo] = None
    shipping_address: Optional[str] = None
    notes: Optional[str] = None
    priority_service_scheduling: Optional[bool] = None
    advance_amount: Optional[float] = None
    remaining_amount: Optional[float] = None
    total: Optional[float] = None
    discount: Optional[float] = None
    final_total: Optional[float] = None
    payment_proof: Optional[PaymentProof] = Field(
        None,
        validation_alias=AliasChoices("paymentProof", "payment_proof", "paymentDetails"),
    )

    @field_validator("items", mode="before")
    @classmethod
    def infer_item_type(cls, v):
        """Older clients omit `type`; a serviceId marks a service line."""
        if not isinstance(v, list):
            return v
        items = []
        for item in v:
            if isinstance(item, dict) and not item.get("type"):
                is_service = "serviceId" in item or "service_id" in item
                item = {**item, "type": "service" if is_service else "rental"}
            items.append(item)
        return items

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None


class OrderCancelRequest(BaseCreateSchema):
    reason: Optional[str] = Field(
        None,
        max_length=500,
        validation_alias=AliasChoices("reason", "cancellationReason", "cancellation_reason"),
    )


class OrderStatusUpdate(BaseCreateSchema):
    status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "completed"]


# ==================== RESPONSE SCHEMAS ====================

class ProductSnapshot(CamelModel):
    id: uuid.UUID
    name: str
    category: str
    brand: Optional[str] = None
    model: Optional[str] = None
    type: Optional[str] = None
    capacity: Optional[str] = None
    location: Optional[str] = None
    discount: float = 0
    images: Optional[List[str]] = None


class ServiceSnapshot(CamelModel):
    id: uuid.UUID
    title: str
    category: Optional[str] = None
    price: Optional[float] = None


class OrderItemResponse(CamelModel):
    type: str
    product_id: Optional[uuid.UUID] = None
    service_id: Optional[uuid.UUID] = None
    quantity: int = 1
    price: float
    list_price: Optional[float] = None
    unit_price: Optional[float] = None
    duration: Optional[int] = None
    is_monthly_payment: bool = False
    monthly_price: Optional[float] = None
    monthly_tenure: Optional[int] = None
    security_deposit: Optional[float] = None
    installation_charges: Optional[float] = None
    product: Optional[ProductSnapshot] = None
    service: Optional[ServiceSnapshot] = None
    booking_details: Optional[BookingDetails] = None


class PricingWarning(CamelModel):
    field: str
    client_value: float
    server_value: float


class OrderResponse(BaseResponseSchema):
    """Full order with every monetary field rounded to 2 decimals."""
    id: uuid.UUID
    order_id: str
    user_id: str
    items: List[OrderItemResponse]
    total: float
    product_discount: float = 0
    payment_discount: float = 0
    coupon_discount: float = 0
    discount: float = 0
    final_total: float
    advance_amount: Optional[float] = None
    remaining_amount: Optional[float] = None
    amount_paid: float = 0
    coupon_code: Optional[str] = None
    payment_option: str
    payment_status: str
    status: str
    priority_service_scheduling: bool = False
    customer_info: Optional[CustomerInfo] = None
    shipping_address: Optional[str] = None
    notes: Optional[str] = None
    pricing_warnings: Optional[List[PricingWarning]] = None
    needs_reconciliation: bool = False
    reconciliation_note: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator(*ORDER_MONEY_FIELDS)
    @classmethod
    def round_amounts(cls, v: Optional[float]) -> Optional[float]:
        return None if v is None else round_money(v)


class OrderCreated(CamelModel):
    order_id: str
    order: OrderResponse
    created_at: datetime

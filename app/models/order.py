import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, ForeignKey, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import JSONType, Money, UTCDateTime, UUIDType, utc_now


class OrderStatus(str, Enum):
    """Order lifecycle."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Order-level payment status."""
    PENDING = "pending"
    PAID = "paid"
    ADVANCE_PAID = "advance_paid"


class PaymentOption(str, Enum):
    PAY_NOW = "payNow"
    PAY_ADVANCE = "payAdvance"
    PAY_LATER = "payLater"


class ItemType(str, Enum):
    RENTAL = "rental"
    SERVICE = "service"


class TransactionStatus(str, Enum):
    """Status of a single Payment attempt."""
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class PaymentPurpose(str, Enum):
    """Which part of the order a Payment settles."""
    FULL = "full"
    ADVANCE = "advance"
    REMAINING = "remaining"


# Fulfilment progression driven by admins; cancellation has its own path.
ORDER_STATUS_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: {OrderStatus.COMPLETED.value},
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}

NON_CANCELLABLE_STATUSES = {
    OrderStatus.DELIVERED.value,
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
}


class Order(Base):
    """
    Aggregate root of a purchase.

    Items are embedded as a JSON array; each carries a snapshot of the
    product or service it refers to. All money columns hold values rounded
    to 2 decimals and satisfy
        final_total == round(total - payment_discount - coupon_discount)
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_status_created', 'status', 'created_at'),
        Index('ix_order_user_created', 'user_id', 'created_at'),
        Index('ix_order_payment_status', 'payment_status', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Human-readable identifier, e.g. ORD-2026-001
    order_id: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    items: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Money
    total: Mapped[float] = mapped_column(Money(), nullable=False, default=0)
    product_discount: Mapped[float] = mapped_column(Money(), nullable=False, default=0)
    payment_discount: Mapped[float] = mapped_column(Money(), nullable=False, default=0)
    coupon_discount: Mapped[float] = mapped_column(Money(), nullable=False, default=0)
    discount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        default=0,
        comment="payment_discount + coupon_discount"
    )
    final_total: Mapped[float] = mapped_column(Money(), nullable=False, default=0)
    advance_amount: Mapped[Optional[float]] = mapped_column(Money(), nullable=True)
    remaining_amount: Mapped[Optional[float]] = mapped_column(Money(), nullable=True)
    amount_paid: Mapped[float] = mapped_column(Money(), nullable=False, default=0)

    coupon_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    payment_option: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="payNow, payAdvance, payLater"
    )
    payment_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        comment="pending, paid, advance_paid"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OrderStatus.PENDING.value,
        index=True
    )
    priority_service_scheduling: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    customer_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    shipping_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Client figures that disagreed with the server computation
    pricing_warnings: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Set when a rented product could not be reserved for this order
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciliation_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, comment="user, admin")
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.created_at",
        lazy="noload",
    )

    @property
    def service_items(self) -> list[dict]:
        return [item for item in self.items or [] if item.get("type") == ItemType.SERVICE.value]

    def __repr__(self) -> str:
        return f"<Order(order_id='{self.order_id}', status='{self.status}', final_total={self.final_total})>"


class Payment(Base):
    """One attempt to pay a specific amount against an order."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    payment_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount: Mapped[float] = mapped_column(Money(), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    purpose: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentPurpose.FULL.value,
        comment="full, advance, remaining"
    )
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="razorpay")
    gateway: Mapped[str] = mapped_column(String(20), nullable=False, default="razorpay")

    # Gateway references
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True,
        comment="Pending, Completed, Failed, Refunded"
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refunded_amount: Mapped[Optional[float]] = mapped_column(Money(), nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payments", lazy="noload")

    def __repr__(self) -> str:
        return f"<Payment(payment_id='{self.payment_id}', amount={self.amount}, status='{self.status}')>"

"""
Coupon Model

Supports percentage and fixed discounts, global and per-user usage limits,
validity windows and category/duration restrictions.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, Integer, Text, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, Money, UTCDateTime, UUIDType, utc_now


class DiscountType(str, Enum):
    """Discount type enumeration."""
    PERCENTAGE = "percentage"  # e.g., 10% off
    FIXED = "fixed"  # e.g., ₹100 off


class Coupon(Base):
    """
    Coupon/Promo code model.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        Index('ix_coupon_code_active', 'code', 'is_active'),
        Index('ix_coupon_validity', 'valid_from', 'valid_until'),
        CheckConstraint('valid_from <= valid_until', name='ck_coupon_validity_window'),
        CheckConstraint(
            'usage_limit IS NULL OR usage_count <= usage_limit',
            name='ck_coupon_usage_within_limit'
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Coupon Code
    code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique coupon code, stored upper-case"
    )

    # Display Info
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default="")

    # Discount Type & Value
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DiscountType.PERCENTAGE.value,
        comment="percentage, fixed"
    )
    value: Mapped[float] = mapped_column(Money(), nullable=False)
    max_discount: Mapped[Optional[float]] = mapped_column(
        Money(),
        nullable=True,
        comment="Cap on discount for percentage type"
    )
    min_amount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        default=0,
        comment="Minimum order total to apply coupon"
    )

    # Validity Period
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Usage Limits
    usage_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Total times this coupon can be used (null = unlimited)"
    )
    usage_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of times coupon has been redeemed"
    )
    user_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Times each user can use this coupon (null = unlimited)"
    )

    # Restrictions (empty = unrestricted)
    applicable_categories: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    applicable_durations: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    @property
    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    def __repr__(self) -> str:
        return f"<Coupon(code='{self.code}', type='{self.type}', value={self.value})>"


class CouponUsage(Base):
    """
    Append-only ledger of coupon redemptions.

    Per-user limits are counted from this table; rows are never removed.
    """
    __tablename__ = "coupon_usage"
    __table_args__ = (
        Index('ix_coupon_usage_coupon_user', 'coupon_id', 'user_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    coupon_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    discount_amount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        comment="Actual discount applied"
    )
    used_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)

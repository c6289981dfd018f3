"""Coupon schemas for validation, listing and admin management."""
from datetime import datetime
from typing import Annotated, Optional, List, Literal
import uuid

from pydantic import AfterValidator, Field, field_validator

from app.models.product import ProductCategory
from app.schemas.base import (
    CamelModel,
    BaseCreateSchema,
    BaseUpdateSchema,
    BaseResponseSchema,
    UTCDatetime,
)


CATEGORY_ALIASES = {
    "Washing Machine": ProductCategory.WASHING_MACHINE.value,
    "washing machine": ProductCategory.WASHING_MACHINE.value,
}


def normalize_category(value: Optional[str]) -> Optional[str]:
    """Map display spellings of a category onto its canonical value."""
    if value is None:
        return None
    value = value.strip()
    return CATEGORY_ALIASES.get(value, value)


CategoryName = Annotated[str, AfterValidator(normalize_category)]


# ==================== VALIDATION ====================

class CouponItemContext(CamelModel):
    """Line-item context used for category/duration restrictions."""
    type: Literal["rental", "service"] = "rental"
    category: Optional[CategoryName] = None
    duration: Optional[int] = None


class CouponValidateRequest(BaseCreateSchema):
    """Request to validate a coupon code against an order total."""
    code: str = Field(..., min_length=1, max_length=50)
    order_total: float = Field(..., ge=0)
    user_id: Optional[str] = None
    items: Optional[List[CouponItemContext]] = None


class CouponValidation(CamelModel):
    """Successful validation result."""
    code: str
    title: str
    type: str
    value: float
    discount_amount: float
    min_amount: float
    max_discount: Optional[float] = None
    valid_until: datetime


# ==================== ADMIN ====================

class CouponBase(BaseCreateSchema):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = ""
    type: Literal["percentage", "fixed"]
    value: float
    min_amount: Optional[float] = Field(0, ge=0)
    max_discount: Optional[float] = None
    valid_from: Optional[UTCDatetime] = None
    valid_until: UTCDatetime
    usage_limit: Optional[int] = None
    user_limit: Optional[int] = None
    applicable_categories: List[CategoryName] = Field(default_factory=list)
    applicable_durations: List[int] = Field(default_factory=list)
    is_active: bool = True


class CouponCreate(CouponBase):
    code: str = Field(..., min_length=3, max_length=20, pattern=r"^[A-Za-z0-9_-]+$")

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.strip().upper()


class CouponUpdate(BaseUpdateSchema):
    """Partial update; the code itself is immutable."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[float] = None
    min_amount: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = None
    valid_from: Optional[UTCDatetime] = None
    valid_until: Optional[UTCDatetime] = None
    usage_limit: Optional[int] = None
    user_limit: Optional[int] = None
    applicable_categories: Optional[List[CategoryName]] = None
    applicable_durations: Optional[List[int]] = None
    is_active: Optional[bool] = None


class CouponResponse(BaseResponseSchema):
    id: uuid.UUID
    code: str
    title: str
    description: Optional[str] = None
    type: str
    value: float
    min_amount: float
    max_discount: Optional[float] = None
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = None
    usage_count: int
    user_limit: Optional[int] = None
    applicable_categories: List[str] = []
    applicable_durations: List[int] = []
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AvailableCoupon(BaseResponseSchema):
    """Customer-facing view of a redeemable coupon."""
    code: str
    title: str
    description: Optional[str] = None
    type: str
    value: float
    min_amount: float
    max_discount: Optional[float] = None
    valid_until: datetime
    applicable_categories: List[str] = []
    applicable_durations: List[int] = []


class CouponStatistics(CamelModel):
    total_usage: int = 0
    total_discount: float = 0
    unique_users: int = 0
    remaining_usage: Optional[int] = None


class CouponDetail(CouponResponse):
    statistics: CouponStatistics


class CouponStatsSummary(CamelModel):
    code: str
    title: str
    usage_count: int
    usage_limit: Optional[int] = None


class CouponStatsResponse(CamelModel):
    coupon: CouponStatsSummary
    statistics: CouponStatistics

"""
Coupon API Endpoints

Validates coupon codes at checkout and lists the coupons a customer can use.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Query

from app.api.deps import DB, OptionalUser
from app.schemas.common import APIResponse
from app.schemas.coupon import AvailableCoupon, CouponValidateRequest, CouponValidation
from app.services.coupon_service import CouponService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/validate", response_model=APIResponse[CouponValidation])
async def validate_coupon(
    request: CouponValidateRequest,
    db: DB,
    principal: OptionalUser,
):
    """
    Validate a coupon code against an order total.

    Category and duration restrictions are only checked when `items` are sent.
    Failures come back with the specific COUPON_* error code.
    """
    user_id = request.user_id or (principal.user_id if principal else None)
    application = await CouponService(db).validate(
        request.code,
        request.order_total,
        user_id=user_id,
        items=request.items,
    )
    coupon = application.coupon
    return APIResponse(
        message="Coupon is valid",
        data=CouponValidation(
            code=coupon.code,
            title=coupon.title,
            type=coupon.type,
            value=coupon.value,
            discount_amount=application.discount_amount,
            min_amount=coupon.min_amount,
            max_discount=coupon.max_discount,
            valid_until=coupon.valid_until,
        ),
    )


@router.get("/available", response_model=APIResponse[List[AvailableCoupon]])
async def get_available_coupons(
    db: DB,
    principal: OptionalUser,
    category: Optional[str] = Query(None),
    min_amount: Optional[float] = Query(None, alias="minAmount", ge=0),
):
    """Coupons that are active, in their validity window and not used up."""
    coupons = await CouponService(db).list_available(
        user_id=principal.user_id if principal else None,
        category=category,
        min_amount=min_amount,
    )
    return APIResponse(data=[AvailableCoupon.model_validate(c) for c in coupons])

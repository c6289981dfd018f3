"""Admin coupon management."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, status

from app.api.deps import DB, AdminUser
from app.schemas.common import APIResponse, ListResponse
from app.schemas.coupon import (
    CouponCreate,
    CouponDetail,
    CouponResponse,
    CouponStatistics,
    CouponStatsResponse,
    CouponStatsSummary,
    CouponUpdate,
)
from app.services.coupon_service import CouponService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=ListResponse[CouponResponse])
async def list_coupons(
    db: DB,
    admin: AdminUser,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    """List coupons, newest first."""
    coupons, total = await CouponService(db).list_coupons(is_active=is_active, skip=skip, limit=limit)
    return ListResponse(data=[CouponResponse.model_validate(c) for c in coupons], total=total)


@router.post("", response_model=APIResponse[CouponResponse], status_code=status.HTTP_201_CREATED)
async def create_coupon(data: CouponCreate, db: DB, admin: AdminUser):
    coupon = await CouponService(db).create_coupon(data)
    logger.info(f"Coupon {coupon.code} created by {admin.user_id}")
    return APIResponse(message="Coupon created successfully", data=CouponResponse.model_validate(coupon))


@router.get("/{coupon_id}", response_model=APIResponse[CouponDetail])
async def get_coupon(coupon_id: uuid.UUID, db: DB, admin: AdminUser):
    """Coupon with its usage statistics."""
    service = CouponService(db)
    coupon = await service.get_coupon(coupon_id)
    statistics = await service.get_statistics(coupon)
    detail = CouponDetail(
        **CouponResponse.model_validate(coupon).model_dump(),
        statistics=CouponStatistics(**statistics),
    )
    return APIResponse(data=detail)


@router.put("/{coupon_id}", response_model=APIResponse[CouponResponse])
async def update_coupon(coupon_id: uuid.UUID, data: CouponUpdate, db: DB, admin: AdminUser):
    coupon = await CouponService(db).update_coupon(coupon_id, data)
    return APIResponse(message="Coupon updated successfully", data=CouponResponse.model_validate(coupon))


@router.delete("/{coupon_id}", response_model=APIResponse[dict])
async def delete_coupon(coupon_id: uuid.UUID, db: DB, admin: AdminUser):
    """Delete an unused coupon; a coupon with redemptions is deactivated instead."""
    deleted = await CouponService(db).delete_coupon(coupon_id)
    message = "Coupon deleted successfully" if deleted else "Coupon has been used and was deactivated"
    return APIResponse(message=message, data={"deleted": deleted})


@router.get("/{coupon_id}/stats", response_model=APIResponse[CouponStatsResponse])
async def get_coupon_stats(coupon_id: uuid.UUID, db: DB, admin: AdminUser):
    service = CouponService(db)
    coupon = await service.get_coupon(coupon_id)
    statistics = await service.get_statistics(coupon)
    return APIResponse(
        data=CouponStatsResponse(
            coupon=CouponStatsSummary(
                code=coupon.code,
                title=coupon.title,
                usage_count=coupon.usage_count,
                usage_limit=coupon.usage_limit,
            ),
            statistics=CouponStatistics(**statistics),
        )
    )

"""
Coupon evaluation, redemption and admin management.

Validation checks run in a fixed order and the first failure wins:

    not found/inactive -> not yet valid -> expired -> global limit
    -> minimum amount -> per-user limit -> category -> duration
"""
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple
import uuid
import logging

from sqlalchemy import select, func, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    ConflictError,
    CouponError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from app.core.money import round_money
from app.db_types import utc_now
from app.models.coupon import Coupon, CouponUsage, DiscountType
from app.models.order import ItemType
from app.schemas.coupon import CouponCreate, CouponUpdate

logger = logging.getLogger(__name__)


@dataclass
class CouponApplication:
    """A coupon that passed validation and the discount it yields."""
    coupon: Coupon
    discount_amount: float


def compute_discount(coupon: Coupon, order_total: float) -> float:
    """Discount for an order total; percentage capped by max_discount, fixed capped by the total."""
    order_total = round_money(order_total)
    if coupon.type == DiscountType.PERCENTAGE.value:
        discount = order_total * float(coupon.value) / 100
        if coupon.max_discount is not None:
            discount = min(discount, float(coupon.max_discount))
    else:
        discount = min(float(coupon.value), order_total)
    return round_money(max(discount, 0))


def _item_attr(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


class CouponService:
    """Service for coupon validation and management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== LOOKUP ====================

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(
            select(Coupon)
            .where(Coupon.code == code.strip().upper())
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_coupon(self, coupon_id: uuid.UUID) -> Coupon:
        coupon = await self.db.get(Coupon, coupon_id, populate_existing=True)
        if coupon is None:
            raise NotFoundError("Coupon not found")
        return coupon

    async def count_user_usage(self, coupon_id: uuid.UUID, user_id: str) -> int:
        stmt = select(func.count(CouponUsage.id)).where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.user_id == user_id,
        )
        return (await self.db.execute(stmt)).scalar() or 0

    # ==================== VALIDATION ====================

    async def validate(
        self,
        code: str,
        order_total: float,
        user_id: Optional[str] = None,
        items: Optional[Iterable[Any]] = None,
    ) -> CouponApplication:
        """
        Check a coupon against an order and compute its discount.

        `items` carry `type`, `category` and `duration`; category and duration
        restrictions are only evaluated when items are supplied, and pass if
        any single item matches.

        Raises CouponError with the COUPON_* code of the first failed check.
        """
        if not code or not code.strip():
            raise ValidationError("Coupon code is required")
        order_total = round_money(order_total)

        coupon = await self.get_by_code(code)
        if coupon is None or not coupon.is_active:
            raise CouponError(ErrorCode.COUPON_NOT_FOUND, "Coupon code is invalid or inactive")

        now = utc_now()
        if now < coupon.valid_from:
            raise CouponError(
                ErrorCode.COUPON_INVALID_DATE,
                "Coupon is not yet valid",
                details={"validFrom": coupon.valid_from.isoformat()},
            )
        if now > coupon.valid_until:
            raise CouponError(
                ErrorCode.COUPON_EXPIRED,
                "Coupon has expired",
                details={"validUntil": coupon.valid_until.isoformat()},
            )

        if coupon.is_exhausted:
            raise CouponError(ErrorCode.COUPON_USAGE_LIMIT_REACHED, "Coupon usage limit reached")

        min_amount = round_money(coupon.min_amount)
        if order_total < min_amount:
            raise CouponError(
                ErrorCode.COUPON_MIN_AMOUNT_NOT_MET,
                f"Minimum order amount of ₹{min_amount:g} required",
                details={"minAmount": min_amount, "orderTotal": order_total},
            )

        if user_id and coupon.user_limit is not None:
            used = await self.count_user_usage(coupon.id, user_id)
            if used >= coupon.user_limit:
                raise CouponError(
                    ErrorCode.COUPON_USER_LIMIT_REACHED,
                    "You have already used this coupon the maximum number of times",
                )

        if items is not None:
            items = list(items)
            if coupon.applicable_categories:
                categories = {
                    _item_attr(item, "category") for item in items if _item_attr(item, "category")
                }
                if not categories.intersection(coupon.applicable_categories):
                    raise CouponError(
                        ErrorCode.COUPON_CATEGORY_NOT_APPLICABLE,
                        "Coupon is not applicable to the items in this order",
                        details={"applicableCategories": list(coupon.applicable_categories)},
                    )
            if coupon.applicable_durations:
                durations = {
                    int(_item_attr(item, "duration"))
                    for item in items
                    if (_item_attr(item, "type") or ItemType.RENTAL.value) == ItemType.RENTAL.value
                    and _item_attr(item, "duration") is not None
                }
                allowed = {int(d) for d in coupon.applicable_durations}
                if not durations.intersection(allowed):
                    raise CouponError(
                        ErrorCode.COUPON_DURATION_NOT_APPLICABLE,
                        "Coupon is not applicable to the rental durations in this order",
                        details={"applicableDurations": sorted(allowed)},
                    )

        return CouponApplication(coupon=coupon, discount_amount=compute_discount(coupon, order_total))

    async def list_available(
        self,
        user_id: Optional[str] = None,
        category: Optional[str] = None,
        min_amount: Optional[float] = None,
    ) -> List[Coupon]:
        """
        Coupons a customer could redeem right now.

        Applies the date, global-limit and per-user checks. `category` keeps
        unrestricted coupons and those listing it; `min_amount` is the order
        total the customer has, so coupons needing more are dropped.
        """
        now = utc_now()
        stmt = (
            select(Coupon)
            .where(
                Coupon.is_active == True,
                Coupon.valid_from <= now,
                Coupon.valid_until >= now,
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
            )
            .order_by(Coupon.valid_until.asc())
        )
        coupons = list((await self.db.execute(stmt)).scalars().all())

        if min_amount is not None:
            coupons = [c for c in coupons if round_money(c.min_amount) <= round_money(min_amount)]
        if category:
            coupons = [
                c for c in coupons
                if not c.applicable_categories or category in c.applicable_categories
            ]
        if user_id:
            limited = [c.id for c in coupons if c.user_limit is not None]
            if limited:
                usage_rows = await self.db.execute(
                    select(CouponUsage.coupon_id, func.count(CouponUsage.id))
                    .where(CouponUsage.user_id == user_id, CouponUsage.coupon_id.in_(limited))
                    .group_by(CouponUsage.coupon_id)
                )
                used = {coupon_id: count for coupon_id, count in usage_rows.all()}
                coupons = [
                    c for c in coupons
                    if c.user_limit is None or used.get(c.id, 0) < c.user_limit
                ]
        return coupons

    # ==================== REDEMPTION ====================

    async def redeem(
        self,
        coupon: Coupon,
        user_id: str,
        order_id: str,
        discount_amount: float,
    ) -> None:
        """
        Record one use of a coupon inside the caller's transaction.

        The counter is bumped with a single guarded UPDATE so concurrent
        checkouts can never push usage_count past usage_limit. The caller
        commits.
        """
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
            )
            .values(usage_count=Coupon.usage_count + 1, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            logger.warning(f"Coupon {coupon.code} exhausted during checkout of order {order_id}")
            raise CouponError(ErrorCode.COUPON_USAGE_LIMIT_REACHED, "Coupon usage limit reached")

        self.db.add(CouponUsage(
            coupon_id=coupon.id,
            user_id=user_id,
            order_id=order_id,
            discount_amount=round_money(discount_amount),
        ))
        logger.info(f"Coupon {coupon.code} redeemed on order {order_id} for {discount_amount}")

    # ==================== ADMIN ====================

    def _check_rules(self, coupon_type: str, value: Optional[float], max_discount: Optional[float],
                     usage_limit: Optional[int], user_limit: Optional[int]) -> None:
        if value is not None:
            if coupon_type == DiscountType.PERCENTAGE.value and not 1 <= value <= 100:
                raise ValidationError("Percentage value must be between 1 and 100")
            if coupon_type == DiscountType.FIXED.value and value <= 0:
                raise ValidationError("Fixed value must be greater than 0")
        if max_discount is not None:
            if coupon_type != DiscountType.PERCENTAGE.value:
                raise ValidationError("maxDiscount should only be set for percentage type coupons")
            if max_discount <= 0:
                raise ValidationError("maxDiscount must be greater than 0")
        if usage_limit is not None and usage_limit <= 0:
            raise ValidationError("usageLimit must be greater than 0 if provided")
        if user_limit is not None and user_limit <= 0:
            raise ValidationError("userLimit must be greater than 0 if provided")

    async def create_coupon(self, data: CouponCreate) -> Coupon:
        if await self.get_by_code(data.code) is not None:
            raise ConflictError("Coupon code already exists", code=ErrorCode.DUPLICATE_CODE)

        valid_from = data.valid_from or utc_now()
        if valid_from > data.valid_until:
            raise ValidationError("Valid from date must be before or equal to valid until date")
        self._check_rules(data.type, data.value, data.max_discount, data.usage_limit, data.user_limit)

        coupon = Coupon(
            code=data.code,
            title=data.title,
            description=data.description or "",
            type=data.type,
            value=round_money(data.value),
            min_amount=round_money(data.min_amount or 0),
            max_discount=round_money(data.max_discount) if data.max_discount is not None else None,
            valid_from=valid_from,
            valid_until=data.valid_until,
            usage_limit=data.usage_limit,
            usage_count=0,
            user_limit=data.user_limit,
            applicable_categories=list(data.applicable_categories),
            applicable_durations=list(data.applicable_durations),
            is_active=data.is_active,
        )
        self.db.add(coupon)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Coupon code already exists", code=ErrorCode.DUPLICATE_CODE)
        await self.db.refresh(coupon)

        logger.info(f"Coupon {coupon.code} created")
        return coupon

    async def list_coupons(
        self,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Coupon], int]:
        stmt = select(Coupon)
        count_stmt = select(func.count(Coupon.id))
        if is_active is not None:
            stmt = stmt.where(Coupon.is_active == is_active)
            count_stmt = count_stmt.where(Coupon.is_active == is_active)

        total = (await self.db.execute(count_stmt)).scalar() or 0
        stmt = stmt.order_by(Coupon.created_at.desc()).offset(skip).limit(limit)
        coupons = list((await self.db.execute(stmt)).scalars().all())
        return coupons, total

    async def update_coupon(self, coupon_id: uuid.UUID, data: CouponUpdate) -> Coupon:
        coupon = await self.get_coupon(coupon_id)
        changes = data.model_dump(exclude_unset=True)

        for field, value in changes.items():
            if field in ("value", "min_amount", "max_discount") and value is not None:
                value = round_money(value)
            setattr(coupon, field, value)

        if coupon.valid_from > coupon.valid_until:
            raise ValidationError("Valid from date must be before or equal to valid until date")
        self._check_rules(
            coupon.type,
            float(coupon.value),
            coupon.max_discount,
            coupon.usage_limit,
            coupon.user_limit,
        )

        await self.db.commit()
        await self.db.refresh(coupon)
        logger.info(f"Coupon {coupon.code} updated: {sorted(changes)}")
        return coupon

    async def delete_coupon(self, coupon_id: uuid.UUID) -> bool:
        """
        Delete a coupon, or deactivate it if it has been redeemed.

        Returns True when the row was deleted, False when it was deactivated.
        """
        coupon = await self.get_coupon(coupon_id)
        used = (await self.db.execute(
            select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon.id)
        )).scalar() or 0

        if used:
            coupon.is_active = False
            await self.db.commit()
            logger.info(f"Coupon {coupon.code} deactivated ({used} redemptions on record)")
            return False

        await self.db.delete(coupon)
        await self.db.commit()
        logger.info(f"Coupon {coupon.code} deleted")
        return True

    async def get_statistics(self, coupon: Coupon) -> dict[str, Any]:
        stmt = select(
            func.count(CouponUsage.id),
            func.coalesce(func.sum(CouponUsage.discount_amount), 0),
            func.count(func.distinct(CouponUsage.user_id)),
        ).where(CouponUsage.coupon_id == coupon.id)
        total_usage, total_discount, unique_users = (await self.db.execute(stmt)).one()
        return {
            "total_usage": total_usage or 0,
            "total_discount": round_money(total_discount),
            "unique_users": unique_users or 0,
            "remaining_usage": (
                max(coupon.usage_limit - coupon.usage_count, 0)
                if coupon.usage_limit is not None
                else None
            ),
        }

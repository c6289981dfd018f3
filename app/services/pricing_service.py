"""Order pricing pipeline.

Turns the line items of an order request into server-computed money fields.

Pricing Flow:
1. Validate every referenced Product/Service before any money math
2. Resolve each rental line (per-duration price or monthly plan) and each
   service line (client price, by policy)
3. total = items + AC installation charges
4. Payment-method discount on total (payNow instant %, payAdvance advance %)
5. Coupon discount, evaluated against total
6. final_total = total - payment discount - coupon discount
7. payAdvance only: advance = settings amount, remaining = final - advance

Client-supplied total/discount/finalTotal are compared with the computed
figures; disagreements are recorded as warnings and the computed values win.

Example (payNow, instant discount 10%):
- 3-month rental at ₹1,000
- total ₹1,000, payment discount ₹100, final ₹900
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import uuid
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, ValidationError
from app.core.money import MONEY_TOLERANCE, money_equal, round_money, validate_and_round_money
from app.models.coupon import Coupon
from app.models.order import ItemType, PaymentOption
from app.models.product import Product, ProductStatus, RENTAL_DURATIONS, MIN_MONTHLY_TENURE
from app.models.service import Service
from app.schemas.coupon import CouponItemContext
from app.schemas.order import OrderCreate, RentalItemInput, ServiceItemInput
from app.services.coupon_service import CouponService
from app.services.settings_service import PricingSnapshot, SettingsService

logger = logging.getLogger(__name__)


@dataclass
class PricedOrder:
    """Everything order creation needs to persist, all amounts rounded."""
    items: List[Dict[str, Any]]
    total: float
    product_discount: float
    payment_discount: float
    coupon_discount: float
    discount: float
    final_total: float
    advance_amount: Optional[float] = None
    remaining_amount: Optional[float] = None
    priority_service_scheduling: bool = False
    coupon: Optional[Coupon] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)


def payment_discount_rate(payment_option: str, snapshot: PricingSnapshot) -> float:
    if payment_option == PaymentOption.PAY_NOW.value:
        return snapshot.instant_payment_discount
    if payment_option == PaymentOption.PAY_ADVANCE.value:
        return snapshot.advance_payment_discount
    return 0.0


def effective_price(product: Product, duration: int) -> tuple[float, float]:
    """(list price, price after the product-level discount) for one unit."""
    list_price = round_money(product.price_for(duration))
    discount_pct = float(product.discount or 0)
    return list_price, round_money(list_price * (1 - discount_pct / 100))


def _product_snapshot(product: Product) -> Dict[str, Any]:
    return {
        "id": str(product.id),
        "name": product.name,
        "category": product.category,
        "brand": product.brand,
        "model": product.model,
        "type": product.type,
        "capacity": product.capacity,
        "location": product.location,
        "discount": round_money(product.discount),
        "images": product.images,
    }


def _service_snapshot(service: Service) -> Dict[str, Any]:
    return {
        "id": str(service.id),
        "title": service.title,
        "category": service.category,
        "price": round_money(service.price),
    }


class PricingService:
    """Computes the monetary fields of a new order."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== INPUT CHECKS ====================

    @staticmethod
    def check_payment_option_fields(data: OrderCreate) -> None:
        """Advance-only fields must accompany payAdvance and nothing else."""
        if data.payment_option == PaymentOption.PAY_ADVANCE.value:
            if data.priority_service_scheduling is not True:
                raise ValidationError(
                    "Priority service scheduling must be selected for advance payment"
                )
            return

        present = [
            name for name, value in (
                ("advanceAmount", data.advance_amount),
                ("remainingAmount", data.remaining_amount),
            )
            if value is not None
        ]
        if data.priority_service_scheduling:
            present.append("priorityServiceScheduling")
        if present:
            raise ValidationError(
                f"{', '.join(present)} only apply to advance payment orders",
                details={"fields": present, "paymentOption": data.payment_option},
            )

    async def _load_products(self, ids: set[uuid.UUID]) -> Dict[uuid.UUID, Product]:
        if not ids:
            return {}
        result = await self.db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return {p.id: p for p in result.scalars().all()}

    async def _load_services(self, ids: set[uuid.UUID]) -> Dict[uuid.UUID, Service]:
        if not ids:
            return {}
        result = await self.db.execute(select(Service).where(Service.id.in_(ids)))
        return {s.id: s for s in result.scalars().all()}

    # ==================== LINE PRICING ====================

    def _price_rental(self, item: RentalItemInput, product: Product) -> Dict[str, Any]:
        if product.status != ProductStatus.AVAILABLE.value:
            raise ValidationError(
                f"Product {product.name} is not available",
                details={"productId": str(product.id), "status": product.status},
            )

        quantity = item.quantity
        installation = round_money(product.installation_amount * quantity)
        line: Dict[str, Any] = {
            "type": ItemType.RENTAL.value,
            "product_id": str(product.id),
            "quantity": quantity,
            "is_monthly_payment": item.is_monthly_payment,
            "installation_charges": installation,
            "product": _product_snapshot(product),
        }

        if item.is_monthly_payment:
            if not product.monthly_payment_enabled:
                raise ValidationError(f"Monthly payment is not available for {product.name}")
            tenure = item.monthly_tenure
            if tenure not in RENTAL_DURATIONS or tenure < MIN_MONTHLY_TENURE:
                raise ValidationError(
                    f"Monthly tenure must be one of {', '.join(map(str, RENTAL_DURATIONS))} months",
                    details={"monthlyTenure": tenure},
                )
            if item.monthly_price is None or item.security_deposit is None:
                raise ValidationError("monthlyPrice and securityDeposit are required for monthly payment")
            if round_money(item.monthly_price) != round_money(product.monthly_price):
                raise ValidationError(
                    f"Monthly price mismatch for {product.name}",
                    details={
                        "provided": round_money(item.monthly_price),
                        "expected": round_money(product.monthly_price),
                    },
                )
            if round_money(item.security_deposit) != round_money(product.security_deposit):
                raise ValidationError(
                    f"Security deposit mismatch for {product.name}",
                    details={
                        "provided": round_money(item.security_deposit),
                        "expected": round_money(product.security_deposit),
                    },
                )
            unit_price = round_money(product.monthly_price + product.security_deposit)
            line.update({
                "duration": tenure,
                "monthly_tenure": tenure,
                "monthly_price": round_money(product.monthly_price),
                "security_deposit": round_money(product.security_deposit),
                "list_price": unit_price,
                "unit_price": unit_price,
                "price": round_money(unit_price * quantity),
            })
            return line

        duration = item.duration
        if duration not in RENTAL_DURATIONS:
            raise ValidationError(
                f"Duration must be one of {', '.join(map(str, RENTAL_DURATIONS))} months",
                details={"duration": duration},
            )
        if not product.price_for(duration):
            raise ValidationError(f"Price not available for {duration} months on {product.name}")

        list_price, unit_price = effective_price(product, duration)
        if item.price is not None and not money_equal(item.price, unit_price):
            raise ValidationError(
                f"Price mismatch for {product.name} ({duration} months)",
                details={"provided": round_money(item.price), "expected": unit_price},
            )
        line.update({
            "duration": duration,
            "list_price": list_price,
            "unit_price": unit_price,
            "price": round_money(unit_price * quantity),
        })
        return line

    def _price_service(self, item: ServiceItemInput, service: Service) -> Dict[str, Any]:
        if not service.is_active:
            raise ValidationError(f"Service {service.title} is not available")
        # Client price is accepted as-is for services
        unit_price = validate_and_round_money(item.price, "service price")
        return {
            "type": ItemType.SERVICE.value,
            "service_id": str(service.id),
            "quantity": item.quantity,
            "unit_price": unit_price,
            "price": round_money(unit_price * item.quantity),
            "booking_details": item.booking_details.model_dump() if item.booking_details else None,
            "service": _service_snapshot(service),
        }

    # ==================== PIPELINE ====================

    async def price_order(self, data: OrderCreate, user_id: str) -> PricedOrder:
        """
        Validate and price an order request.

        Raises ValidationError, NotFoundError or CouponError; nothing is
        written except the lazily created settings row.
        """
        self.check_payment_option_fields(data)

        products = await self._load_products(
            {i.product_id for i in data.items if isinstance(i, RentalItemInput)}
        )
        services = await self._load_services(
            {i.service_id for i in data.items if isinstance(i, ServiceItemInput)}
        )

        lines: List[Dict[str, Any]] = []
        contexts: List[CouponItemContext] = []
        product_discount = 0.0

        for item in data.items:
            if isinstance(item, RentalItemInput):
                product = products.get(item.product_id)
                if product is None:
                    raise NotFoundError(f"Product {item.product_id} not found")
                line = self._price_rental(item, product)
                if not line["is_monthly_payment"]:
                    product_discount += (line["list_price"] - line["unit_price"]) * line["quantity"]
                contexts.append(CouponItemContext(
                    type="rental", category=product.category, duration=line["duration"]
                ))
            else:
                service = services.get(item.service_id)
                if service is None:
                    raise NotFoundError(f"Service {item.service_id} not found")
                line = self._price_service(item, service)
                contexts.append(CouponItemContext(type="service", category=service.category))
            lines.append(line)

        total = round_money(
            sum(line["price"] for line in lines)
            + sum(line.get("installation_charges") or 0 for line in lines)
        )

        snapshot = await SettingsService(self.db).get_settings()
        rate = payment_discount_rate(data.payment_option, snapshot)
        payment_discount = round_money(total * rate / 100)

        coupon = None
        coupon_discount = 0.0
        if data.coupon_code:
            application = await CouponService(self.db).validate(
                data.coupon_code, total, user_id=user_id, items=contexts
            )
            coupon = application.coupon
            # Never let the discounts push the order below zero
            coupon_discount = min(application.discount_amount, round_money(total - payment_discount))

        final_total = round_money(total - payment_discount - coupon_discount)
        discount = round_money(payment_discount + coupon_discount)

        priced = PricedOrder(
            items=lines,
            total=total,
            product_discount=round_money(product_discount),
            payment_discount=payment_discount,
            coupon_discount=coupon_discount,
            discount=discount,
            final_total=final_total,
            coupon=coupon,
        )

        if data.payment_option == PaymentOption.PAY_ADVANCE.value:
            advance = round_money(snapshot.advance_payment_amount)
            if data.advance_amount is not None and not money_equal(data.advance_amount, advance):
                raise ValidationError(
                    "Advance amount does not match the configured advance payment amount",
                    details={"provided": round_money(data.advance_amount), "expected": advance},
                )
            priced.advance_amount = advance
            priced.remaining_amount = max(0.0, round_money(final_total - advance))
            priced.priority_service_scheduling = True

        self._record_mismatches(data, priced)
        return priced

    def _record_mismatches(self, data: OrderCreate, priced: PricedOrder) -> None:
        checks = [
            ("total", data.total, priced.total),
            ("discount", data.discount, priced.discount),
            ("finalTotal", data.final_total, priced.final_total),
        ]
        if priced.remaining_amount is not None:
            checks.append(("remainingAmount", data.remaining_amount, priced.remaining_amount))

        for name, client_value, server_value in checks:
            if client_value is None or money_equal(client_value, server_value, MONEY_TOLERANCE):
                continue
            priced.warnings.append({
                "field": name,
                "client_value": round_money(client_value),
                "server_value": server_value,
            })
            logger.warning(
                f"Client {name} {round_money(client_value)} differs from computed {server_value}; "
                f"using computed value"
            )

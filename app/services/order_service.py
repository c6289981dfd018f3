from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import secrets
import time
import uuid
import logging

from sqlalchemy import select, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config import settings
from app.core.errors import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    PaymentError,
    SignatureMismatchError,
    ValidationError,
)
from app.core.money import from_minor_units, money_equal, round_monetary_fields, round_money
from app.core.security import Principal
from app.db_types import utc_now
from app.models.order import (
    Order,
    Payment,
    OrderStatus,
    PaymentStatus,
    PaymentOption,
    PaymentPurpose,
    TransactionStatus,
    ORDER_STATUS_TRANSITIONS,
    NON_CANCELLABLE_STATUSES,
)
from app.models.product import Product, ProductStatus
from app.models.service import ServiceBooking, ServiceBookingStatus
from app.schemas.order import ITEM_MONEY_FIELDS, OrderCreate, OrderItemResponse, OrderResponse, PaymentProof
from app.services import notification_service
from app.services.coupon_service import CouponService
from app.services.pricing_service import PricedOrder, PricingService
from app.services.razorpay_gateway import (
    SUCCESS_STATES,
    GatewayError,
    RazorpayGateway,
    verify_payment_signature,
)

logger = logging.getLogger(__name__)

# Attempts at a generated order id before giving up on a unique collision
ORDER_ID_ATTEMPTS = 3


def generate_payment_id() -> str:
    """PAY-<epoch ms>-<random>"""
    return f"PAY-{int(time.time() * 1000)}-{secrets.randbelow(10000):04d}"


def format_order_response(order: Order) -> OrderResponse:
    """Serialise an order with every money field, including per-item ones, rounded."""
    response = OrderResponse.model_validate(order)
    response.items = [
        OrderItemResponse.model_validate(round_monetary_fields(item, ITEM_MONEY_FIELDS))
        for item in order.items or []
    ]
    return response


class OrderService:
    """Order creation, lookup, cancellation and fulfilment progression."""

    def __init__(self, db: AsyncSession, gateway: Optional[RazorpayGateway] = None):
        self.db = db
        self.gateway = gateway

    # ==================== ID GENERATION ====================

    async def generate_order_id(self, offset: int = 0) -> str:
        """Generate order id: ORD-YYYY-NNN"""
        year = datetime.now(timezone.utc).year
        prefix = f"ORD-{year}-"
        stmt = select(func.count(Order.id)).where(Order.order_id.like(f"{prefix}%"))
        count = (await self.db.execute(stmt)).scalar() or 0
        return f"{prefix}{(count + 1 + offset):03d}"

    async def generate_booking_id(self) -> str:
        """Generate service booking id: SB-YYYY-NNN"""
        year = datetime.now(timezone.utc).year
        prefix = f"SB-{year}-"
        stmt = select(func.count(ServiceBooking.id)).where(ServiceBooking.booking_id.like(f"{prefix}%"))
        count = (await self.db.execute(stmt)).scalar() or 0
        return f"{prefix}{(count + 1):03d}"

    # ==================== LOOKUP ====================

    async def resolve_order(self, ref: str) -> Optional[Order]:
        """
        Find an order by internal UUID or by its human-readable order id.

        The UUID form is tried first; anything that does not parse as one is
        looked up as an order id.
        """
        ref = (ref or "").strip()
        if not ref:
            return None
        try:
            order_uuid = uuid.UUID(ref)
        except ValueError:
            order_uuid = None

        if order_uuid is not None:
            order = await self.db.get(Order, order_uuid, populate_existing=True)
            if order is not None:
                return order

        result = await self.db.execute(
            select(Order)
            .where(Order.order_id == ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order(self, ref: str, principal: Principal) -> Order:
        """Order visible to the principal (owners and admins)."""
        order = await self.resolve_order(ref)
        if order is None:
            raise NotFoundError("Order not found")
        if not principal.is_admin and order.user_id != principal.user_id:
            raise ForbiddenError("You do not have access to this order")
        return order

    async def list_user_orders(
        self,
        user_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        filters = [Order.user_id == user_id]
        if status:
            filters.append(Order.status == status)
        return await self._list(filters, skip, limit)

    async def list_all_orders(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        needs_reconciliation: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Order], int]:
        filters = []
        if status:
            filters.append(Order.status == status)
        if payment_status:
            filters.append(Order.payment_status == payment_status)
        if needs_reconciliation is not None:
            filters.append(Order.needs_reconciliation == needs_reconciliation)
        return await self._list(filters, skip, limit)

    async def _list(self, filters: list, skip: int, limit: int) -> Tuple[List[Order], int]:
        count_stmt = select(func.count(Order.id)).where(*filters)
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    # ==================== CREATION ====================

    def _check_payment_proof(self, data: OrderCreate) -> Optional[PaymentProof]:
        """The checkout result attached to a payNow order, with its signature checked."""
        proof = data.payment_proof
        if proof is None:
            return None
        if data.payment_option != PaymentOption.PAY_NOW.value:
            raise ValidationError("Payment proof can only be attached to payNow orders")
        if not verify_payment_signature(proof.gateway_order_id, proof.gateway_payment_id, proof.signature):
            logger.warning(f"Payment proof signature mismatch for gateway order {proof.gateway_order_id}")
            raise SignatureMismatchError("Payment signature verification failed")
        return proof

    async def _proof_used(self, proof: PaymentProof) -> bool:
        """True when a Payment already carries this gateway payment or gateway order."""
        result = await self.db.execute(
            select(Payment.id)
            .where(
                or_(
                    Payment.transaction_id == proof.gateway_payment_id,
                    Payment.gateway_order_id == proof.gateway_order_id,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _confirm_proof_with_gateway(self, proof: PaymentProof, amount: float) -> bool:
        """
        Match the proof against the gateway's record of the payment.

        A captured payment on the same gateway order for exactly the order's
        final total returns True. Any other answer rejects the order. When
        the gateway cannot be asked the result is False and the payment waits
        for the webhook.
        """
        if self.gateway is None or not self.gateway.is_configured or not settings.RAZORPAY_VERIFY_WITH_GATEWAY:
            return False
        try:
            details = await self.gateway.fetch_payment(proof.gateway_payment_id)
        except GatewayError as e:
            logger.warning(f"Could not check payment proof {proof.gateway_payment_id} with gateway: {e}")
            return False

        state = details.get("status")
        if state not in SUCCESS_STATES:
            raise PaymentError(
                "Payment has not been captured",
                code=ErrorCode.PAYMENT_NOT_CAPTURED,
                details={"gatewayStatus": state},
            )
        if details.get("order_id") != proof.gateway_order_id:
            raise ValidationError("Payment does not belong to this gateway order")
        paid = from_minor_units(details.get("amount") or 0)
        if not money_equal(paid, amount):
            raise PaymentError(
                "Paid amount does not match the order total",
                code=ErrorCode.AMOUNT_MISMATCH,
                details={"paid": paid, "expected": round_money(amount)},
            )
        return True

    def _build_order(self, data: OrderCreate, priced: PricedOrder, order_id: str, user_id: str) -> Order:
        customer_info = data.customer_info.model_dump(exclude_none=True) if data.customer_info else None
        return Order(
            order_id=order_id,
            user_id=user_id,
            items=priced.items,
            total=priced.total,
            product_discount=priced.product_discount,
            payment_discount=priced.payment_discount,
            coupon_discount=priced.coupon_discount,
            discount=priced.discount,
            final_total=priced.final_total,
            advance_amount=priced.advance_amount,
            remaining_amount=priced.remaining_amount,
            amount_paid=0,
            coupon_code=priced.coupon.code if priced.coupon else None,
            payment_option=data.payment_option,
            payment_status=PaymentStatus.PENDING.value,
            status=OrderStatus.PENDING.value,
            priority_service_scheduling=priced.priority_service_scheduling,
            customer_info=customer_info,
            shipping_address=data.shipping_address,
            notes=data.notes,
            pricing_warnings=priced.warnings or None,
        )

    async def create_order(self, data: OrderCreate, principal: Principal) -> Order:
        """
        Price, validate and persist a new order.

        Everything up to the commit is all-or-nothing: pricing, coupon
        redemption and (for payNow with proof) a Pending Payment carrying the
        gateway references. A proof the gateway confirms is then settled
        through PaymentService.apply_payment_success like any other payment.
        Service bookings run after the commit and never fail the request.
        """
        priced = await PricingService(self.db).price_order(data, principal.user_id)
        proof = self._check_payment_proof(data)
        settle_now = False
        if proof is not None:
            if await self._proof_used(proof):
                raise ConflictError(
                    "This payment has already been used", code=ErrorCode.DUPLICATE_PAYMENT
                )
            settle_now = await self._confirm_proof_with_gateway(proof, priced.final_total)

        if data.order_id:
            existing = await self.db.execute(select(Order.id).where(Order.order_id == data.order_id))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("Order ID already exists", code=ErrorCode.ORDER_ID_DUPLICATE)

        order: Optional[Order] = None
        payment: Optional[Payment] = None
        for attempt in range(ORDER_ID_ATTEMPTS):
            order_id = data.order_id or await self.generate_order_id(offset=attempt)
            order = self._build_order(data, priced, order_id, principal.user_id)
            self.db.add(order)
            try:
                await self.db.flush()
                if priced.coupon is not None:
                    await CouponService(self.db).redeem(
                        priced.coupon, principal.user_id, order.order_id, priced.coupon_discount
                    )
                if proof is not None:
                    payment = self._record_proof_payment(order, proof)
                await self.db.commit()
                break
            except IntegrityError:
                await self.db.rollback()
                if proof is not None and await self._proof_used(proof):
                    raise ConflictError(
                        "This payment has already been used", code=ErrorCode.DUPLICATE_PAYMENT
                    )
                if data.order_id:
                    raise ConflictError("Order ID already exists", code=ErrorCode.ORDER_ID_DUPLICATE)
                logger.warning(f"Order id {order_id} taken, retrying")
                order = None
                payment = None
                # rollback expired everything loaded before the attempt
                if priced.coupon is not None:
                    await self.db.refresh(priced.coupon)
            except Exception:
                await self.db.rollback()
                raise

        if order is None:
            raise ConflictError("Could not allocate a unique order id", code=ErrorCode.ORDER_ID_DUPLICATE)

        logger.info(
            f"Order {order.order_id} created for user {principal.user_id}: "
            f"total={order.total} final={order.final_total} option={order.payment_option}"
        )

        if payment is not None:
            if settle_now:
                from app.services.payment_service import PaymentService

                await PaymentService(self.db, self.gateway).apply_payment_success(
                    payment, proof.gateway_payment_id, proof.signature
                )
            else:
                logger.info(
                    f"Order {order.order_id}: payment {payment.payment_id} recorded, "
                    f"awaiting gateway confirmation"
                )

        await self._create_service_bookings(order)

        notification_service.notify_order_created(order)
        return order

    def _record_proof_payment(self, order: Order, proof: PaymentProof) -> Payment:
        payment = Payment(
            payment_id=generate_payment_id(),
            order_id=order.id,
            user_id=order.user_id,
            amount=order.final_total,
            currency=settings.CURRENCY,
            purpose=PaymentPurpose.FULL.value,
            gateway_order_id=proof.gateway_order_id,
            transaction_id=proof.gateway_payment_id,
            signature=proof.signature,
            status=TransactionStatus.PENDING.value,
        )
        self.db.add(payment)
        return payment

    async def _create_service_bookings(self, order: Order) -> None:
        """One ServiceBooking per service line; failures are logged per item."""
        service_items = order.service_items
        if not service_items:
            return

        # Plain values only: a failed booking rolls back and expires the order
        order_uuid = order.id
        order_ref = order.order_id
        user_id = order.user_id
        customer = dict(order.customer_info or {})
        shipping_address = order.shipping_address
        payment_option = order.payment_option
        payment_status = order.payment_status

        failed = 0
        for index, item in enumerate(service_items):
            details: Dict[str, Any] = item.get("booking_details") or {}
            try:
                booking = ServiceBooking(
                    booking_id=await self.generate_booking_id(),
                    service_id=uuid.UUID(item["service_id"]),
                    user_id=user_id,
                    order_id=order_uuid,
                    service_title=item["service"]["title"],
                    service_price=item["unit_price"],
                    name=details.get("name") or customer.get("name") or "Customer",
                    phone=details.get("phone") or customer.get("phone") or "",
                    email=details.get("email") or customer.get("email"),
                    date=details.get("date"),
                    time=details.get("time"),
                    address=details.get("address") or shipping_address,
                    near_landmark=details.get("near_landmark"),
                    pincode=details.get("pincode"),
                    alternate_number=details.get("alternate_number"),
                    address_type=details.get("address_type") or "myself",
                    contact_name=details.get("contact_name"),
                    contact_phone=details.get("contact_phone"),
                    description=details.get("description"),
                    images=details.get("images"),
                    payment_option=payment_option,
                    payment_status=payment_status,
                )
                self.db.add(booking)
                await self.db.commit()
                logger.info(f"Service booking {booking.booking_id} created for order {order_ref}")
            except (SQLAlchemyError, KeyError, ValueError) as e:
                await self.db.rollback()
                failed += 1
                logger.error(f"Failed to create service booking {index} for order {order_ref}: {e}")

        if failed:
            await self.db.refresh(order)

    # ==================== PRODUCT RESERVATION ====================

    async def reserve_rental_products(self, order: Order) -> bool:
        """
        Flip every rental product of the order from Available to RentedOut.

        Each flip is a conditional UPDATE on the prior status; a product
        another order already holds is left alone and the order is flagged
        for reconciliation. Returns False when any product could not be
        reserved. The caller commits.
        """
        items = [dict(item) for item in order.items or []]
        conflicts: List[str] = []
        reserved_ids: set[str] = set()

        for item in items:
            if item.get("type") != "rental" or item.get("reserved"):
                continue
            product_id = item["product_id"]
            if product_id in reserved_ids:
                item["reserved"] = True
                continue
            result = await self.db.execute(
                update(Product)
                .where(
                    Product.id == uuid.UUID(product_id),
                    Product.status == ProductStatus.AVAILABLE.value,
                )
                .values(status=ProductStatus.RENTED_OUT.value, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                name = (item.get("product") or {}).get("name") or product_id
                conflicts.append(name)
                continue
            reserved_ids.add(product_id)
            item["reserved"] = True

        order.items = items
        if conflicts:
            order.needs_reconciliation = True
            order.reconciliation_note = (
                f"Products unavailable at confirmation: {', '.join(conflicts)}"
            )
            logger.warning(f"Order {order.order_id} needs reconciliation: {order.reconciliation_note}")
            return False
        if reserved_ids:
            logger.info(f"Order {order.order_id} reserved products {sorted(reserved_ids)}")
        return True

    async def release_rental_products(self, order: Order) -> None:
        """Return the products this order reserved to Available. The caller commits."""
        items = [dict(item) for item in order.items or []]
        released: set[str] = set()
        for item in items:
            if item.get("type") != "rental" or not item.get("reserved"):
                continue
            product_id = item["product_id"]
            if product_id not in released:
                await self.db.execute(
                    update(Product)
                    .where(
                        Product.id == uuid.UUID(product_id),
                        Product.status == ProductStatus.RENTED_OUT.value,
                    )
                    .values(status=ProductStatus.AVAILABLE.value, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                released.add(product_id)
            item["reserved"] = False
        order.items = items
        if released:
            logger.info(f"Order {order.order_id} released products {sorted(released)}")

    # ==================== STATE TRANSITIONS ====================

    async def cancel_order(
        self,
        ref: str,
        principal: Principal,
        reason: Optional[str],
        by_admin: bool = False,
    ) -> Order:
        """
        Cancel an order that has not been delivered yet.

        Reserved products go back to Available and linked service bookings
        are cancelled.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Cancellation reason is required")

        order = await self.resolve_order(ref)
        if order is None:
            raise NotFoundError("Order not found")
        if not by_admin and order.user_id != principal.user_id:
            raise ForbiddenError("You can only cancel your own orders")

        if order.status == OrderStatus.CANCELLED.value:
            raise ValidationError("Order is already cancelled")
        if order.status in NON_CANCELLABLE_STATUSES:
            raise ValidationError(f"Cannot cancel a {order.status} order")

        now = utc_now()
        cancelled_by = "admin" if by_admin else "user"
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status.not_in(NON_CANCELLABLE_STATUSES))
            .values(
                status=OrderStatus.CANCELLED.value,
                cancellation_reason=reason,
                cancelled_by=cancelled_by,
                cancelled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            current = await self.resolve_order(str(order.id))
            raise ValidationError(f"Cannot cancel a {current.status} order")

        order = await self.resolve_order(str(order.id))
        await self.release_rental_products(order)
        await self.db.execute(
            update(ServiceBooking)
            .where(
                ServiceBooking.order_id == order.id,
                ServiceBooking.status != ServiceBookingStatus.CANCELLED.value,
            )
            .values(status=ServiceBookingStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Order {order.order_id} cancelled by {cancelled_by} {principal.user_id}: {reason}")
        notification_service.notify_order_cancelled(order)
        return order

    async def update_status(self, ref: str, new_status: str, principal: Principal) -> Order:
        """Admin-driven fulfilment progression, one step at a time."""
        order = await self.resolve_order(ref)
        if order is None:
            raise NotFoundError("Order not found")

        old_status = order.status
        if new_status == old_status:
            return order
        if new_status not in ORDER_STATUS_TRANSITIONS.get(old_status, set()):
            raise ValidationError(
                f"Cannot change order status from {old_status} to {new_status}",
                details={
                    "currentStatus": old_status,
                    "allowed": sorted(ORDER_STATUS_TRANSITIONS.get(old_status, set())),
                },
            )

        if new_status == OrderStatus.CONFIRMED.value:
            if not await self.reserve_rental_products(order):
                await self.db.commit()
                notification_service.notify_reconciliation_needed(order, order.reconciliation_note)
                raise ValidationError(
                    "Some products are no longer available; the order was flagged for reconciliation",
                    details={"note": order.reconciliation_note},
                )
            order.confirmed_at = utc_now()

        order.status = new_status
        await self.db.commit()
        logger.info(f"Order {order.order_id} status {old_status} -> {new_status} by {principal.user_id}")
        return order


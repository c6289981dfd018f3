"""
Payment Service - Razorpay reconciliation

Handles the payment side of an order:
- Create gateway orders for the amount currently due
- Verify checkout callback signatures
- Apply webhook events (captured / authorized / order.paid / failed)
- Legacy combined process endpoint
- Refund processing

verify, webhook and process all funnel into apply_payment_success, whose
conditional UPDATE of Payment.status is the only place a payment becomes
Completed. Replays and concurrent deliveries lose that update and have no
further effect.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConfigurationError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    PaymentError,
    PaymentGatewayError,
    SignatureMismatchError,
    ValidationError,
)
from app.core.money import from_minor_units, money_equal, round_money, to_minor_units
from app.core.security import Principal
from app.db_types import utc_now
from app.models.order import (
    Order,
    Payment,
    OrderStatus,
    PaymentOption,
    PaymentPurpose,
    PaymentStatus,
    TransactionStatus,
)
from app.schemas.payment import (
    PaymentCalculation,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentVerificationResponse,
)
from app.services import notification_service
from app.services.order_service import OrderService, generate_payment_id
from app.services.razorpay_gateway import (
    SUCCESS_STATES,
    GatewayError,
    GatewayTimeoutError,
    RazorpayGateway,
    verify_payment_signature,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)


class WebhookEvent:
    """Razorpay webhook event types."""
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    ORDER_PAID = "order.paid"


SUCCESS_EVENTS = {
    WebhookEvent.PAYMENT_AUTHORIZED,
    WebhookEvent.PAYMENT_CAPTURED,
    WebhookEvent.ORDER_PAID,
}


@dataclass
class AmountDue:
    amount: float
    purpose: str


def amount_due(order: Order) -> AmountDue:
    """
    What the customer should pay next.

    payAdvance orders are paid in two steps: the advance while the order is
    pending, then the remainder once it is advance_paid. Everything else is
    paid in full.
    """
    if order.payment_option == PaymentOption.PAY_ADVANCE.value:
        if order.payment_status == PaymentStatus.PENDING.value:
            return AmountDue(round_money(order.advance_amount), PaymentPurpose.ADVANCE.value)
        if order.payment_status == PaymentStatus.ADVANCE_PAID.value:
            return AmountDue(round_money(order.remaining_amount), PaymentPurpose.REMAINING.value)
    return AmountDue(round_money(order.final_total), PaymentPurpose.FULL.value)


class PaymentService:
    """Payment reconciliation against Razorpay."""

    def __init__(self, db: AsyncSession, gateway: RazorpayGateway):
        self.db = db
        self.gateway = gateway
        self.orders = OrderService(db, gateway)

    # ==================== LOOKUP ====================

    async def _get_order_for(self, ref: str, principal: Optional[Principal]) -> Order:
        order = await self.orders.resolve_order(ref)
        if order is None:
            raise NotFoundError("Order not found")
        if principal is not None and not principal.is_admin and order.user_id != principal.user_id:
            raise ForbiddenError("You do not have access to this order")
        return order

    async def _load_order(self, order_uuid) -> Order:
        order = await self.db.get(Order, order_uuid, populate_existing=True)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def find_payment(
        self,
        gateway_order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> Optional[Payment]:
        """By explicit payment id when given, else the latest attempt for the gateway order."""
        if payment_id:
            stmt = select(Payment).where(Payment.payment_id == payment_id)
        elif gateway_order_id:
            stmt = (
                select(Payment)
                .where(Payment.gateway_order_id == gateway_order_id)
                .order_by(Payment.created_at.desc())
                .limit(1)
            )
        else:
            return None
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def get_payment(self, payment_id: str, principal: Principal) -> PaymentResponse:
        payment = await self.find_payment(payment_id=payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if not principal.is_admin and payment.user_id != principal.user_id:
            raise ForbiddenError("You do not have access to this payment")
        order = await self._load_order(payment.order_id)
        return self.to_response(payment, order)

    @staticmethod
    def to_response(payment: Payment, order: Order) -> PaymentResponse:
        return PaymentResponse(
            payment_id=payment.payment_id,
            order_id=order.order_id,
            amount=round_money(payment.amount),
            currency=payment.currency,
            purpose=payment.purpose,
            payment_method=payment.payment_method,
            gateway=payment.gateway,
            gateway_order_id=payment.gateway_order_id,
            transaction_id=payment.transaction_id,
            status=payment.status,
            failure_reason=payment.failure_reason,
            refund_id=payment.refund_id,
            refunded_amount=payment.refunded_amount,
            paid_at=payment.paid_at,
            created_at=payment.created_at,
        )

    # ==================== AMOUNTS ====================

    def _check_payable(self, order: Order) -> None:
        if order.status == OrderStatus.CANCELLED.value:
            raise ValidationError("Cannot pay for a cancelled order")
        if order.payment_status == PaymentStatus.PAID.value:
            raise PaymentError("Order is already paid", code=ErrorCode.ORDER_ALREADY_PAID)

    async def calculate(self, ref: str, principal: Principal) -> PaymentCalculation:
        """Amount currently due on an order."""
        order = await self._get_order_for(ref, principal)
        due = amount_due(order)
        settled = order.payment_status == PaymentStatus.PAID.value
        return PaymentCalculation(
            order_id=order.order_id,
            payment_option=order.payment_option,
            payment_status=order.payment_status,
            purpose=None if settled else due.purpose,
            final_total=round_money(order.final_total),
            amount_paid=round_money(order.amount_paid),
            advance_amount=order.advance_amount,
            remaining_amount=order.remaining_amount,
            amount_due=0.0 if settled else due.amount,
            currency=settings.CURRENCY,
        )

    # ==================== INTENT ====================

    async def create_intent(self, ref: str, amount: float, principal: Principal) -> PaymentIntentResponse:
        """
        Open a gateway order for the amount currently due.

        The local Payment row is committed as Pending before the gateway is
        called, so every gateway order has a local record to reconcile
        against.
        """
        order = await self._get_order_for(ref, principal)
        self._check_payable(order)

        due = amount_due(order)
        if not money_equal(amount, due.amount):
            raise PaymentError(
                "Payment amount does not match the amount due",
                code=ErrorCode.AMOUNT_MISMATCH,
                details={"requested": round_money(amount), "expected": due.amount, "purpose": due.purpose},
            )
        amount_minor = to_minor_units(due.amount)

        if not self.gateway.is_configured:
            logger.error("Razorpay credentials are not configured")
            raise ConfigurationError("Payment gateway is not configured")

        payment = Payment(
            payment_id=generate_payment_id(),
            order_id=order.id,
            user_id=order.user_id,
            amount=due.amount,
            currency=settings.CURRENCY,
            purpose=due.purpose,
            status=TransactionStatus.PENDING.value,
        )
        self.db.add(payment)
        await self.db.commit()

        try:
            gateway_order = await self.gateway.create_order(
                amount=amount_minor,
                currency=settings.CURRENCY,
                receipt=payment.payment_id,
                notes={"order_id": order.order_id, "payment_id": payment.payment_id, "purpose": due.purpose},
            )
        except GatewayTimeoutError:
            # Left Pending: the gateway may still have created the order
            logger.error(f"Gateway timeout creating order for payment {payment.payment_id} ({order.order_id})")
            raise PaymentGatewayError(
                "Payment gateway did not respond in time, please retry",
                details={"paymentId": payment.payment_id},
            )
        except GatewayError as e:
            payment.status = TransactionStatus.FAILED.value
            payment.failure_reason = f"Gateway order creation failed: {e}"
            await self.db.commit()
            logger.error(f"Gateway rejected order for payment {payment.payment_id} ({order.order_id}): {e}")
            raise PaymentGatewayError(
                "Could not create payment order with the gateway",
                details={"paymentId": payment.payment_id},
            )

        payment.gateway_order_id = gateway_order["id"]
        await self.db.commit()
        logger.info(
            f"Payment {payment.payment_id} opened gateway order {payment.gateway_order_id} "
            f"for {due.amount} ({due.purpose}) on {order.order_id}"
        )

        return PaymentIntentResponse(
            payment_id=payment.payment_id,
            order_id=order.order_id,
            amount=due.amount,
            currency=payment.currency,
            gateway_order_id=payment.gateway_order_id,
            razorpay_order_id=payment.gateway_order_id,
            key=self.gateway.key_id,
        )

    # ==================== STATE TRANSITIONS ====================

    async def apply_payment_success(
        self,
        payment: Payment,
        transaction_id: Optional[str],
        signature: Optional[str],
    ) -> bool:
        """
        Mark a payment Completed and credit its order, at most once.

        The conditional UPDATE (Pending/Failed -> Completed) decides which
        caller wins; losers return False without touching the order.
        """
        now = utc_now()
        values: Dict[str, Any] = {
            "status": TransactionStatus.COMPLETED.value,
            "paid_at": now,
            "failure_reason": None,
            "updated_at": now,
        }
        if transaction_id:
            values["transaction_id"] = transaction_id
        if signature:
            values["signature"] = signature

        result = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status.in_([TransactionStatus.PENDING.value, TransactionStatus.FAILED.value]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(f"Payment {payment.payment_id} already settled, skipping")
            return False

        await self.db.refresh(payment)
        order = await self._load_order(payment.order_id)
        order.amount_paid = round_money((order.amount_paid or 0) + payment.amount)
        order.paid_at = now

        if order.status == OrderStatus.CANCELLED.value:
            order.needs_reconciliation = True
            order.reconciliation_note = (
                f"Payment {payment.payment_id} of {round_money(payment.amount)} received after cancellation"
            )
            await self.db.commit()
            logger.warning(f"Order {order.order_id}: {order.reconciliation_note}")
            notification_service.notify_paid_after_cancellation(order, payment)
            return True

        if order.payment_status == PaymentStatus.PAID.value:
            order.needs_reconciliation = True
            order.reconciliation_note = f"Duplicate payment {payment.payment_id} on a paid order"
            await self.db.commit()
            logger.warning(f"Order {order.order_id}: {order.reconciliation_note}")
            notification_service.notify_reconciliation_needed(order, order.reconciliation_note)
            return True

        fully_paid = True
        if payment.purpose == PaymentPurpose.ADVANCE.value:
            fully_paid = round_money(order.remaining_amount) <= 0
        order.payment_status = PaymentStatus.PAID.value if fully_paid else PaymentStatus.ADVANCE_PAID.value

        # A paid advance holds the products too; the order is confirmed only once fully paid
        reserved = True
        if order.status == OrderStatus.PENDING.value:
            reserved = await self.orders.reserve_rental_products(order)
            if reserved and fully_paid:
                order.status = OrderStatus.CONFIRMED.value
                order.confirmed_at = now

        await self.db.commit()
        logger.info(
            f"Payment {payment.payment_id} completed for {order.order_id}: "
            f"payment_status={order.payment_status} status={order.status}"
        )

        notification_service.notify_payment_success(order, payment)
        if not reserved:
            notification_service.notify_reconciliation_needed(order, order.reconciliation_note)
        return True

    async def mark_failed(self, payment: Payment, reason: str) -> bool:
        """Pending -> Failed; a no-op for payments that already settled."""
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == TransactionStatus.PENDING.value)
            .values(status=TransactionStatus.FAILED.value, failure_reason=reason, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(payment)
        if result.rowcount == 0:
            return False
        logger.warning(f"Payment {payment.payment_id} failed: {reason}")
        return True

    async def _flag_amount_mismatch(self, payment: Payment, paid: float) -> None:
        """The gateway captured a different amount; leave the payment for an admin."""
        order = await self._load_order(payment.order_id)
        order.needs_reconciliation = True
        order.reconciliation_note = (
            f"Gateway captured {paid} for payment {payment.payment_id}, expected {round_money(payment.amount)}"
        )
        await self.db.commit()
        logger.warning(f"Order {order.order_id}: {order.reconciliation_note}")
        notification_service.notify_reconciliation_needed(order, order.reconciliation_note)

    # ==================== VERIFICATION ====================

    async def verify(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        payment_id: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> PaymentVerificationResponse:
        """
        Verify a checkout callback and settle the payment.

        Idempotent: a Completed payment is reported as verified again without
        re-applying anything.
        """
        payment = await self.find_payment(gateway_order_id=gateway_order_id, payment_id=payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if principal is not None and not principal.is_admin and payment.user_id != principal.user_id:
            raise ForbiddenError("You do not have access to this payment")
        if payment.gateway_order_id and payment.gateway_order_id != gateway_order_id:
            raise ValidationError("Payment does not belong to this gateway order")

        if payment.status == TransactionStatus.COMPLETED.value:
            order = await self._load_order(payment.order_id)
            return self._verification_response(order, payment)

        if not settings.RAZORPAY_KEY_SECRET:
            raise ConfigurationError("Payment gateway is not configured")

        order = await self._load_order(payment.order_id)
        if not verify_payment_signature(gateway_order_id, gateway_payment_id, signature):
            logger.warning(
                f"Signature mismatch for payment {payment.payment_id} "
                f"(gateway payment {gateway_payment_id}, order {order.order_id})"
            )
            await self.mark_failed(payment, "Signature mismatch")
            notification_service.notify_signature_mismatch(order.order_id, payment.payment_id, gateway_payment_id)
            raise SignatureMismatchError("Payment signature verification failed")

        await self._confirm_with_gateway(payment, gateway_payment_id)

        await self.apply_payment_success(payment, gateway_payment_id, signature)
        await self.db.refresh(payment)
        order = await self._load_order(payment.order_id)
        return self._verification_response(order, payment)

    async def _confirm_with_gateway(self, payment: Payment, gateway_payment_id: str) -> None:
        """
        Optional second opinion from the gateway.

        The signature is the trust anchor: if the gateway cannot be reached
        the signature-verified result stands. Only an explicit non-success
        state rejects the payment.
        """
        if not settings.RAZORPAY_VERIFY_WITH_GATEWAY or not self.gateway.is_configured:
            return
        try:
            details = await self.gateway.fetch_payment(gateway_payment_id)
        except GatewayError as e:
            logger.warning(f"Could not re-check payment {gateway_payment_id} with gateway, trusting signature: {e}")
            return

        state = details.get("status")
        if state in SUCCESS_STATES:
            return
        reason = f"Gateway reported payment status {state}"
        await self.mark_failed(payment, reason)
        raise PaymentError(
            "Payment has not been captured",
            code=ErrorCode.PAYMENT_NOT_CAPTURED,
            details={"gatewayStatus": state},
        )

    @staticmethod
    def _verification_response(order: Order, payment: Payment) -> PaymentVerificationResponse:
        return PaymentVerificationResponse(
            order_id=order.order_id,
            payment_id=payment.payment_id,
            payment_status=order.payment_status,
            verified_at=payment.paid_at or utc_now(),
        )

    async def process_payment(
        self,
        ref: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        payment_id: Optional[str],
        principal: Principal,
    ) -> PaymentVerificationResponse:
        """Legacy combined endpoint: order cross-check, then the same verification."""
        order = await self._get_order_for(ref, principal)
        payment = await self.find_payment(gateway_order_id=gateway_order_id, payment_id=payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.order_id != order.id:
            raise ValidationError("Payment does not belong to this order")
        return await self.verify(
            gateway_order_id,
            gateway_payment_id,
            signature,
            payment_id=payment.payment_id,
            principal=principal,
        )

    # ==================== WEBHOOK ====================

    @staticmethod
    def _parse_event(raw_body: bytes) -> Optional[Tuple[str, Dict[str, Any], Dict[str, Any]]]:
        """Event name and entities of a webhook body; None when the body is not a JSON object."""
        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return None
        payload = body.get("payload") or {}
        payment_entity = (payload.get("payment") or {}).get("entity") or {}
        order_entity = (payload.get("order") or {}).get("entity") or {}
        return body.get("event") or "", payment_entity, order_entity

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Apply a signed Razorpay webhook.

        Deliveries are at-least-once, so every branch is idempotent; unknown
        events, unreadable bodies and unknown payments are acknowledged and
        ignored.
        """
        if not verify_webhook_signature(raw_body, signature):
            raise SignatureMismatchError("Invalid webhook signature")

        parsed = self._parse_event(raw_body)
        if parsed is None:
            logger.warning(f"Ignoring signed webhook with unreadable body: {raw_body[:200]!r}")
            return
        event, payment_entity, order_entity = parsed
        gateway_order_id = payment_entity.get("order_id") or order_entity.get("id")
        logger.info(f"Webhook {event} for gateway order {gateway_order_id}")

        if event not in SUCCESS_EVENTS and event != WebhookEvent.PAYMENT_FAILED:
            logger.info(f"Ignoring webhook event {event}")
            return

        payment = await self.find_payment(gateway_order_id=gateway_order_id)
        if payment is None:
            logger.warning(f"Webhook {event}: no local payment for gateway order {gateway_order_id}")
            return

        if event in SUCCESS_EVENTS:
            if payment.status == TransactionStatus.COMPLETED.value:
                return
            if payment_entity.get("amount") is not None:
                paid = from_minor_units(payment_entity["amount"])
                if not money_equal(paid, payment.amount):
                    await self._flag_amount_mismatch(payment, paid)
                    return
            await self.apply_payment_success(payment, payment_entity.get("id"), None)
            return

        reason = (
            payment_entity.get("error_description")
            or payment_entity.get("error_reason")
            or "Payment failed at gateway"
        )
        if await self.mark_failed(payment, reason):
            order = await self._load_order(payment.order_id)
            notification_service.notify_payment_failed(order.order_id, payment.payment_id, reason)

    # ==================== REFUNDS ====================

    async def refund(
        self,
        payment_id: str,
        amount: Optional[float],
        reason: Optional[str],
        principal: Principal,
    ) -> PaymentResponse:
        """Refund a completed payment through the gateway, fully or partially."""
        payment = await self.find_payment(payment_id=payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status != TransactionStatus.COMPLETED.value:
            raise ValidationError(f"Only completed payments can be refunded (status {payment.status})")
        if not payment.transaction_id:
            raise ValidationError("Payment has no gateway transaction to refund")

        refund_amount = round_money(amount) if amount is not None else round_money(payment.amount)
        if refund_amount > round_money(payment.amount):
            raise ValidationError(
                "Refund amount exceeds the amount paid",
                details={"requested": refund_amount, "paid": round_money(payment.amount)},
            )
        if not self.gateway.is_configured:
            raise ConfigurationError("Payment gateway is not configured")

        try:
            refund = await self.gateway.refund_payment(
                payment.transaction_id,
                amount=to_minor_units(refund_amount),
                notes={"payment_id": payment.payment_id, "reason": reason or ""},
            )
        except GatewayError as e:
            logger.error(f"Refund of {payment.payment_id} failed: {e}")
            raise PaymentGatewayError("Could not process the refund with the gateway")

        order = await self._load_order(payment.order_id)
        payment.status = TransactionStatus.REFUNDED.value
        payment.refund_id = refund.get("id")
        payment.refunded_amount = refund_amount
        order.amount_paid = max(0.0, round_money((order.amount_paid or 0) - refund_amount))
        await self.db.commit()

        logger.info(
            f"Payment {payment.payment_id} refunded {refund_amount} by {principal.user_id}"
            f"{f': {reason}' if reason else ''}"
        )
        return self.to_response(payment, order)

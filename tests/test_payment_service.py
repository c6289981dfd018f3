"""
Tests for app/services/payment_service.py.

Covers:
- Amount due per payment option and stage
- Gateway order creation (amount check, timeouts, rejections)
- Checkout verification (signature, idempotency, gateway re-check)
- Two-step advance payments
- Webhooks (signature, replay, failures, unknown events)
- Payments landing on cancelled orders
- Refunds

The gateway is the in-process FakeGateway from conftest.
"""

import json

import pytest
from sqlalchemy import select

from app.core.errors import (
    ConfigurationError,
    ErrorCode,
    ForbiddenError,
    PaymentError,
    PaymentGatewayError,
    SignatureMismatchError,
    ValidationError,
)
from app.models import Order, Payment, Product
from app.schemas.order import OrderCreate
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService, amount_due
from app.services.razorpay_gateway import GatewayError, GatewayTimeoutError

from conftest import rental_item, sign, sign_webhook


async def place_order(db, product, principal, payment_option="payNow", **extra) -> Order:
    if payment_option == "payAdvance":
        extra.setdefault("priorityServiceScheduling", True)
    data = OrderCreate.model_validate(
        {"items": [rental_item(product)], "paymentOption": payment_option, **extra}
    )
    return await OrderService(db).create_order(data, principal)


async def reload_order(db, order: Order) -> Order:
    return await db.get(Order, order.id, populate_existing=True)


async def reload_payment(db, payment_id: str) -> Payment:
    result = await db.execute(
        select(Payment).where(Payment.payment_id == payment_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def webhook_body(event: str, gateway_order_id: str, payment_id: str = "pay_hook1", amount: int = 90000, **entity):
    payload = {
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "amount": amount,
                    "status": "captured" if event != "payment.failed" else "failed",
                    **entity,
                }
            }
        },
    }
    return json.dumps(payload).encode()


class TestAmountDue:
    @pytest.mark.asyncio
    async def test_full_amount_for_pay_now(self, db, fridge, user):
        order = await place_order(db, fridge, user)
        due = amount_due(order)
        assert (due.amount, due.purpose) == (900, "full")

    @pytest.mark.asyncio
    async def test_advance_then_remaining(self, db, fridge, user):
        order = await place_order(db, fridge, user, "payAdvance")
        assert (amount_due(order).amount, amount_due(order).purpose) == (500, "advance")

        order.payment_status = "advance_paid"
        assert (amount_due(order).amount, amount_due(order).purpose) == (450, "remaining")

    @pytest.mark.asyncio
    async def test_calculate_reports_nothing_due_when_paid(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        await service.verify(intent.gateway_order_id, "pay_1", sign(intent.gateway_order_id, "pay_1"), principal=user)

        calc = await service.calculate(order.order_id, user)
        assert calc.payment_status == "paid"
        assert calc.amount_due == 0
        assert calc.amount_paid == 900
        assert calc.purpose is None


class TestCreateIntent:
    @pytest.mark.asyncio
    async def test_opens_gateway_order_in_paise(self, db, fridge, user, gateway):
        order = await place_order(db, fridge, user)
        intent = await PaymentService(db, gateway).create_intent(str(order.id), 900, user)

        assert intent.amount == 900
        assert intent.currency == "INR"
        assert intent.key == "rzp_test_key"
        assert intent.gateway_order_id == gateway.orders[0]["id"]
        assert intent.razorpay_order_id == intent.gateway_order_id
        assert gateway.orders[0]["amount"] == 90000
        assert gateway.orders[0]["receipt"] == intent.payment_id

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Pending"
        assert payment.purpose == "full"
        assert payment.gateway_order_id == intent.gateway_order_id

    @pytest.mark.asyncio
    async def test_amount_must_match_amount_due(self, db, fridge, user, gateway):
        order = await place_order(db, fridge, user)
        with pytest.raises(PaymentError) as exc:
            await PaymentService(db, gateway).create_intent(order.order_id, 1000, user)

        assert exc.value.code == ErrorCode.AMOUNT_MISMATCH
        assert exc.value.details == {"requested": 1000, "expected": 900, "purpose": "full"}
        assert gateway.orders == []

    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_paid(self, db, fridge, user, gateway):
        order = await place_order(db, fridge, user)
        await OrderService(db).cancel_order(order.order_id, user, "Changed my mind")

        with pytest.raises(ValidationError, match="cancelled"):
            await PaymentService(db, gateway).create_intent(order.order_id, 900, user)

    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        await service.verify(intent.gateway_order_id, "pay_1", sign(intent.gateway_order_id, "pay_1"), principal=user)

        with pytest.raises(PaymentError) as exc:
            await service.create_intent(order.order_id, 900, user)
        assert exc.value.code == ErrorCode.ORDER_ALREADY_PAID

    @pytest.mark.asyncio
    async def test_stranger_cannot_pay(self, db, fridge, user, other_user, gateway):
        order = await place_order(db, fridge, user)
        with pytest.raises(ForbiddenError):
            await PaymentService(db, gateway).create_intent(order.order_id, 900, other_user)

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, db, fridge, user, gateway):
        gateway.is_configured = False
        order = await place_order(db, fridge, user)
        with pytest.raises(ConfigurationError):
            await PaymentService(db, gateway).create_intent(order.order_id, 900, user)

    @pytest.mark.asyncio
    async def test_timeout_leaves_payment_pending(self, db, fridge, user, gateway):
        gateway.create_error = GatewayTimeoutError("order.create timed out")
        order = await place_order(db, fridge, user)

        with pytest.raises(PaymentGatewayError) as exc:
            await PaymentService(db, gateway).create_intent(order.order_id, 900, user)
        assert exc.value.status_code == 502

        payment = await reload_payment(db, exc.value.details["paymentId"])
        assert payment.status == "Pending"
        assert payment.gateway_order_id is None

    @pytest.mark.asyncio
    async def test_rejection_marks_payment_failed(self, db, fridge, user, gateway):
        gateway.create_error = GatewayError("Bad request")
        order = await place_order(db, fridge, user)

        with pytest.raises(PaymentGatewayError) as exc:
            await PaymentService(db, gateway).create_intent(order.order_id, 900, user)

        payment = await reload_payment(db, exc.value.details["paymentId"])
        assert payment.status == "Failed"
        assert "Bad request" in payment.failure_reason


class TestVerify:
    @pytest.mark.asyncio
    async def test_valid_signature_settles_order(self, db, fridge, user, gateway, notifications):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)

        result = await service.verify(
            intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user
        )

        assert result.order_id == order.order_id
        assert result.payment_status == "paid"

        order = await reload_order(db, order)
        assert order.payment_status == "paid"
        assert order.status == "confirmed"
        assert order.amount_paid == 900
        assert order.confirmed_at is not None

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Completed"
        assert payment.transaction_id == "pay_abc"

        product = await db.get(Product, fridge.id, populate_existing=True)
        assert product.status == "RentedOut"
        assert any("Payment received" in n["subject"] for n in notifications)

    @pytest.mark.asyncio
    async def test_verify_is_idempotent(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        signature = sign(intent.gateway_order_id, "pay_abc")

        first = await service.verify(intent.gateway_order_id, "pay_abc", signature, principal=user)
        second = await service.verify(intent.gateway_order_id, "pay_abc", signature, principal=user)

        assert first.payment_status == second.payment_status == "paid"
        order = await reload_order(db, order)
        assert order.amount_paid == 900
        assert order.needs_reconciliation is False

    @pytest.mark.asyncio
    async def test_losing_settlement_changes_nothing(self, db, fridge, user, gateway, notifications):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        payment = await reload_payment(db, intent.payment_id)

        # Both callers read the payment while it was still Pending
        won = await service.apply_payment_success(payment, "pay_first", "sig_first")
        lost = await service.apply_payment_success(payment, "pay_second", "sig_second")

        assert (won, lost) == (True, False)
        payment = await reload_payment(db, intent.payment_id)
        assert payment.transaction_id == "pay_first"
        order = await reload_order(db, order)
        assert order.amount_paid == 900
        assert order.payment_status == "paid"
        assert order.needs_reconciliation is False
        assert order.items[0]["reserved"] is True
        assert (await db.get(Product, fridge.id, populate_existing=True)).status == "RentedOut"
        assert len([n for n in notifications if n["subject"].startswith("Payment received")]) == 1

    @pytest.mark.asyncio
    async def test_tampered_signature(self, db, fridge, user, gateway, notifications):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)

        with pytest.raises(SignatureMismatchError) as exc:
            await service.verify(intent.gateway_order_id, "pay_abc", "f" * 64, principal=user)
        assert exc.value.code == ErrorCode.SIGNATURE_MISMATCH
        assert exc.value.status_code == 400

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Failed"

        order = await reload_order(db, order)
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.amount_paid == 0
        assert any("signature mismatch" in n["subject"].lower() for n in notifications)

    @pytest.mark.asyncio
    async def test_gateway_reports_not_captured(self, db, fridge, user, gateway):
        gateway.payment_status = "failed"
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)

        with pytest.raises(PaymentError) as exc:
            await service.verify(
                intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user
            )
        assert exc.value.code == ErrorCode.PAYMENT_NOT_CAPTURED

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Failed"

    @pytest.mark.asyncio
    async def test_unreachable_gateway_trusts_signature(self, db, fridge, user, gateway):
        gateway.fetch_error = GatewayTimeoutError("payment.fetch timed out")
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)

        result = await service.verify(
            intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user
        )
        assert result.payment_status == "paid"

    @pytest.mark.asyncio
    async def test_retry_after_failed_signature(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)

        with pytest.raises(SignatureMismatchError):
            await service.verify(intent.gateway_order_id, "pay_abc", "bad", principal=user)
        result = await service.verify(
            intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user
        )
        assert result.payment_status == "paid"

    @pytest.mark.asyncio
    async def test_process_checks_order(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        other = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        signature = sign(intent.gateway_order_id, "pay_abc")

        with pytest.raises(ValidationError, match="does not belong"):
            await service.process_payment(
                other.order_id, intent.gateway_order_id, "pay_abc", signature, None, user
            )

        result = await service.process_payment(
            order.order_id, intent.gateway_order_id, "pay_abc", signature, intent.payment_id, user
        )
        assert result.payment_status == "paid"


class TestAdvancePayments:
    @pytest.mark.asyncio
    async def test_two_step_settlement(self, db, fridge, user, other_user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user, "payAdvance")

        advance = await service.create_intent(order.order_id, 500, user)
        await service.verify(advance.gateway_order_id, "pay_adv", sign(advance.gateway_order_id, "pay_adv"), principal=user)

        order = await reload_order(db, order)
        assert order.payment_status == "advance_paid"
        assert order.status == "pending"
        assert order.amount_paid == 500
        assert order.items[0]["reserved"] is True
        assert (await db.get(Product, fridge.id, populate_existing=True)).status == "RentedOut"

        with pytest.raises(ValidationError, match="not available"):
            await place_order(db, fridge, other_user, "payAdvance")

        calc = await service.calculate(order.order_id, user)
        assert (calc.amount_due, calc.purpose) == (450, "remaining")

        remaining = await service.create_intent(order.order_id, 450, user)
        await service.verify(
            remaining.gateway_order_id, "pay_rem", sign(remaining.gateway_order_id, "pay_rem"), principal=user
        )

        order = await reload_order(db, order)
        assert order.payment_status == "paid"
        assert order.status == "confirmed"
        assert order.amount_paid == 950
        assert order.needs_reconciliation is False
        assert (await db.get(Product, fridge.id, populate_existing=True)).status == "RentedOut"


class TestWebhook:
    @pytest.mark.asyncio
    async def test_captured_event_settles_once(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        body = webhook_body("payment.captured", intent.gateway_order_id)

        await service.handle_webhook(body, sign_webhook(body))
        await service.handle_webhook(body, sign_webhook(body))

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Completed"
        assert payment.transaction_id == "pay_hook1"
        order = await reload_order(db, order)
        assert order.payment_status == "paid"
        assert order.amount_paid == 900

    @pytest.mark.asyncio
    async def test_webhook_after_verify_is_noop(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        await service.verify(intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user)

        body = webhook_body("order.paid", intent.gateway_order_id, payment_id="pay_abc")
        await service.handle_webhook(body, sign_webhook(body))

        order = await reload_order(db, order)
        assert order.amount_paid == 900
        assert order.needs_reconciliation is False

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, db, fridge, user, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        body = webhook_body("payment.captured", intent.gateway_order_id)

        with pytest.raises(SignatureMismatchError):
            await service.handle_webhook(body, "not-a-signature")

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Pending"

    @pytest.mark.asyncio
    async def test_failed_event(self, db, fridge, user, gateway, notifications):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        body = webhook_body(
            "payment.failed", intent.gateway_order_id, error_description="Card declined by issuer"
        )

        await service.handle_webhook(body, sign_webhook(body))

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Failed"
        assert payment.failure_reason == "Card declined by issuer"
        assert any("Payment failed" in n["subject"] for n in notifications)

    @pytest.mark.asyncio
    async def test_unknown_event_and_payment_ignored(self, db, gateway):
        service = PaymentService(db, gateway)
        refund_body = json.dumps({"event": "refund.processed", "payload": {}}).encode()
        await service.handle_webhook(refund_body, sign_webhook(refund_body))

        orphan = webhook_body("payment.captured", "order_unknown")
        await service.handle_webhook(orphan, sign_webhook(orphan))

        assert (await db.execute(select(Payment))).scalars().all() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b'["payment.captured"]', b"not json", b'"text"'])
    async def test_signed_unreadable_body_acknowledged(self, db, gateway, body):
        await PaymentService(db, gateway).handle_webhook(body, sign_webhook(body))

    @pytest.mark.asyncio
    async def test_captured_amount_mismatch_flagged(self, db, fridge, user, gateway, notifications):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        body = webhook_body("payment.captured", intent.gateway_order_id, amount=50000)

        await service.handle_webhook(body, sign_webhook(body))

        payment = await reload_payment(db, intent.payment_id)
        assert payment.status == "Pending"
        order = await reload_order(db, order)
        assert order.payment_status == "pending"
        assert order.amount_paid == 0
        assert order.needs_reconciliation is True
        assert "captured 500" in order.reconciliation_note
        assert any("reconciliation" in n["subject"] for n in notifications)

    @pytest.mark.asyncio
    async def test_payment_after_cancellation_flagged(self, db, fridge, user, gateway, notifications):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        await OrderService(db).cancel_order(order.order_id, user, "Changed my mind")

        body = webhook_body("payment.captured", intent.gateway_order_id)
        await service.handle_webhook(body, sign_webhook(body))

        order = await reload_order(db, order)
        assert order.status == "cancelled"
        assert order.needs_reconciliation is True
        assert intent.payment_id in order.reconciliation_note
        assert any("cancelled order" in n["subject"] for n in notifications)

        product = await db.get(Product, fridge.id, populate_existing=True)
        assert product.status == "Available"


class TestRefund:
    @pytest.mark.asyncio
    async def test_partial_refund(self, db, fridge, user, admin, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        await service.verify(intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user)

        response = await service.refund(intent.payment_id, 400, "Late delivery", admin)

        assert response.status == "Refunded"
        assert response.refunded_amount == 400
        assert response.refund_id == gateway.refunds[0]["id"]
        assert gateway.refunds[0]["payment_id"] == "pay_abc"
        assert gateway.refunds[0]["amount"] == 40000

        order = await reload_order(db, order)
        assert order.amount_paid == 500

    @pytest.mark.asyncio
    async def test_refund_more_than_paid_rejected(self, db, fridge, user, admin, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)
        await service.verify(intent.gateway_order_id, "pay_abc", sign(intent.gateway_order_id, "pay_abc"), principal=user)

        with pytest.raises(ValidationError, match="exceeds"):
            await service.refund(intent.payment_id, 1000, None, admin)
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_only_completed_payments_refundable(self, db, fridge, user, admin, gateway):
        service = PaymentService(db, gateway)
        order = await place_order(db, fridge, user)
        intent = await service.create_intent(order.order_id, 900, user)

        with pytest.raises(ValidationError, match="Only completed payments"):
            await service.refund(intent.payment_id, None, None, admin)

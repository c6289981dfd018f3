"""
Tests for app/services/pricing_service.py.

Covers:
- payNow / payAdvance / payLater payment discounts
- final_total == total - payment_discount - coupon_discount
- Advance split and its floor at zero
- Rental price checks (duration, product discount, monthly plan)
- AC installation charges
- Service lines priced from the request
- Client figures recorded as warnings, never trusted
"""

import pytest

from app.core.errors import CouponError, ErrorCode, NotFoundError, ValidationError
from app.schemas.order import OrderCreate
from app.services.pricing_service import PricingService
from app.services.settings_service import SettingsService

from conftest import make_coupon, make_product, rental_item


def order_request(items, payment_option="payNow", **extra) -> OrderCreate:
    return OrderCreate.model_validate({"items": items, "paymentOption": payment_option, **extra})


def assert_identity(priced):
    assert priced.final_total == round(priced.total - priced.payment_discount - priced.coupon_discount, 2)
    assert priced.discount == round(priced.payment_discount + priced.coupon_discount, 2)


class TestPaymentDiscounts:
    @pytest.mark.asyncio
    async def test_pay_now_instant_discount(self, db, fridge):
        priced = await PricingService(db).price_order(order_request([rental_item(fridge)]), "user-1")

        assert priced.total == 1000
        assert priced.payment_discount == 100
        assert priced.coupon_discount == 0
        assert priced.final_total == 900
        assert priced.advance_amount is None
        assert priced.remaining_amount is None
        assert_identity(priced)

    @pytest.mark.asyncio
    async def test_pay_advance_split(self, db, fridge):
        request = order_request(
            [rental_item(fridge)], "payAdvance", priorityServiceScheduling=True, advanceAmount=500
        )
        priced = await PricingService(db).price_order(request, "user-1")

        assert priced.payment_discount == 50
        assert priced.final_total == 950
        assert priced.advance_amount == 500
        assert priced.remaining_amount == 450
        assert priced.priority_service_scheduling is True
        assert_identity(priced)

    @pytest.mark.asyncio
    async def test_pay_later_has_no_discount(self, db, fridge):
        priced = await PricingService(db).price_order(
            order_request([rental_item(fridge)], "payLater"), "user-1"
        )
        assert priced.payment_discount == 0
        assert priced.final_total == 1000

    @pytest.mark.asyncio
    async def test_discount_follows_current_settings(self, db, fridge):
        await SettingsService(db).update_settings({"instant_payment_discount": 15}, "admin-1")
        priced = await PricingService(db).price_order(order_request([rental_item(fridge)]), "user-1")
        assert priced.payment_discount == 150
        assert priced.final_total == 850

    @pytest.mark.asyncio
    async def test_remaining_never_negative(self, db, fridge):
        await SettingsService(db).update_settings({"advance_payment_amount": 1000}, "admin-1")
        request = order_request([rental_item(fridge)], "payAdvance", priorityServiceScheduling=True)
        priced = await PricingService(db).price_order(request, "user-1")

        assert priced.final_total == 950
        assert priced.advance_amount == 1000
        assert priced.remaining_amount == 0


class TestPaymentOptionFields:
    @pytest.mark.asyncio
    async def test_pay_advance_requires_priority_scheduling(self, db, fridge):
        with pytest.raises(ValidationError, match="Priority service scheduling"):
            await PricingService(db).price_order(order_request([rental_item(fridge)], "payAdvance"), "user-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("extra", [
        {"advanceAmount": 500},
        {"remainingAmount": 450},
        {"priorityServiceScheduling": True},
    ])
    async def test_advance_fields_rejected_for_other_options(self, db, fridge, extra):
        with pytest.raises(ValidationError):
            await PricingService(db).price_order(order_request([rental_item(fridge)], "payNow", **extra), "user-1")

    @pytest.mark.asyncio
    async def test_wrong_advance_amount_rejected(self, db, fridge):
        request = order_request(
            [rental_item(fridge)], "payAdvance", priorityServiceScheduling=True, advanceAmount=300
        )
        with pytest.raises(ValidationError) as exc:
            await PricingService(db).price_order(request, "user-1")
        assert exc.value.details == {"provided": 300, "expected": 500}


class TestRentalLines:
    @pytest.mark.asyncio
    async def test_price_mismatch_rejected(self, db, fridge):
        with pytest.raises(ValidationError, match="Price mismatch") as exc:
            await PricingService(db).price_order(order_request([rental_item(fridge, price=900)]), "user-1")
        assert exc.value.details == {"provided": 900, "expected": 1000}

    @pytest.mark.asyncio
    async def test_unsupported_duration_rejected(self, db, fridge):
        item = {"productId": str(fridge.id), "duration": 5, "price": 1000}
        with pytest.raises(ValidationError, match="Duration must be one of"):
            await PricingService(db).price_order(order_request([item]), "user-1")

    @pytest.mark.asyncio
    async def test_product_discount_applied_before_check(self, db):
        product = await make_product(db, discount=10)
        service = PricingService(db)

        with pytest.raises(ValidationError):
            await service.price_order(order_request([rental_item(product, price=1000)]), "user-1")

        priced = await service.price_order(order_request([rental_item(product, price=900)]), "user-1")
        assert priced.total == 900
        assert priced.product_discount == 100
        assert priced.items[0]["list_price"] == 1000
        assert priced.items[0]["unit_price"] == 900

    @pytest.mark.asyncio
    async def test_quantity_multiplies_price(self, db, fridge):
        priced = await PricingService(db).price_order(
            order_request([rental_item(fridge, duration=12, quantity=2)], "payLater"), "user-1"
        )
        assert priced.items[0]["price"] == 6400
        assert priced.total == 6400

    @pytest.mark.asyncio
    async def test_unavailable_product_rejected(self, db):
        product = await make_product(db, status="RentedOut")
        with pytest.raises(ValidationError, match="not available"):
            await PricingService(db).price_order(order_request([rental_item(product)]), "user-1")

    @pytest.mark.asyncio
    async def test_unknown_product(self, db):
        item = {"productId": "4f0c5a43-8d6f-4c55-9d9b-4d1f8f4c0a11", "duration": 3, "price": 1000}
        with pytest.raises(NotFoundError):
            await PricingService(db).price_order(order_request([item]), "user-1")

    @pytest.mark.asyncio
    async def test_legacy_ac_id_alias(self, db, fridge):
        item = {"acId": str(fridge.id), "duration": 3, "price": 1000}
        priced = await PricingService(db).price_order(order_request([item]), "user-1")
        assert priced.items[0]["product_id"] == str(fridge.id)

    @pytest.mark.asyncio
    async def test_snapshot_stored_on_line(self, db, fridge):
        priced = await PricingService(db).price_order(order_request([rental_item(fridge)]), "user-1")
        snapshot = priced.items[0]["product"]
        assert snapshot["name"] == "Double Door Fridge"
        assert snapshot["category"] == "Refrigerator"


class TestInstallationAndMonthly:
    @pytest.mark.asyncio
    async def test_ac_installation_added_to_total(self, db, split_ac):
        priced = await PricingService(db).price_order(order_request([rental_item(split_ac)], "payLater"), "user-1")

        assert priced.items[0]["installation_charges"] == 1500
        assert priced.total == 2500

    @pytest.mark.asyncio
    async def test_installation_ignored_for_other_categories(self, db):
        product = await make_product(db, installation_charges={"amount": 1500})
        priced = await PricingService(db).price_order(order_request([rental_item(product)], "payLater"), "user-1")
        assert priced.items[0]["installation_charges"] == 0
        assert priced.total == 1000

    @pytest.mark.asyncio
    async def test_monthly_plan(self, db, split_ac):
        item = {
            "productId": str(split_ac.id),
            "isMonthlyPayment": True,
            "monthlyTenure": 12,
            "monthlyPrice": 1200,
            "securityDeposit": 2000,
        }
        priced = await PricingService(db).price_order(order_request([item], "payLater"), "user-1")

        line = priced.items[0]
        assert line["unit_price"] == 3200
        assert line["monthly_tenure"] == 12
        assert line["duration"] == 12
        assert priced.total == 4700

    @pytest.mark.asyncio
    async def test_monthly_plan_requires_matching_price(self, db, split_ac):
        item = {
            "productId": str(split_ac.id),
            "isMonthlyPayment": True,
            "monthlyTenure": 12,
            "monthlyPrice": 999,
            "securityDeposit": 2000,
        }
        with pytest.raises(ValidationError, match="Monthly price mismatch"):
            await PricingService(db).price_order(order_request([item], "payLater"), "user-1")

    @pytest.mark.asyncio
    async def test_monthly_plan_not_enabled(self, db, fridge):
        item = {
            "productId": str(fridge.id),
            "isMonthlyPayment": True,
            "monthlyTenure": 12,
            "monthlyPrice": 1200,
            "securityDeposit": 2000,
        }
        with pytest.raises(ValidationError, match="Monthly payment is not available"):
            await PricingService(db).price_order(order_request([item], "payLater"), "user-1")


class TestServiceLines:
    @pytest.mark.asyncio
    async def test_service_price_taken_from_request(self, db, jet_wash):
        item = {"serviceId": str(jet_wash.id), "price": 499, "quantity": 2}
        priced = await PricingService(db).price_order(order_request([item], "payLater"), "user-1")

        assert priced.items[0]["type"] == "service"
        assert priced.items[0]["price"] == 998
        assert priced.total == 998

    @pytest.mark.asyncio
    async def test_mixed_order(self, db, fridge, jet_wash):
        items = [rental_item(fridge), {"serviceId": str(jet_wash.id), "price": 599}]
        priced = await PricingService(db).price_order(order_request(items), "user-1")

        assert priced.total == 1599
        assert priced.payment_discount == 159.9
        assert priced.final_total == 1439.1
        assert_identity(priced)


class TestCoupons:
    @pytest.mark.asyncio
    async def test_coupon_on_top_of_payment_discount(self, db, fridge):
        await make_coupon(db)
        priced = await PricingService(db).price_order(
            order_request([rental_item(fridge)], couponCode="save20pct"), "user-1"
        )

        assert priced.coupon_discount == 150
        assert priced.payment_discount == 100
        assert priced.discount == 250
        assert priced.final_total == 750
        assert priced.coupon.code == "SAVE20PCT"
        assert_identity(priced)

    @pytest.mark.asyncio
    async def test_coupon_cannot_push_total_below_zero(self, db, fridge):
        await make_coupon(db, code="FLAT1000", type="fixed", value=1000, max_discount=None)
        priced = await PricingService(db).price_order(
            order_request([rental_item(fridge)], couponCode="FLAT1000"), "user-1"
        )

        assert priced.coupon_discount == 900
        assert priced.final_total == 0
        assert_identity(priced)

    @pytest.mark.asyncio
    async def test_coupon_rejection_propagates(self, db, fridge):
        await make_coupon(db, applicable_categories=["AC"])
        with pytest.raises(CouponError) as exc:
            await PricingService(db).price_order(
                order_request([rental_item(fridge)], couponCode="SAVE20PCT"), "user-1"
            )
        assert exc.value.code == ErrorCode.COUPON_CATEGORY_NOT_APPLICABLE


class TestClientFigures:
    @pytest.mark.asyncio
    async def test_mismatched_client_totals_become_warnings(self, db, fridge):
        request = order_request([rental_item(fridge)], total=1200, discount=100, finalTotal=1100)
        priced = await PricingService(db).price_order(request, "user-1")

        assert priced.final_total == 900
        fields = {w["field"]: w for w in priced.warnings}
        assert set(fields) == {"total", "finalTotal"}
        assert fields["finalTotal"] == {"field": "finalTotal", "client_value": 1100, "server_value": 900}

    @pytest.mark.asyncio
    async def test_matching_client_totals_leave_no_warning(self, db, fridge):
        request = order_request([rental_item(fridge)], total=1000, discount=100, finalTotal=900.004)
        priced = await PricingService(db).price_order(request, "user-1")
        assert priced.warnings == []

# Services module
from app.services.settings_service import SettingsService
from app.services.coupon_service import CouponService
from app.services.pricing_service import PricingService
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService

__all__ = [
    "SettingsService",
    "CouponService",
    "PricingService",
    "OrderService",
    "PaymentService",
]

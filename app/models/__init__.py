# Models module - importing registers every table on Base.metadata
from app.models.product import Product, ProductCategory, ProductStatus, RENTAL_DURATIONS
from app.models.service import Service, ServiceBooking, ServiceBookingStatus
from app.models.coupon import Coupon, CouponUsage, DiscountType
from app.models.order import (
    Order,
    Payment,
    OrderStatus,
    PaymentStatus,
    PaymentOption,
    ItemType,
    TransactionStatus,
    PaymentPurpose,
)
from app.models.settings import PricingSettings

__all__ = [
    "Product",
    "ProductCategory",
    "ProductStatus",
    "RENTAL_DURATIONS",
    "Service",
    "ServiceBooking",
    "ServiceBookingStatus",
    "Coupon",
    "CouponUsage",
    "DiscountType",
    "Order",
    "Payment",
    "OrderStatus",
    "PaymentStatus",
    "PaymentOption",
    "ItemType",
    "TransactionStatus",
    "PaymentPurpose",
    "PricingSettings",
]

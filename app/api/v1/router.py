from fastapi import APIRouter

from app.api.v1.endpoints import (
    coupons,
    admin_coupons,
    settings,
    orders,
    payments,
)

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Coupons ====================
api_router.include_router(
    coupons.router,
    prefix="/coupons",
    tags=["Coupons"]
)
api_router.include_router(
    admin_coupons.router,
    prefix="/admin/coupons",
    tags=["Admin - Coupons"]
)

# ==================== Settings ====================
api_router.include_router(
    settings.router,
    prefix="/settings",
    tags=["Settings"]
)
api_router.include_router(
    settings.admin_router,
    prefix="/admin/settings",
    tags=["Admin - Settings"]
)

# ==================== Orders ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)
api_router.include_router(
    orders.admin_router,
    prefix="/admin/orders",
    tags=["Admin - Orders"]
)

# ==================== Payments ====================
api_router.include_router(
    payments.router,
    prefix="/payments",
    tags=["Payments"]
)
api_router.include_router(
    payments.admin_router,
    prefix="/admin/payments",
    tags=["Admin - Payments"]
)

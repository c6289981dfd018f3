"""
Order API Endpoints

Handles:
- Order creation with server-side pricing
- Order listing and detail for the current user
- User and admin cancellation
- Admin listing and fulfilment status updates
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, status

from app.api.deps import DB, AdminUser, CurrentUser, Gateway
from app.schemas.common import APIResponse, ListResponse
from app.schemas.order import (
    OrderCancelRequest,
    OrderCreate,
    OrderCreated,
    OrderResponse,
    OrderStatusUpdate,
)
from app.services.order_service import OrderService, format_order_response

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()


# ==================== CUSTOMER ENDPOINTS ====================

@router.post("", response_model=APIResponse[OrderCreated], status_code=status.HTTP_201_CREATED)
async def create_order(data: OrderCreate, db: DB, principal: CurrentUser, gateway: Gateway):
    """
    Create an order.

    Prices, discounts and totals are computed on the server; client figures
    that disagree are kept as pricing warnings on the order.
    """
    order = await OrderService(db, gateway).create_order(data, principal)
    return APIResponse(
        message="Order created successfully",
        data=OrderCreated(
            order_id=order.order_id,
            order=format_order_response(order),
            created_at=order.created_at,
        ),
    )


@router.get("", response_model=ListResponse[OrderResponse])
async def list_my_orders(
    db: DB,
    principal: CurrentUser,
    order_status: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    orders, total = await OrderService(db).list_user_orders(
        principal.user_id, status=order_status, skip=skip, limit=limit
    )
    return ListResponse(data=[format_order_response(o) for o in orders], total=total)


@router.get("/{order_ref}", response_model=APIResponse[OrderResponse])
async def get_order(order_ref: str, db: DB, principal: CurrentUser):
    """Accepts the order UUID or the order id (ORD-...)."""
    order = await OrderService(db).get_order(order_ref, principal)
    return APIResponse(data=format_order_response(order))


@router.post("/{order_ref}/cancel", response_model=APIResponse[OrderResponse])
async def cancel_order(order_ref: str, data: OrderCancelRequest, db: DB, principal: CurrentUser):
    order = await OrderService(db).cancel_order(order_ref, principal, data.reason)
    return APIResponse(message="Order cancelled successfully", data=format_order_response(order))


# ==================== ADMIN ENDPOINTS ====================

@admin_router.get("", response_model=ListResponse[OrderResponse])
async def list_all_orders(
    db: DB,
    admin: AdminUser,
    order_status: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    needs_reconciliation: Optional[bool] = Query(None, alias="needsReconciliation"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    orders, total = await OrderService(db).list_all_orders(
        status=order_status,
        payment_status=payment_status,
        needs_reconciliation=needs_reconciliation,
        skip=skip,
        limit=limit,
    )
    return ListResponse(data=[format_order_response(o) for o in orders], total=total)


@admin_router.patch("/{order_ref}/status", response_model=APIResponse[OrderResponse])
async def update_order_status(order_ref: str, data: OrderStatusUpdate, db: DB, admin: AdminUser):
    order = await OrderService(db).update_status(order_ref, data.status, admin)
    return APIResponse(message=f"Order status updated to {order.status}", data=format_order_response(order))


@admin_router.post("/{order_ref}/cancel", response_model=APIResponse[OrderResponse])
async def admin_cancel_order(order_ref: str, data: OrderCancelRequest, db: DB, admin: AdminUser):
    order = await OrderService(db).cancel_order(order_ref, admin, data.reason, by_admin=True)
    return APIResponse(message="Order cancelled successfully", data=format_order_response(order))

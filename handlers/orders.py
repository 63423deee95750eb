"""
Order routes
Checkout, customer and vendor order views, cancellation and vendor status updates
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from middleware.auth_security import get_current_user, require_admin, require_vendor
from models import User
from schemas import CreateOrderRequest, UpdateOrderStatusRequest
from services.order_service import OrderService, get_order_service, serialize_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", status_code=201)
def create_order(
    body: CreateOrderRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    created = orders.create_order(
        db, user,
        items=[item.model_dump() for item in body.items],
        shipping_address=body.shipping_address,
        billing_address=body.billing_address,
        payment_method=body.payment_method,
        coupon_code=body.coupon_code,
    )
    return {"message": "Orders created successfully", "orders": [serialize_order(o) for o in created]}


@router.get("/mine")
def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    return orders.list_customer_orders(db, user, page, limit, status)


@router.get("/vendor")
def vendor_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    user: User = Depends(require_vendor),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    return orders.list_vendor_orders(db, user, page, limit, status)


@router.get("/admin/all")
def all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    return orders.list_all_orders(db, page, limit, status, payment_status)


@router.get("/{order_id}")
def get_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    return serialize_order(orders.get_order(db, user, order_id))


@router.patch("/{order_id}/cancel")
def cancel_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.cancel_order(db, user, order_id)
    return {"message": "Order cancelled successfully", "order": serialize_order(order)}


@router.patch("/{order_id}/status")
async def update_order_status(
    order_id: int,
    body: UpdateOrderStatusRequest,
    user: User = Depends(require_vendor),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    tracking = body.tracking.model_dump() if body.tracking else None
    order = await orders.update_order_status(db, user, order_id, body.status, tracking)
    return {"message": "Order status updated successfully", "order": serialize_order(order)}

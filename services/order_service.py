"""
Order Engine
Checkout split per vendor, vendor fulfilment status and customer cancellation
"""

import logging
import math
import secrets
import string
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Cart, Coupon, CouponType, EscrowState, Order, OrderItem, OrderStatus, PaymentMethod,
    Product, User, VendorOrder,
)
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator, serialize_escrow
from utils.atomic_transactions import atomic_transaction, compare_and_swap
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    ConflictError, InvalidInputError, InvalidStateError, NotAuthorizedError, NotFoundError,
)
from utils.order_state_validator import OrderStateValidator

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def _money(value) -> float:
    return MonetaryDecimal.to_float(value)


def serialize_order(order: Order) -> Dict[str, Any]:
    vendor_order = order.vendor_order
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "customerId": order.customer_id,
        "items": [
            {
                "productId": item.product_id,
                "vendorId": item.vendor_id,
                "name": item.name,
                "quantity": item.quantity,
                "price": _money(item.price),
                "variant": item.variant,
            }
            for item in order.items
        ],
        "shippingAddress": order.shipping_address,
        "billingAddress": order.billing_address,
        "subtotal": _money(order.subtotal),
        "tax": _money(order.tax),
        "shipping": _money(order.shipping),
        "discount": _money(order.discount),
        "total": _money(order.total),
        "paymentMethod": order.payment_method,
        "paymentStatus": order.payment_status,
        "status": order.status,
        "couponCode": order.coupon_code,
        "vendorOrder": {
            "vendorId": vendor_order.vendor_id,
            "subtotal": _money(vendor_order.subtotal),
            "commission": _money(vendor_order.commission),
            "vendorAmount": _money(vendor_order.vendor_amount),
            "status": vendor_order.status,
            "tracking": {
                "number": vendor_order.tracking_number,
                "carrier": vendor_order.carrier,
                "shippedAt": isoformat_or_none(vendor_order.shipped_at),
                "deliveredAt": isoformat_or_none(vendor_order.delivered_at),
            },
        } if vendor_order else None,
        "escrow": serialize_escrow(order),
        "createdAt": isoformat_or_none(order.created_at),
        "updatedAt": isoformat_or_none(order.updated_at),
        "cancelledAt": isoformat_or_none(order.cancelled_at),
    }


def _paginate(session: Session, stmt, page: int, limit: int) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 10)))
    total = session.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    orders = session.execute(
        stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        "orders": [serialize_order(o) for o in orders],
        "totalPages": math.ceil(total / limit) if total else 0,
        "currentPage": page,
        "total": total,
    }


class OrderService:
    """Customer checkout and the order lifecycle up to escrow hand-off"""

    def __init__(self, coordinator: Optional[EscrowCoordinator] = None):
        self._coordinator = coordinator

    @property
    def coordinator(self) -> EscrowCoordinator:
        return self._coordinator or get_escrow_coordinator()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_coupon(session: Session, code: str, subtotal: Decimal) -> Coupon:
        coupon = session.execute(
            select(Coupon).where(Coupon.code == code.strip().upper(), Coupon.is_active.is_(True))
        ).scalar_one_or_none()
        if coupon is None:
            raise InvalidInputError("Invalid or inactive coupon code")
        now = get_naive_utc_now()
        if now < coupon.valid_from or now > coupon.valid_until:
            raise InvalidInputError("Coupon is not valid at this time")
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            raise ConflictError("Coupon usage limit reached")
        minimum = MonetaryDecimal.to_decimal(coupon.minimum_amount or 0)
        if subtotal < minimum:
            raise InvalidInputError(f"Coupon requires minimum order of {MonetaryDecimal.format_amount(minimum)}")
        return coupon

    @staticmethod
    def _vendor_discount(coupon: Optional[Coupon], vendor_subtotal: Decimal, subtotal: Decimal) -> Decimal:
        if coupon is None:
            return Decimal("0")
        value = MonetaryDecimal.to_decimal(coupon.value)
        discount = Decimal("0")
        if coupon.type == CouponType.PERCENTAGE.value:
            discount = vendor_subtotal * value / Decimal(100)
        elif coupon.type == CouponType.FIXED.value:
            # Fixed amount is shared across vendors in proportion to their subtotals
            discount = (vendor_subtotal / subtotal) * value if subtotal > 0 else Decimal("0")
        if coupon.type != CouponType.FREE_SHIPPING.value and coupon.maximum_discount is not None:
            discount = min(discount, MonetaryDecimal.to_decimal(coupon.maximum_discount))
        discount = min(discount, vendor_subtotal)
        return MonetaryDecimal.quantize_money(discount)

    def create_order(
        self,
        session: Session,
        customer: User,
        items: List[Dict[str, Any]],
        shipping_address: Dict[str, Any],
        billing_address: Optional[Dict[str, Any]],
        payment_method: str,
        coupon_code: Optional[str] = None,
    ) -> List[Order]:
        """Create one order per vendor; reservation, coupon usage and cart clearing are atomic"""
        if not items:
            raise InvalidInputError("Order must contain at least one item", [{"field": "items", "message": "required"}])
        try:
            PaymentMethod(payment_method)
        except ValueError:
            raise InvalidInputError(
                "Invalid payment method", [{"field": "paymentMethod", "message": f"unsupported {payment_method}"}]
            )

        subtotal = Decimal("0")
        vendor_groups: "OrderedDict[int, Dict[str, Any]]" = OrderedDict()

        for entry in items:
            product_id = entry.get("product")
            quantity = int(entry.get("quantity") or 0)
            if quantity <= 0:
                raise InvalidInputError(f"Invalid quantity for product {product_id}")

            product = session.get(Product, product_id)
            if product is None or not product.is_active:
                raise InvalidInputError(f"Product {product_id} not found or inactive")
            if product.vendor is None or not product.vendor.can_transact_as_vendor:
                raise InvalidInputError(f"Product {product.name} is not available from an approved vendor")
            if product.track_quantity and product.quantity < quantity:
                raise InvalidInputError(f"Insufficient quantity for product {product.name}")

            price = MonetaryDecimal.quantize_money(product.price)
            line_total = price * quantity
            subtotal += line_total

            group = vendor_groups.setdefault(product.vendor_id, {"items": [], "subtotal": Decimal("0")})
            group["items"].append({"product": product, "quantity": quantity, "price": price,
                                   "variant": entry.get("variant")})
            group["subtotal"] += line_total

        coupon = self._validate_coupon(session, coupon_code, subtotal) if coupon_code else None

        created: List[Order] = []
        with atomic_transaction(session):
            for vendor_id, group in vendor_groups.items():
                for line in group["items"]:
                    product = line["product"]
                    if not product.track_quantity:
                        continue
                    reserved = session.execute(
                        update(Product)
                        .where(Product.id == product.id, Product.quantity >= line["quantity"])
                        .values(quantity=Product.quantity - line["quantity"])
                        .execution_options(synchronize_session="fetch")
                    ).rowcount
                    if reserved != 1:
                        raise InvalidInputError(f"Insufficient quantity for product {product.name}")

                vendor_subtotal = MonetaryDecimal.quantize_money(group["subtotal"])
                tax = MonetaryDecimal.quantize_money(vendor_subtotal * Config.TAX_RATE)
                shipping = Decimal("0")
                discount = self._vendor_discount(coupon, vendor_subtotal, subtotal)
                total = MonetaryDecimal.quantize_money(vendor_subtotal + tax + shipping - discount)
                commission = MonetaryDecimal.quantize_money(vendor_subtotal * Config.PLATFORM_COMMISSION_RATE)

                order = Order(
                    order_number=generate_order_number(),
                    customer_id=customer.id,
                    shipping_address=shipping_address,
                    billing_address=billing_address or shipping_address,
                    subtotal=vendor_subtotal,
                    tax=tax,
                    shipping=shipping,
                    discount=discount,
                    total=total,
                    payment_method=payment_method,
                    coupon_code=coupon.code if coupon else None,
                )
                order.items = [
                    OrderItem(
                        product_id=line["product"].id,
                        vendor_id=vendor_id,
                        name=line["product"].name,
                        quantity=line["quantity"],
                        price=line["price"],
                        variant=line["variant"],
                    )
                    for line in group["items"]
                ]
                order.vendor_order = VendorOrder(
                    vendor_id=vendor_id,
                    subtotal=vendor_subtotal,
                    commission=commission,
                    vendor_amount=vendor_subtotal - commission,
                )
                session.add(order)
                created.append(order)

            if coupon is not None:
                used = session.execute(
                    update(Coupon)
                    .where(
                        Coupon.id == coupon.id,
                        or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
                    )
                    .values(used_count=Coupon.used_count + 1)
                    .execution_options(synchronize_session="fetch")
                ).rowcount
                if used != 1:
                    raise ConflictError("Coupon usage limit reached")

            session.execute(delete(Cart).where(Cart.user_id == customer.id))
            session.flush()

        for order in created:
            logger.info(
                f"🛒 ORDER_CREATED: {order.order_number} customer {customer.id} vendor {order.vendor_id} "
                f"total {order.total}"
            )
        return created

    # ------------------------------------------------------------------
    # Fulfilment
    # ------------------------------------------------------------------

    async def update_order_status(
        self,
        session: Session,
        user: User,
        order_id: int,
        status: str,
        tracking: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Vendor (or admin) moves the order forward; confirmation triggers escrow creation"""
        order = session.get(Order, order_id)
        if order is None or not (user.is_admin or order.vendor_id == user.id):
            raise NotFoundError("Order not found or unauthorized")
        if not user.is_admin and not user.can_transact_as_vendor:
            raise NotAuthorizedError("Vendor account is not approved")

        try:
            target = OrderStatus(status)
        except ValueError:
            raise InvalidInputError(f"Invalid order status: {status}", [{"field": "status", "message": "unknown status"}])

        current = order.status
        OrderStateValidator.require_transition(current, target, order.id)

        now = get_naive_utc_now()
        vendor_values: Dict[str, Any] = {"status": target.value}
        if tracking:
            vendor_values["tracking_number"] = tracking.get("number") or tracking.get("trackingNumber")
            vendor_values["carrier"] = tracking.get("carrier")
        if target == OrderStatus.SHIPPED:
            vendor_values["shipped_at"] = now
        elif target == OrderStatus.DELIVERED:
            vendor_values["delivered_at"] = now

        with atomic_transaction(session):
            moved = compare_and_swap(session, Order, order.id, {"status": current}, {"status": target.value})
            if not moved:
                raise InvalidStateError("Order status was changed by another request")
            compare_and_swap(session, VendorOrder, order.vendor_order.id, {"status": current}, vendor_values)

        session.refresh(order)
        logger.info(f"📦 ORDER_STATUS_UPDATED: order {order.id} {current} -> {target.value} by user {user.id}")

        if target == OrderStatus.CONFIRMED:
            try:
                await self.coordinator.create_escrow(session, order.id)
            except Exception as e:
                logger.error(f"❌ ESCROW_AUTO_CREATE_FAILED: order {order.id}: {e}", exc_info=True)
            session.refresh(order)

        return order

    def cancel_order(self, session: Session, user: User, order_id: int) -> Order:
        order = session.get(Order, order_id)
        if order is None or order.customer_id != user.id:
            raise NotFoundError("Order not found")
        if not OrderStateValidator.can_cancel(order.status):
            raise InvalidStateError("Order cannot be cancelled at this stage")

        current = order.status
        with atomic_transaction(session):
            moved = compare_and_swap(
                session, Order, order.id, {"status": current},
                {"status": OrderStatus.CANCELLED.value, "cancelled_at": get_naive_utc_now()},
            )
            if not moved:
                raise InvalidStateError("Order cannot be cancelled at this stage")
            session.execute(
                update(VendorOrder)
                .where(VendorOrder.order_id == order.id)
                .values(status=OrderStatus.CANCELLED.value)
                .execution_options(synchronize_session="fetch")
            )
            for item in order.items:
                session.execute(
                    update(Product)
                    .where(Product.id == item.product_id, Product.track_quantity.is_(True))
                    .values(quantity=Product.quantity + item.quantity)
                    .execution_options(synchronize_session="fetch")
                )

        session.refresh(order)
        if order.escrow_status == EscrowState.LOCKED.value:
            logger.warning(
                f"⚠️ CANCELLED_WITH_LOCKED_ESCROW: order {order.id} escrow {order.escrow_address} "
                f"stays Locked; refund requires arbitration"
            )
        logger.info(f"🚫 ORDER_CANCELLED: order {order.id} by customer {user.id}")
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get_order(session: Session, user: User, order_id: int) -> Order:
        order = session.get(Order, order_id)
        if order is None or not (user.is_admin or order.customer_id == user.id or order.vendor_id == user.id):
            raise NotFoundError("Order not found")
        return order

    @staticmethod
    def list_customer_orders(session: Session, user: User, page: int = 1, limit: int = 10,
                             status: Optional[str] = None) -> Dict[str, Any]:
        stmt = select(Order).where(Order.customer_id == user.id)
        if status:
            stmt = stmt.where(Order.status == status)
        return _paginate(session, stmt, page, limit)

    @staticmethod
    def list_vendor_orders(session: Session, user: User, page: int = 1, limit: int = 10,
                           status: Optional[str] = None) -> Dict[str, Any]:
        stmt = select(Order).join(VendorOrder, VendorOrder.order_id == Order.id).where(VendorOrder.vendor_id == user.id)
        if status:
            stmt = stmt.where(VendorOrder.status == status)
        return _paginate(session, stmt, page, limit)

    @staticmethod
    def list_all_orders(session: Session, page: int = 1, limit: int = 20, status: Optional[str] = None,
                        payment_status: Optional[str] = None) -> Dict[str, Any]:
        stmt = select(Order)
        if status:
            stmt = stmt.where(Order.status == status)
        if payment_status:
            stmt = stmt.where(Order.payment_status == payment_status)
        return _paginate(session, stmt, page, limit)


order_service = OrderService()


def get_order_service() -> OrderService:
    return order_service

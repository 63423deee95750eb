"""Order status transition rules for vendor-driven fulfilment"""

import logging
from typing import Dict, Optional, Set, Tuple
from models import OrderStatus
from utils.exception_handler import StateTransitionError

logger = logging.getLogger(__name__)


class OrderStateValidator:

    # Fulfilment edges a vendor (or admin) may request
    VENDOR_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED},
        OrderStatus.CONFIRMED: {OrderStatus.SHIPPED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
        OrderStatus.DELIVERED: set(),
        OrderStatus.CANCELLED: set(),
        OrderStatus.REFUNDED: set(),
    }

    CANCELLABLE_STATES: Set[OrderStatus] = {
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: OrderStatus,
        to_status: OrderStatus,
        order_id: Optional[int] = None
    ) -> Tuple[bool, str]:
        order_ref = f"Order {order_id}" if order_id else "Order"
        allowed = cls.VENDOR_TRANSITIONS.get(from_status, set())
        if to_status in allowed:
            logger.info(f"✅ VALID_TRANSITION: {order_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"
        logger.warning(f"❌ INVALID_TRANSITION: {order_ref} {from_status.value} -> {to_status.value}")
        return False, f"Cannot change order status from {from_status.value} to {to_status.value}"

    @classmethod
    def require_transition(cls, from_status: str, to_status: OrderStatus, order_id: Optional[int] = None) -> None:
        is_valid, reason = cls.validate_transition(OrderStatus(from_status), to_status, order_id)
        if not is_valid:
            raise StateTransitionError(reason)

    @classmethod
    def can_cancel(cls, status: str) -> bool:
        return OrderStatus(status) in cls.CANCELLABLE_STATES

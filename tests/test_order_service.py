"""
Order engine tests: vendor split, pricing, coupons, reservation, fulfilment and cancellation
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import Cart, Coupon, CouponType, Order, OrderStatus, UserRole
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    ConflictError, InvalidInputError, NotFoundError, StateTransitionError, InvalidStateError,
)
from conftest import SHIPPING_ADDRESS, make_product, make_user


def _coupon(session, code="SAVE10", type_=CouponType.PERCENTAGE, value="10", minimum="0",
            maximum=None, usage_limit=None, used=0, active=True, expired=False):
    now = get_naive_utc_now()
    coupon = Coupon(
        code=code,
        type=type_.value,
        value=Decimal(value),
        minimum_amount=Decimal(minimum),
        maximum_discount=Decimal(maximum) if maximum is not None else None,
        usage_limit=usage_limit,
        used_count=used,
        valid_from=now - timedelta(days=2),
        valid_until=now - timedelta(days=1) if expired else now + timedelta(days=30),
        is_active=active,
    )
    session.add(coupon)
    session.commit()
    return coupon


class TestVendorSplit:
    """One order per vendor with its own totals"""

    def test_multi_vendor_cart_creates_one_order_per_vendor(self, db_session, place_order, customer, vendor):
        other_vendor = make_user(db_session, UserRole.VENDOR, "Chitra Seller")
        x = make_product(db_session, vendor, price="50.00", quantity=5, name="X")
        y = make_product(db_session, other_vendor, price="30.00", quantity=5, name="Y")

        orders = place_order(customer, [(x, 2), (y, 1)])

        assert len(orders) == 2
        by_vendor = {o.vendor_id: o for o in orders}
        assert by_vendor[vendor.id].subtotal == Decimal("100.00")
        assert by_vendor[vendor.id].tax == Decimal("10.00")
        assert by_vendor[vendor.id].total == Decimal("110.00")
        assert by_vendor[other_vendor.id].subtotal == Decimal("30.00")
        assert by_vendor[other_vendor.id].tax == Decimal("3.00")
        assert by_vendor[other_vendor.id].total == Decimal("33.00")
        assert orders[0].order_number != orders[1].order_number

    def test_subtotals_sum_to_cart_value(self, db_session, place_order, customer, vendor):
        other_vendor = make_user(db_session, UserRole.VENDOR, "Chitra Seller")
        lines = [
            (make_product(db_session, vendor, price="19.99", quantity=9, name="A"), 3),
            (make_product(db_session, vendor, price="5.25", quantity=9, name="B"), 2),
            (make_product(db_session, other_vendor, price="42.10", quantity=9, name="C"), 1),
        ]

        orders = place_order(customer, lines)

        expected = sum(Decimal(str(p.price)) * q for p, q in lines)
        assert sum(o.subtotal for o in orders) == expected
        assert len({o.vendor_id for o in orders}) == len(orders)
        for order in orders:
            assert {item.vendor_id for item in order.items} == {order.vendor_id}

    def test_vendor_order_records_commission(self, db_session, place_order, customer, product):
        order = place_order(customer, [(product, 2)])[0]

        assert order.vendor_order.subtotal == Decimal("200.00")
        assert order.vendor_order.commission == Decimal("20.00")
        assert order.vendor_order.vendor_amount == Decimal("180.00")

    def test_cart_cleared_after_checkout(self, db_session, place_order, customer, product):
        db_session.add(Cart(user_id=customer.id, items=[{"product": product.id, "quantity": 1}]))
        db_session.commit()

        place_order(customer, [(product, 1)])

        assert db_session.query(Cart).filter_by(user_id=customer.id).count() == 0


class TestCheckoutValidation:
    """Rejected checkouts persist nothing"""

    def test_insufficient_quantity(self, db_session, place_order, customer, product):
        with pytest.raises(InvalidInputError):
            place_order(customer, [(product, 11)])

        db_session.refresh(product)
        assert product.quantity == 10
        assert db_session.query(Order).count() == 0

    def test_inactive_product(self, db_session, place_order, customer, product):
        product.is_active = False
        db_session.commit()

        with pytest.raises(InvalidInputError):
            place_order(customer, [(product, 1)])

    def test_unapproved_vendor(self, db_session, place_order, customer):
        pending_vendor = make_user(db_session, UserRole.VENDOR, "New Seller", is_approved=False)
        item = make_product(db_session, pending_vendor)

        with pytest.raises(InvalidInputError):
            place_order(customer, [(item, 1)])

    def test_invalid_payment_method(self, db_session, order_service, customer, product):
        with pytest.raises(InvalidInputError):
            order_service.create_order(
                db_session, customer, [{"product": product.id, "quantity": 1}], SHIPPING_ADDRESS, None, "barter"
            )

    def test_untracked_product_ignores_quantity(self, db_session, place_order, customer, vendor):
        digital = make_product(db_session, vendor, quantity=0, track_quantity=False)

        orders = place_order(customer, [(digital, 3)])

        assert len(orders) == 1
        db_session.refresh(digital)
        assert digital.quantity == 0


class TestCoupons:
    """Coupon validation and per-vendor discount"""

    def test_minimum_order_rejection_persists_nothing(self, db_session, place_order, customer, vendor):
        item = make_product(db_session, vendor, price="40.00", quantity=5)
        _coupon(db_session, code="MIN50", minimum="50")

        with pytest.raises(InvalidInputError) as exc:
            place_order(customer, [(item, 1)], coupon_code="MIN50")

        assert exc.value.message == "Coupon requires minimum order of 50"
        db_session.refresh(item)
        assert item.quantity == 5
        assert db_session.query(Order).count() == 0

    def test_percentage_coupon_capped_by_maximum(self, db_session, place_order, customer, product):
        _coupon(db_session, code="BIG", value="50", maximum="15.00")

        order = place_order(customer, [(product, 1)], coupon_code="big")[0]

        assert order.discount == Decimal("15.00")
        assert order.total == Decimal("95.00")
        assert order.coupon_code == "BIG"

    def test_percentage_discount_rounded_to_cents(self, db_session, place_order, customer, vendor):
        item = make_product(db_session, vendor, price="33.33", quantity=5)
        _coupon(db_session, code="PCT", value="12.5")

        order = place_order(customer, [(item, 1)], coupon_code="PCT")[0]

        assert order.discount == Decimal("4.17")
        assert order.discount == order.discount.quantize(Decimal("0.01"))

    def test_fixed_coupon_never_exceeds_subtotal(self, db_session, place_order, customer, vendor):
        item = make_product(db_session, vendor, price="20.00", quantity=5)
        _coupon(db_session, code="FLAT", type_=CouponType.FIXED, value="500")

        order = place_order(customer, [(item, 1)], coupon_code="FLAT")[0]

        assert order.discount == Decimal("20.00")
        assert order.total >= 0

    def test_fixed_coupon_shared_across_vendors(self, db_session, place_order, customer, vendor):
        other_vendor = make_user(db_session, UserRole.VENDOR, "Chitra Seller")
        a = make_product(db_session, vendor, price="75.00", quantity=5)
        b = make_product(db_session, other_vendor, price="25.00", quantity=5)
        _coupon(db_session, code="TEN", type_=CouponType.FIXED, value="10")

        orders = place_order(customer, [(a, 1), (b, 1)], coupon_code="TEN")

        discounts = {o.vendor_id: o.discount for o in orders}
        assert discounts[vendor.id] == Decimal("7.50")
        assert discounts[other_vendor.id] == Decimal("2.50")

    def test_usage_counted_once_per_checkout(self, db_session, place_order, customer, vendor):
        other_vendor = make_user(db_session, UserRole.VENDOR, "Chitra Seller")
        coupon = _coupon(db_session, code="ONCE", usage_limit=5)

        place_order(customer, [
            (make_product(db_session, vendor), 1),
            (make_product(db_session, other_vendor), 1),
        ], coupon_code="ONCE")

        db_session.refresh(coupon)
        assert coupon.used_count == 1

    def test_exhausted_coupon_conflicts(self, db_session, place_order, customer, product):
        _coupon(db_session, code="GONE", usage_limit=1, used=1)

        with pytest.raises(ConflictError):
            place_order(customer, [(product, 1)], coupon_code="GONE")

    def test_expired_coupon(self, db_session, place_order, customer, product):
        _coupon(db_session, code="OLD", expired=True)

        with pytest.raises(InvalidInputError):
            place_order(customer, [(product, 1)], coupon_code="OLD")


class TestFulfilment:
    """Vendor status updates"""

    @pytest.mark.asyncio
    async def test_vendor_moves_order_forward_with_tracking(self, db_session, order_service, place_order,
                                                            customer, vendor, product):
        order = place_order(customer, [(product, 1)])[0]
        await order_service.update_order_status(db_session, vendor, order.id, OrderStatus.CONFIRMED.value)

        shipped = await order_service.update_order_status(
            db_session, vendor, order.id, OrderStatus.SHIPPED.value, {"number": "TRK123", "carrier": "BlueDart"}
        )

        assert shipped.status == OrderStatus.SHIPPED.value
        assert shipped.vendor_order.tracking_number == "TRK123"
        assert shipped.vendor_order.shipped_at is not None

    @pytest.mark.asyncio
    async def test_skipping_a_step_is_rejected(self, db_session, order_service, place_order, customer, vendor,
                                               product):
        order = place_order(customer, [(product, 1)])[0]

        with pytest.raises(StateTransitionError):
            await order_service.update_order_status(db_session, vendor, order.id, OrderStatus.SHIPPED.value)

        db_session.refresh(order)
        assert order.status == OrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_other_vendor_cannot_update(self, db_session, order_service, place_order, customer, product):
        other_vendor = make_user(db_session, UserRole.VENDOR, "Chitra Seller")
        order = place_order(customer, [(product, 1)])[0]

        with pytest.raises(NotFoundError):
            await order_service.update_order_status(db_session, other_vendor, order.id, OrderStatus.CONFIRMED.value)


class TestCancellation:
    """Cancelling restores reserved quantity"""

    def test_cancel_restores_quantity(self, db_session, order_service, place_order, customer, product):
        order = place_order(customer, [(product, 3)])[0]
        db_session.refresh(product)
        assert product.quantity == 7

        cancelled = order_service.cancel_order(db_session, customer, order.id)

        db_session.refresh(product)
        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.vendor_order.status == OrderStatus.CANCELLED.value
        assert product.quantity == 10

    def test_quantity_conserved_across_many_orders(self, db_session, order_service, place_order, customer, vendor):
        products = [make_product(db_session, vendor, quantity=q, name=f"P{q}") for q in (4, 9, 15)]
        before = {p.id: p.quantity for p in products}

        for qty in (1, 2, 3):
            for order in place_order(customer, [(p, qty) for p in products]):
                order_service.cancel_order(db_session, customer, order.id)

        for p in products:
            db_session.refresh(p)
            assert p.quantity == before[p.id]

    @pytest.mark.asyncio
    async def test_shipped_order_cannot_be_cancelled(self, db_session, order_service, place_order, customer,
                                                     vendor, product):
        order = place_order(customer, [(product, 1)])[0]
        await order_service.update_order_status(db_session, vendor, order.id, OrderStatus.CONFIRMED.value)
        await order_service.update_order_status(db_session, vendor, order.id, OrderStatus.SHIPPED.value)

        with pytest.raises(InvalidStateError):
            order_service.cancel_order(db_session, customer, order.id)

    def test_only_customer_can_cancel(self, db_session, order_service, place_order, customer, vendor, product):
        order = place_order(customer, [(product, 1)])[0]

        with pytest.raises(NotFoundError):
            order_service.cancel_order(db_session, vendor, order.id)


class TestOrderReads:

    def test_listings_are_scoped(self, db_session, order_service, place_order, customer, vendor, product):
        other = make_user(db_session, UserRole.CUSTOMER, "Other Buyer")
        place_order(customer, [(product, 1)])
        place_order(other, [(product, 1)])

        assert order_service.list_customer_orders(db_session, customer)["total"] == 1
        assert order_service.list_vendor_orders(db_session, vendor)["total"] == 2
        assert order_service.list_all_orders(db_session)["total"] == 2

    def test_get_order_hidden_from_strangers(self, db_session, order_service, place_order, customer, product):
        order = place_order(customer, [(product, 1)])[0]
        stranger = make_user(db_session, UserRole.CUSTOMER, "Stranger")

        with pytest.raises(NotFoundError):
            order_service.get_order(db_session, stranger, order.id)

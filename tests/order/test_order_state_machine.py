"""Order status transitions and pricing."""

import pytest

from services.order.app.aggregate import (
    OrderStatus,
    PaymentStatus,
    can_transition,
    check_payment_transition,
    check_transition,
    is_before,
    price_items,
)
from services.shared.errors import InvalidTransitionError, ValidationError


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PLACED, OrderStatus.CONFIRMED),
            (OrderStatus.CONFIRMED, OrderStatus.PREPARING),
            (OrderStatus.PREPARING, OrderStatus.READY),
            (OrderStatus.READY, OrderStatus.PICKED_UP),
            (OrderStatus.PICKED_UP, OrderStatus.DELIVERED),
            (OrderStatus.CONFIRMED, OrderStatus.READY),
            (OrderStatus.READY, OrderStatus.DELIVERED),
        ],
    )
    def test_forward_moves_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.CONFIRMED, OrderStatus.PLACED),
            (OrderStatus.DELIVERED, OrderStatus.READY),
            (OrderStatus.PICKED_UP, OrderStatus.CONFIRMED),
        ],
    )
    def test_backward_moves_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)

    @pytest.mark.parametrize(
        "current", [OrderStatus.PLACED, OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY]
    )
    def test_cancel_allowed_before_pickup(self, current):
        assert can_transition(current, OrderStatus.CANCELLED)

    @pytest.mark.parametrize("current", [OrderStatus.PICKED_UP, OrderStatus.DELIVERED])
    def test_cancel_rejected_after_pickup(self, current):
        assert not can_transition(current, OrderStatus.CANCELLED)

    def test_cancelled_is_terminal(self):
        for target in OrderStatus:
            assert not can_transition(OrderStatus.CANCELLED, target)

    def test_is_before(self):
        assert is_before(OrderStatus.CONFIRMED, OrderStatus.READY)
        assert not is_before(OrderStatus.READY, OrderStatus.READY)
        assert not is_before(OrderStatus.CANCELLED, OrderStatus.READY)


class TestPaymentTransitions:
    def test_pending_to_outcomes(self):
        check_payment_transition(PaymentStatus.PENDING, PaymentStatus.COMPLETED)
        check_payment_transition(PaymentStatus.PENDING, PaymentStatus.FAILED)

    def test_refund_only_after_completed(self):
        check_payment_transition(PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
        with pytest.raises(InvalidTransitionError):
            check_payment_transition(PaymentStatus.FAILED, PaymentStatus.REFUNDED)
        with pytest.raises(InvalidTransitionError):
            check_payment_transition(PaymentStatus.PENDING, PaymentStatus.REFUNDED)


class TestPricing:
    def _items(self):
        return [
            {"menu_item_id": 1, "item_name": "Dumplings", "quantity": 2, "price": 10.0},
            {"menu_item_id": 2, "item_name": "Tea", "quantity": 1, "price": 5.0},
        ]

    def test_final_amount(self):
        priced = price_items(self._items(), 50.0, 0.0)
        assert [item["subtotal"] for item in priced["items"]] == [20.0, 5.0]
        assert priced["total_amount"] == 25.0
        assert priced["final_amount"] == 75.0

    def test_defaults_apply_when_fee_and_discount_missing(self):
        priced = price_items(self._items(), None, None)
        assert priced["delivery_fee"] == 50.0
        assert priced["discount"] == 0.0
        assert priced["final_amount"] == 75.0

    def test_discount_is_subtracted(self):
        assert price_items(self._items(), 10.0, 5.0)["final_amount"] == 30.0

    def test_empty_order_rejected(self):
        with pytest.raises(ValidationError):
            price_items([], None, None)

    def test_zero_quantity_rejected(self):
        items = self._items()
        items[0]["quantity"] = 0
        with pytest.raises(ValidationError):
            price_items(items, None, None)

    def test_negative_fee_rejected(self):
        with pytest.raises(ValidationError):
            price_items(self._items(), -1.0, None)

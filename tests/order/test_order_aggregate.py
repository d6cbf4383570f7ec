"""Unit tests for the order aggregate and its builder."""

from decimal import Decimal
from uuid import uuid4

import pytest

from services.order.app.aggregate import (
    InventoryReservation,
    Order,
    OrderLineItem,
    OrderRequest,
    OrderStatus,
    build_order,
    compute_total,
)


def _request(*items: OrderLineItem, order_id=None) -> OrderRequest:
    return OrderRequest(customer_id="cust-1", line_items=items, order_id=order_id)


def _reservations(request: OrderRequest) -> list[InventoryReservation]:
    return [
        InventoryReservation(item.product_id, item.quantity, f"tok-{i}")
        for i, item in enumerate(request.line_items)
    ]


class TestComputeTotal:
    def test_sums_quantity_times_price(self) -> None:
        items = [
            OrderLineItem(uuid4(), 2, Decimal("10.00")),
            OrderLineItem(uuid4(), 1, Decimal("5.00")),
        ]
        assert compute_total(items) == Decimal("25.00")

    def test_has_no_float_rounding_drift(self) -> None:
        items = [OrderLineItem(uuid4(), 1, Decimal("0.1")) for _ in range(3)]
        totals = {compute_total(items) for _ in range(100)}
        assert totals == {Decimal("0.3")}

    def test_large_quantities_stay_exact(self) -> None:
        items = [OrderLineItem(uuid4(), 1_000_000, Decimal("19.9999"))]
        assert compute_total(items) == Decimal("19999900.0000")


class TestBuildOrder:
    def test_builds_pending_order(self) -> None:
        request = _request(OrderLineItem(uuid4(), 3, Decimal("1.50")))
        order = build_order(request, _reservations(request))
        assert order.status is OrderStatus.PENDING
        assert order.total == Decimal("4.50")
        assert order.customer_id == "cust-1"
        assert order.line_items == tuple(request.line_items)

    def test_uses_pre_assigned_identity(self) -> None:
        order_id = uuid4()
        request = _request(OrderLineItem(uuid4(), 1, Decimal("1")), order_id=order_id)
        assert build_order(request, _reservations(request)).id == order_id

    def test_generates_unique_identities(self) -> None:
        request = _request(OrderLineItem(uuid4(), 1, Decimal("1")))
        ids = {build_order(request, _reservations(request)).id for _ in range(50)}
        assert len(ids) == 50

    def test_requires_a_reservation_per_line(self) -> None:
        request = _request(
            OrderLineItem(uuid4(), 1, Decimal("1")), OrderLineItem(uuid4(), 1, Decimal("1"))
        )
        with pytest.raises(ValueError):
            build_order(request, _reservations(request)[:1])


class TestOrderStatus:
    def _order(self) -> Order:
        return Order(uuid4(), "c", [OrderLineItem(uuid4(), 1, Decimal("1"))], Decimal("1"))

    def test_pending_to_confirmed(self) -> None:
        order = self._order()
        order.mark_confirmed()
        assert order.status is OrderStatus.CONFIRMED

    def test_confirmed_order_cannot_fail(self) -> None:
        order = self._order()
        order.mark_confirmed()
        with pytest.raises(ValueError):
            order.mark_failed()

    def test_failed_order_cannot_be_confirmed(self) -> None:
        order = self._order()
        order.mark_failed()
        with pytest.raises(ValueError):
            order.mark_confirmed()

    def test_to_dict_renders_decimals_as_strings(self) -> None:
        data = self._order().to_dict()
        assert data["total"] == "1"
        assert data["status"] == "PENDING"
        assert data["line_items"][0]["unit_price"] == "1"

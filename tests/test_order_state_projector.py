# 📄 tests/test_order_state_projector.py

from __future__ import annotations

import pytest

from inventory_allocation.services.orders.order_state_projector import OrderStateProjector, derive_status
from tests.helpers import status_of


@pytest.mark.parametrize(
    "lines, expected",
    [
        ([], "pending"),
        ([(10, 0, 0), (5, 0, 0)], "pending"),
        ([(10, 10, 0), (5, 5, 0)], "confirmed"),
        ([(10, 4, 6), (5, 0, 5)], "confirmed"),
        ([(10, 10, 0), (5, 0, 0)], "partial"),
        ([(10, 3, 0)], "partial"),
        ([(10, 0, 2)], "partial"),
        ([(10, 0, 10), (5, 0, 5)], "shipped"),
    ],
)
def test_derive_status(lines, expected):
    assert derive_status(lines) == expected


def test_project_writes_only_changed_statuses(session, make_order):
    full = make_order([{"product_id": 1, "qty": 4, "allocated_qty": 4}])
    partial = make_order([{"product_id": 1, "qty": 4, "allocated_qty": 1}, {"product_id": 2, "qty": 2}])
    none = make_order([{"product_id": 1, "qty": 4}])

    projector = OrderStateProjector(session, actor="tester")
    result = projector.project([full.id, partial.id, none.id])
    session.commit()

    assert result == {full.id: "confirmed", partial.id: "partial", none.id: "pending"}
    assert status_of(session, full.id) == "confirmed"
    assert status_of(session, partial.id) == "partial"

    # 여러 번 호출해도 같은 결과
    assert projector.project([full.id, partial.id, none.id]) == result


def test_project_leaves_externally_closed_orders(session, make_order):
    cancelled = make_order([{"product_id": 1, "qty": 4, "allocated_qty": 4}], status="cancelled")
    delivered = make_order([{"product_id": 1, "qty": 4}], status="delivered")

    result = OrderStateProjector(session).project([cancelled.id, delivered.id])

    assert result == {cancelled.id: "cancelled", delivered.id: "delivered"}


def test_project_empty_input(session):
    assert OrderStateProjector(session).project([]) == {}

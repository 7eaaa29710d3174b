# 📄 tests/test_allocation_service.py
# 서비스 진입점(트랜잭션 경계 포함) 시나리오 테스트

from __future__ import annotations

import pytest
from sqlalchemy import update

from inventory_allocation.models import StockVariant
from inventory_allocation.services.allocation.allocation_service import AllocationService
from inventory_allocation.services.stock.stock_ledger import StockLedger, VariantKey
from inventory_allocation.system.error_codes import (
    DomainError,
    InsufficientPhysicalStock,
    LedgerInconsistency,
)
from tests.helpers import allocated_total, lines_of, movements_of, status_of, variant_of

pytestmark = pytest.mark.anyio


@pytest.fixture
def service(session):
    return AllocationService(session=session, user={"username": "tester"})


# ─────────────────────────────────────────────
# 주문 접수
# ─────────────────────────────────────────────
async def test_order_created_allocates_waiting_demand(service, session, make_stock, make_order):
    make_stock(1, 100)
    first = make_order([{"product_id": 1, "qty": 40}])
    second = make_order([{"product_id": 1, "qty": 50}])
    third = make_order([{"product_id": 1, "qty": 30}])

    result = await service.on_order_created(order_id=third.id)

    assert result["policy"] == "fifo"
    assert result["status"] == "partial"
    assert result["statuses"] == {first.id: "confirmed", second.id: "confirmed", third.id: "partial"}
    assert [lines_of(session, o.id)[0].allocated_qty for o in (first, second, third)] == [40, 50, 10]
    assert variant_of(session, 1).allocated_stock == 100
    assert variant_of(session, 1).updated_by == "tester"


async def test_order_created_without_stock_stays_pending(service, session, make_order):
    order = make_order([{"product_id": 7, "qty": 5}])

    result = await service.on_order_created(order_id=order.id)

    assert result["status"] == "pending"
    assert result["runs"][0]["total_granted"] == 0
    assert status_of(session, order.id) == "pending"


async def test_order_created_skips_blocked_variant_only(service, session, ledger, make_stock, make_order):
    make_stock(1, 10)
    make_stock(2, 10)
    ledger.block(VariantKey.of(1), "drift")
    session.commit()
    order = make_order([{"product_id": 1, "qty": 5}, {"product_id": 2, "qty": 5}])

    result = await service.on_order_created(order_id=order.id)

    assert [(line.product_id, line.allocated_qty) for line in lines_of(session, order.id)] == [(1, 0), (2, 5)]
    assert result["blocked"] == [{**VariantKey.of(1).as_dict(), "reason": "drift"}]
    assert result["status"] == "partial"
    assert variant_of(session, 2).allocated_stock == 5
    assert variant_of(session, 1).allocated_stock == 0


async def test_order_created_rejects_closed_or_missing_order(service, make_order):
    closed = make_order([{"product_id": 1, "qty": 5}], status="delivered")

    with pytest.raises(DomainError) as ei:
        await service.on_order_created(order_id=closed.id)
    assert ei.value.code == "ORDER-STATE-451"

    with pytest.raises(DomainError) as ei:
        await service.on_order_created(order_id=9999)
    assert ei.value.code == "ORDER-NOTFOUND-101"


# ─────────────────────────────────────────────
# 실재고 변경
# ─────────────────────────────────────────────
async def test_inbound_flows_to_pending_order(service, session, make_order):
    order = make_order([{"product_id": 1, "qty": 30}])
    await service.on_order_created(order_id=order.id)

    result = await service.on_physical_stock_changed(product_id=1, delta=20, reason="입고")

    assert result["movement"]["movement_type"] == "inbound"
    assert result["movement"]["quantity_delta"] == 20
    assert result["allocation"]["total_granted"] == 20
    assert result["statuses"] == {order.id: "partial"}
    assert result["variant"]["available_stock"] == 0
    assert lines_of(session, order.id)[0].allocated_qty == 20


async def test_oversized_outbound_is_rejected_without_side_effects(service, session, make_stock):
    make_stock(1, 100)
    before = len(movements_of(session, 1))

    with pytest.raises(InsufficientPhysicalStock):
        await service.on_physical_stock_changed(product_id=1, delta=-150, reason="출고")

    assert variant_of(session, 1).physical_stock == 100
    assert len(movements_of(session, 1)) == before


async def test_outbound_does_not_trigger_allocation(service, session, make_stock, make_order):
    make_stock(1, 10)
    make_order([{"product_id": 1, "qty": 30}])

    result = await service.on_physical_stock_changed(
        product_id=1, delta=-3, reason="샘플", movement_type="sample_out"
    )

    assert result["allocation"] is None
    assert result["movement"]["movement_type"] == "sample_out"
    assert variant_of(session, 1).physical_stock == 7


async def test_ledger_inconsistency_blocks_variant_but_keeps_inbound(service, session, make_stock, make_order):
    make_stock(1, 10)
    make_order([{"product_id": 1, "qty": 5}])
    session.execute(update(StockVariant).values(allocated_stock=30))
    session.commit()

    result = await service.on_physical_stock_changed(product_id=1, delta=5, reason="입고")

    assert result["allocation"] is None
    assert [b["product_id"] for b in result["blocked"]] == [1]
    variant = variant_of(session, 1)
    assert variant.is_blocked is True
    assert variant.physical_stock == 15

    # 차단된 옵션은 재계산 전까지 할당하지 않는다
    with pytest.raises(LedgerInconsistency):
        await service.allocate_variant(product_id=1)


async def test_inbound_on_blocked_variant_is_recorded(service, session, ledger, make_stock, make_order):
    make_stock(1, 10)
    order = make_order([{"product_id": 1, "qty": 30}])
    ledger.block(VariantKey.of(1), "drift")
    session.commit()
    before = len(movements_of(session, 1))

    result = await service.on_physical_stock_changed(product_id=1, delta=5, reason="입고")

    assert result["movement"]["quantity_delta"] == 5
    assert result["allocation"] is None
    assert result["blocked"] == [{**VariantKey.of(1).as_dict(), "reason": "drift"}]
    assert variant_of(session, 1).physical_stock == 15
    assert variant_of(session, 1).blocked_reason == "drift"
    assert len(movements_of(session, 1)) == before + 1
    assert lines_of(session, order.id)[0].allocated_qty == 0



# ─────────────────────────────────────────────
# 출고 소진
# ─────────────────────────────────────────────
async def test_ship_allocated_consumes_reservation(service, session, make_stock, make_order):
    make_stock(1, 10)
    order = make_order([{"product_id": 1, "qty": 4}])
    await service.on_order_created(order_id=order.id)
    item = lines_of(session, order.id)[0]

    partial = await service.ship_allocated(order_item_id=item.id, quantity=1)
    assert (partial["allocated_qty"], partial["shipped_qty"], partial["status"]) == (3, 1, "confirmed")

    result = await service.ship_allocated(order_item_id=item.id, quantity=3)

    assert (result["allocated_qty"], result["shipped_qty"], result["status"]) == (0, 4, "shipped")
    assert [(m["movement_type"], m["quantity_delta"]) for m in result["movements"]] == [
        ("order_allocation", 3),
        ("order_shipment", -3),
    ]
    variant = variant_of(session, 1)
    assert (variant.physical_stock, variant.allocated_stock) == (6, 0)
    assert StockLedger(session).verify(VariantKey.of(1)).ok


async def test_ship_more_than_allocated_is_rejected(service, session, make_stock, make_order):
    make_stock(1, 10)
    order = make_order([{"product_id": 1, "qty": 4}])
    await service.on_order_created(order_id=order.id)
    item = lines_of(session, order.id)[0]

    with pytest.raises(DomainError) as ei:
        await service.ship_allocated(order_item_id=item.id, quantity=5)
    assert ei.value.code == "ORDER-STATE-451"

    with pytest.raises(DomainError) as ei:
        await service.ship_allocated(order_item_id=item.id, quantity=0)
    assert ei.value.code == "ORDER-VALID-001"

    with pytest.raises(DomainError) as ei:
        await service.ship_allocated(order_item_id=9999, quantity=1)
    assert ei.value.code == "ORDER-NOTFOUND-101"

    assert lines_of(session, order.id)[0].allocated_qty == 4
    assert variant_of(session, 1).physical_stock == 10


# ─────────────────────────────────────────────
# 주문 취소
# ─────────────────────────────────────────────
async def test_cancel_releases_and_reallocates(service, session, make_stock, make_order):
    make_stock(1, 10)
    first = make_order([{"product_id": 1, "qty": 8}])
    waiting = make_order([{"product_id": 1, "qty": 5}])
    await service.on_order_created(order_id=first.id)
    assert lines_of(session, waiting.id)[0].allocated_qty == 2

    result = await service.on_order_cancelled(order_id=first.id)

    assert result["released_qty"] == 8
    assert result["statuses"] == {waiting.id: "confirmed"}
    assert status_of(session, first.id) == "cancelled"
    assert lines_of(session, first.id)[0].allocated_qty == 0
    assert lines_of(session, waiting.id)[0].allocated_qty == 5
    assert variant_of(session, 1).allocated_stock == allocated_total(session, 1) == 5

    again = await service.on_order_cancelled(order_id=first.id)
    assert again["released_qty"] == 0


async def test_cancel_commits_release_when_variant_is_blocked(service, session, ledger, make_stock, make_order):
    make_stock(1, 10)
    first = make_order([{"product_id": 1, "qty": 8}])
    waiting = make_order([{"product_id": 1, "qty": 5}])
    await service.on_order_created(order_id=first.id)
    ledger.block(VariantKey.of(1), "drift")
    session.commit()

    result = await service.on_order_cancelled(order_id=first.id)

    assert result["released_qty"] == 8
    assert result["runs"] == []
    assert [b["product_id"] for b in result["blocked"]] == [1]
    assert status_of(session, first.id) == "cancelled"
    assert variant_of(session, 1).allocated_stock == 2
    assert lines_of(session, waiting.id)[0].allocated_qty == 2


async def test_cancel_of_delivered_order_is_rejected(service, make_order):
    delivered = make_order([{"product_id": 1, "qty": 5}], status="delivered")

    with pytest.raises(DomainError) as ei:
        await service.on_order_cancelled(order_id=delivered.id)
    assert ei.value.code == "ORDER-STATE-451"


# ─────────────────────────────────────────────
# 재계산 / 점검
# ─────────────────────────────────────────────
async def test_reconcile_returns_summary(service, session, make_stock, make_order):
    make_stock(1, 50)
    order = make_order([{"product_id": 1, "qty": 30, "allocated_qty": 10}])

    result = await service.reconcile(scope="product", product_id=1)

    assert result["scope"] == {"kind": "product", "product_id": 1, "business_day": None, "policy": "fifo"}
    assert result["orders_processed"] == 1
    assert result["fully_allocated"] == 1
    assert result["granted_qty"] == 30
    assert lines_of(session, order.id)[0].allocated_qty == 30


async def test_reconcile_rejects_bad_input(service):
    with pytest.raises(DomainError) as ei:
        await service.reconcile(scope="day", business_day="2025/03/10")
    assert ei.value.code == "ALLOC-VALID-001"

    with pytest.raises(DomainError) as ei:
        await service.reconcile(scope="warehouse")
    assert ei.value.code == "ALLOC-VALID-001"

    with pytest.raises(DomainError) as ei:
        await service.reconcile(scope="all", policy="random")
    assert ei.value.code == "ALLOC-VALID-001"


async def test_audit_reports_drifted_variants(service, session, make_stock):
    make_stock(1, 10)
    make_stock(2, 5)
    session.execute(update(StockVariant).where(StockVariant.product_id == 1).values(allocated_stock=3))
    session.commit()

    report = await service.audit()
    assert report["checked"] == 2
    assert report["issue_count"] == 1

    issues_only = await service.audit(only_issues=True)
    assert len(issues_only["items"]) == 1
    assert issues_only["items"][0]["product_id"] == 1
    assert set(issues_only["items"][0]["issues"]) == {"allocated_replay_drift", "allocated_lines_drift"}

    clean = await service.audit(product_id=2)
    assert clean["issue_count"] == 0


async def test_get_variant(service, make_stock):
    make_stock(1, 10, color="black", size="M")

    found = await service.get_variant(product_id=1, color=" black ", size="M")
    assert (found["physical_stock"], found["available_stock"]) == (10, 10)

    with pytest.raises(DomainError) as ei:
        await service.get_variant(product_id=1)
    assert ei.value.code == "STOCK-NOTFOUND-101"

# 📄 tests/test_allocation_policy.py
# 순수 정책 함수: DB 없이 검사

from __future__ import annotations

import random
from datetime import timedelta
from decimal import Decimal

import pytest

from inventory_allocation.services.allocation.allocation_policy import (
    DEFAULT_PRIORITY_LEVEL,
    AllocationPolicy,
    Demand,
    customer_priority,
    plan_allocation,
    sort_demands,
    user_type_rank,
)
from inventory_allocation.system.error_codes import DomainError
from tests.helpers import BASE_TIME


def _demand(item_id, order_id, minutes, needed, *, priority=DEFAULT_PRIORITY_LEVEL, rank=4, amount="0"):
    return Demand(
        order_item_id=item_id,
        order_id=order_id,
        order_created_at=BASE_TIME + timedelta(minutes=minutes),
        needed_qty=needed,
        customer_priority=priority,
        user_type_rank=rank,
        order_total_amount=Decimal(amount),
    )


def _as_pairs(plan):
    return [(g.order_item_id, g.granted_qty) for g in plan]


def test_fifo_grants_oldest_first_until_exhausted():
    demands = [_demand(1, 1, 0, 40), _demand(2, 2, 1, 50), _demand(3, 3, 2, 30)]

    plan = plan_allocation(demands, 100, AllocationPolicy.FIFO)

    assert _as_pairs(plan) == [(1, 40), (2, 50), (3, 10)]


def test_fifo_ignores_input_order_and_breaks_ties_by_item_id():
    demands = [_demand(7, 2, 5, 10), _demand(3, 1, 5, 10), _demand(5, 3, 0, 10)]

    plan = plan_allocation(demands, 25, AllocationPolicy.FIFO)

    assert _as_pairs(plan) == [(5, 10), (3, 10), (7, 5)]


def test_fifo_tie_uses_item_id_not_order_id():
    # 품목 id 와 주문 id 정렬 방향이 서로 반대인 경우
    demands = [_demand(7, 1, 5, 10), _demand(3, 2, 5, 10)]

    plan = plan_allocation(demands, 10, AllocationPolicy.FIFO)

    assert _as_pairs(plan) == [(3, 10)]


def test_priority_tie_uses_item_id_not_order_id():
    demands = [_demand(7, 1, 5, 10, priority=1), _demand(3, 2, 5, 10, priority=1)]

    plan = plan_allocation(demands, 10, AllocationPolicy.PRIORITY)

    assert _as_pairs(plan) == [(3, 10)]


def test_fifo_is_deterministic_for_same_snapshot():
    demands = [_demand(i, i, i % 4, 7 + i) for i in range(1, 12)]
    shuffled = list(demands)
    random.Random(42).shuffle(shuffled)

    first = plan_allocation(demands, 50, AllocationPolicy.FIFO)
    second = plan_allocation(shuffled, 50, AllocationPolicy.FIFO)

    assert first == second


def test_priority_tier_is_served_first():
    demands = [
        _demand(1, 1, 0, 40),
        _demand(2, 2, 1, 50),
        _demand(3, 3, 2, 30, priority=1),
    ]

    plan = plan_allocation(demands, 100, AllocationPolicy.PRIORITY)

    assert _as_pairs(plan) == [(3, 30), (1, 40), (2, 30)]


def test_priority_tie_breakers_user_type_then_amount_then_age():
    demands = [
        _demand(1, 1, 0, 10, priority=2, rank=3, amount="900"),
        _demand(2, 2, 1, 10, priority=2, rank=1, amount="100"),
        _demand(3, 3, 2, 10, priority=2, rank=3, amount="5000"),
        _demand(4, 4, 3, 10, priority=2, rank=3, amount="900"),
    ]

    ordered = [d.order_item_id for d in sort_demands(demands, AllocationPolicy.PRIORITY)]

    assert ordered == [2, 3, 1, 4]


def test_plan_never_exceeds_available_or_need():
    demands = [_demand(i, i, i, need) for i, need in enumerate([5, 0, 12, 3, 8], start=1)]

    plan = plan_allocation(demands, 17, AllocationPolicy.FIFO)

    needs = {d.order_item_id: d.needed_qty for d in demands}
    assert sum(g.granted_qty for g in plan) <= 17
    assert all(0 < g.granted_qty <= needs[g.order_item_id] for g in plan)
    assert 2 not in [g.order_item_id for g in plan]


@pytest.mark.parametrize("available", [0, -5])
def test_no_stock_means_empty_plan(available):
    assert plan_allocation([_demand(1, 1, 0, 10)], available, AllocationPolicy.FIFO) == []


def test_parse_policy_accepts_legacy_names_and_defaults():
    assert AllocationPolicy.parse("order_based") is AllocationPolicy.FIFO
    assert AllocationPolicy.parse("PRIORITY_BASED") is AllocationPolicy.PRIORITY
    assert AllocationPolicy.parse(None, default="priority") is AllocationPolicy.PRIORITY
    assert AllocationPolicy.parse(None) is AllocationPolicy.FIFO


def test_parse_policy_rejects_unknown():
    with pytest.raises(DomainError) as ei:
        AllocationPolicy.parse("random")
    assert ei.value.code == "ALLOC-VALID-001"


def test_customer_attribute_defaults():
    assert customer_priority(None) == DEFAULT_PRIORITY_LEVEL
    assert customer_priority(0) == DEFAULT_PRIORITY_LEVEL
    assert customer_priority(3) == 3
    assert user_type_rank("Main_Distributor") == 1
    assert user_type_rank("distributor") == 2
    assert user_type_rank("retailer") == 3
    assert user_type_rank(None) == 4
    assert user_type_rank("guest") == 4

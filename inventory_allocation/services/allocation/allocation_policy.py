# 📄 inventory_allocation/services/allocation/allocation_policy.py
# 역할: 할당 정책 (순수 함수)
#   - fifo     : 주문 생성시각 오름차순 → 품목 id
#   - priority : 고객 우선순위 → 업체유형 → 주문금액(큰 순) → 주문 생성시각 → 품목 id
# 규칙: DB/세션/시계에 접근하지 않는다. 같은 입력이면 항상 같은 결과.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from inventory_allocation.system.error_codes import DomainError

DEFAULT_PRIORITY_LEVEL = 999

# main_distributor > distributor > retailer, 그 외/미지정은 4
USER_TYPE_RANK: Dict[str, int] = {
    "main_distributor": 1,
    "distributor": 2,
    "retailer": 3,
}
DEFAULT_USER_TYPE_RANK = 4


class AllocationPolicy(str, Enum):
    FIFO = "fifo"
    PRIORITY = "priority"

    @classmethod
    def parse(cls, value: Union[str, "AllocationPolicy", None], default: Optional[str] = None) -> "AllocationPolicy":
        if isinstance(value, AllocationPolicy):
            return value
        raw = (value or default or cls.FIFO.value).strip().lower()
        # 레거시 명칭 호환 (order_based / priority_based)
        raw = {"order_based": "fifo", "priority_based": "priority"}.get(raw, raw)
        try:
            return cls(raw)
        except ValueError:
            raise DomainError(
                "ALLOC-VALID-001",
                detail="지원하지 않는 할당 정책입니다.",
                ctx={"policy": value, "allowed": [p.value for p in cls]},
            )


def user_type_rank(user_type: Optional[str]) -> int:
    return USER_TYPE_RANK.get((user_type or "").strip().lower(), DEFAULT_USER_TYPE_RANK)


def customer_priority(priority_level: Optional[int]) -> int:
    # 0/NULL 은 미지정으로 본다
    return int(priority_level) if priority_level else DEFAULT_PRIORITY_LEVEL


@dataclass(frozen=True)
class Demand:
    order_item_id: int
    order_id: int
    order_created_at: datetime
    needed_qty: int
    customer_priority: int = DEFAULT_PRIORITY_LEVEL
    user_type_rank: int = DEFAULT_USER_TYPE_RANK
    order_total_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class Grant:
    order_item_id: int
    order_id: int
    granted_qty: int


def order_sort_key(
    policy: AllocationPolicy,
    *,
    order_id: int,
    created_at: datetime,
    priority: int = DEFAULT_PRIORITY_LEVEL,
    type_rank: int = DEFAULT_USER_TYPE_RANK,
    total_amount: Decimal = Decimal("0"),
) -> Tuple:
    """주문 단위 정렬키. 재계산 작업이 주문을 돌 때도 같은 기준을 쓴다."""
    if policy is AllocationPolicy.PRIORITY:
        return (priority, type_rank, -Decimal(total_amount or 0), created_at, order_id)
    return (created_at, order_id)


def _demand_key(policy: AllocationPolicy, d: Demand) -> Tuple:
    # 품목 단위: 같은 시각이면 주문 id 가 아니라 품목 id 로 가른다
    if policy is AllocationPolicy.PRIORITY:
        return (
            d.customer_priority,
            d.user_type_rank,
            -Decimal(d.order_total_amount or 0),
            d.order_created_at,
            d.order_item_id,
        )
    return (d.order_created_at, d.order_item_id)


def sort_demands(demands: Sequence[Demand], policy: AllocationPolicy) -> List[Demand]:
    return sorted(demands, key=lambda d: _demand_key(policy, d))


def plan_allocation(
    demands: Sequence[Demand],
    available_stock: int,
    policy: AllocationPolicy = AllocationPolicy.FIFO,
) -> List[Grant]:
    """
    정렬된 순서대로 가용재고를 욕심쟁이(greedy) 방식으로 나눠준다.

    - 합계 granted <= available_stock
    - 각 granted <= needed_qty
    - granted 0 인 수요는 결과에 넣지 않는다
    """
    remaining = max(int(available_stock), 0)
    plan: List[Grant] = []

    for demand in sort_demands(demands, policy):
        if remaining <= 0:
            break
        if demand.needed_qty <= 0:
            continue

        granted = min(demand.needed_qty, remaining)
        plan.append(Grant(demand.order_item_id, demand.order_id, granted))
        remaining -= granted

    return plan

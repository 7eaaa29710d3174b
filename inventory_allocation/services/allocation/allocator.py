# 📄 inventory_allocation/services/allocation/allocator.py
# 역할: 옵션(StockVariant) 1개에 할당 정책을 적용하고 결과를 원장/주문품목에 반영
# 단계: v2.0
#
# ✅ 처리 순서
# 1) 옵션 행 FOR UPDATE 잠금 → 차단(is_blocked) 옵션이면 LedgerInconsistency
# 2) 가용재고 조회
# 3) 수요 집합 = 해당 옵션의 미충족 품목(allocated_qty + shipped_qty < qty), 종결 주문 제외
# 4) 정책으로 계획 수립 (allocation_policy.plan_allocation)
# 5) grant 1건 = SAVEPOINT 1개 : reserve() + order_item.allocated_qty += granted
#    - 계획보다 적게 나가면 가용재고 재조회: 0 이면 중단(오류 아님), 남았으면 뒤 수요 재계획
#    - 버전 경합 → 같은 grant 만 재시도, 한도 초과 시 ConcurrentModification 전달
# commit 은 하지 않는다.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from inventory_allocation.models import (
    REFERENCE_ORDER,
    TERMINAL_ORDER_STATUSES,
    Customer,
    OrderHeader,
    OrderItem,
)
from inventory_allocation.services.allocation.allocation_policy import (
    AllocationPolicy,
    Demand,
    Grant,
    customer_priority,
    plan_allocation,
    user_type_rank,
)
from inventory_allocation.services.stock.stock_ledger import StockLedger, VariantKey
from inventory_allocation.system.config import ALLOCATION_MAX_RETRIES
from inventory_allocation.system.error_codes import (
    ConcurrentModification,
    InsufficientAvailableStock,
    LedgerInconsistency,
)
from inventory_allocation.system.timeutil import utc_now

logger = logging.getLogger(__name__)


@dataclass
class AllocationRun:
    key: VariantKey
    policy: AllocationPolicy
    available_before: int = 0
    demand_count: int = 0
    grants: List[Grant] = field(default_factory=list)

    @property
    def total_granted(self) -> int:
        return sum(g.granted_qty for g in self.grants)

    @property
    def touched_order_ids(self) -> List[int]:
        return sorted({g.order_id for g in self.grants})

    def as_dict(self) -> Dict[str, Any]:
        return {
            **self.key.as_dict(),
            "policy": self.policy.value,
            "available_before": self.available_before,
            "available_after": self.available_before - self.total_granted,
            "demand_count": self.demand_count,
            "total_granted": self.total_granted,
            "grants": [
                {
                    "order_item_id": g.order_item_id,
                    "order_id": g.order_id,
                    "granted_qty": g.granted_qty,
                }
                for g in self.grants
            ],
        }


class Allocator:
    def __init__(
        self,
        session: Session,
        *,
        ledger: Optional[StockLedger] = None,
        actor: str = "system",
        max_retries: int = ALLOCATION_MAX_RETRIES,
    ):
        self.session = session
        self.ledger = ledger or StockLedger(session, actor=actor)
        self.actor = self.ledger.actor
        self.max_retries = max(int(max_retries), 0)

    # ─────────────────────────────────────────────
    # 수요 집합
    # ─────────────────────────────────────────────
    def load_demands(self, key: VariantKey, order_ids: Optional[Iterable[int]] = None) -> List[Demand]:
        stmt = (
            select(
                OrderItem.id,
                OrderItem.header_id,
                OrderItem.qty,
                OrderItem.allocated_qty,
                OrderItem.shipped_qty,
                OrderHeader.created_at,
                OrderHeader.total_amount,
                Customer.priority_level,
                Customer.user_type,
            )
            .join(OrderHeader, OrderHeader.id == OrderItem.header_id)
            .outerjoin(Customer, Customer.id == OrderHeader.customer_id)
            .where(
                key.where(OrderItem),
                OrderHeader.status.notin_(sorted(TERMINAL_ORDER_STATUSES)),
                OrderHeader.deleted_at.is_(None),
                OrderItem.allocated_qty + OrderItem.shipped_qty < OrderItem.qty,
            )
        )
        if order_ids is not None:
            stmt = stmt.where(OrderItem.header_id.in_(list(order_ids)))

        demands: List[Demand] = []
        for r in self.session.execute(stmt).all():
            demands.append(
                Demand(
                    order_item_id=r.id,
                    order_id=r.header_id,
                    order_created_at=r.created_at,
                    needed_qty=int(r.qty) - int(r.allocated_qty or 0) - int(r.shipped_qty or 0),
                    customer_priority=customer_priority(r.priority_level),
                    user_type_rank=user_type_rank(r.user_type),
                    order_total_amount=r.total_amount,
                )
            )
        return demands

    # ─────────────────────────────────────────────
    # 1회 실행
    # ─────────────────────────────────────────────
    def allocate_variant(
        self,
        key: VariantKey,
        policy: AllocationPolicy = AllocationPolicy.FIFO,
        *,
        order_ids: Optional[Iterable[int]] = None,
    ) -> AllocationRun:
        policy = AllocationPolicy.parse(policy)
        if order_ids is not None:
            order_ids = sorted(set(order_ids))
        run = AllocationRun(key=key, policy=policy)

        variant = self.ledger.find(key, lock=True)
        if variant is None:
            # 재고 행이 없으면 나눠줄 것도 없다
            return run
        if variant.is_blocked:
            raise LedgerInconsistency(
                detail="원장 불일치로 할당이 차단된 옵션입니다. 재계산을 먼저 실행하세요.",
                ctx={**key.as_dict(), "blocked_reason": variant.blocked_reason},
            )

        run.available_before = self.ledger.get_available(key)
        demands = self.load_demands(key, order_ids)
        run.demand_count = len(demands)
        if run.available_before <= 0 or not demands:
            return run

        pending = plan_allocation(demands, run.available_before, policy)
        served = set()
        while pending:
            planned = pending.pop(0)
            served.add(planned.order_item_id)
            granted = self._grant(key, planned)
            if granted > 0:
                run.grants.append(Grant(planned.order_item_id, planned.order_id, granted))
            if granted < planned.granted_qty:
                variant = self.ledger.find(key)
                available = variant.available_stock if variant is not None else 0
                if available <= 0:
                    break
                # 품목 필요수량이 계획보다 줄었다 → 남은 재고로 뒤 수요를 다시 계획
                rest = [d for d in demands if d.order_item_id not in served]
                pending = plan_allocation(rest, available, policy)

        if run.grants:
            logger.info(
                "할당 완료: variant=%s policy=%s available=%s granted=%s lines=%s",
                key, policy.value, run.available_before, run.total_granted, len(run.grants),
            )
        return run

    # ─────────────────────────────────────────────
    # grant 1건 (SAVEPOINT + 재시도)
    # ─────────────────────────────────────────────
    def _grant(self, key: VariantKey, planned: Grant) -> int:
        attempt = 0
        while True:
            variant = self.ledger.find(key)
            item = self.session.get(OrderItem, planned.order_item_id, populate_existing=True)
            if variant is None or item is None:
                return 0

            need = int(item.qty) - int(item.allocated_qty or 0) - int(item.shipped_qty or 0)
            qty = min(planned.granted_qty, need, variant.available_stock)
            if qty <= 0:
                return 0

            try:
                with self.session.begin_nested():
                    self.ledger.reserve(
                        key,
                        qty,
                        reference_type=REFERENCE_ORDER,
                        reference_id=planned.order_id,
                        notes=f"주문 할당 (item_id={planned.order_item_id})",
                        expected_version=variant.version,
                    )
                    result = self.session.execute(
                        update(OrderItem)
                        .where(
                            OrderItem.id == planned.order_item_id,
                            OrderItem.allocated_qty + OrderItem.shipped_qty + qty <= OrderItem.qty,
                        )
                        .values(
                            allocated_qty=OrderItem.allocated_qty + qty,
                            updated_by=self.actor,
                            updated_at=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConcurrentModification(
                            detail="할당 중 주문 품목이 변경되었습니다.",
                            ctx={**key.as_dict(), "order_item_id": planned.order_item_id},
                        )
                return qty
            except InsufficientAvailableStock:
                return 0
            except ConcurrentModification:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        "할당 재시도 한도 초과: variant=%s item_id=%s attempts=%s",
                        key, planned.order_item_id, attempt,
                    )
                    raise
                logger.info(
                    "할당 경합 재시도: variant=%s item_id=%s attempt=%s",
                    key, planned.order_item_id, attempt,
                )

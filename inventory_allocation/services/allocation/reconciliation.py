# 📄 inventory_allocation/services/allocation/reconciliation.py
# 역할: 범위(상품 / 영업일 / 전체 미결 주문) 단위 할당 초기화 + 재할당
# 단계: v2.0
#
# ✅ 처리 순서 (한 트랜잭션, 범위 내 옵션 행 전체 FOR UPDATE 유지)
# 1) 범위 내 품목 중 allocated_qty > 0 → release() + allocated_qty = 0
# 2) 영향 옵션마다 allocated_stock 을 "범위 밖 품목이 쥐고 있는 수량"으로 강제 보정
#    (product/all 범위에서는 0). 차이가 있으면 경고 로그 + 보정 이동이력, 차단 해제
# 3) 범위 내 주문을 정책 정렬키(FIFO: created_at 오름차순)로 다시 조회
# 4) 주문 1건씩 Allocator 실행 (order_ids=[해당 주문])
# 5) 처리한 주문 전체 상태 재계산
# 중간에 실패하면 전체 롤백 → 1단계부터 다시 실행해도 같은 결과.

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_allocation.models import (
    ORDER_CONFIRMED,
    ORDER_PARTIAL,
    ORDER_PENDING,
    REFERENCE_ORDER,
    TERMINAL_ORDER_STATUSES,
    Customer,
    OrderHeader,
    OrderItem,
    StockVariant,
)
from inventory_allocation.services.allocation.allocation_policy import (
    AllocationPolicy,
    customer_priority,
    order_sort_key,
    user_type_rank,
)
from inventory_allocation.services.allocation.allocator import Allocator
from inventory_allocation.services.orders.order_state_projector import OrderStateProjector
from inventory_allocation.services.stock.stock_ledger import StockLedger, VariantKey
from inventory_allocation.system.config import ALLOCATION_MAX_RETRIES, BUSINESS_DAY_CUTOFF_HOUR
from inventory_allocation.system.error_codes import DomainError
from inventory_allocation.system.timeutil import business_day_window, utc_now

logger = logging.getLogger(__name__)

SCOPE_PRODUCT = "product"
SCOPE_DAY = "day"
SCOPE_ALL = "all"
SCOPE_KINDS = (SCOPE_PRODUCT, SCOPE_DAY, SCOPE_ALL)


@dataclass(frozen=True)
class ReconcileScope:
    kind: str
    product_id: Optional[int] = None
    business_day: Optional[date] = None
    policy: AllocationPolicy = AllocationPolicy.FIFO
    cutoff_hour: int = BUSINESS_DAY_CUTOFF_HOUR

    @classmethod
    def for_product(cls, product_id: int, policy: AllocationPolicy = AllocationPolicy.FIFO) -> "ReconcileScope":
        return cls(SCOPE_PRODUCT, product_id=product_id, policy=policy)

    @classmethod
    def for_day(
        cls,
        business_day: date,
        policy: AllocationPolicy = AllocationPolicy.FIFO,
        cutoff_hour: int = BUSINESS_DAY_CUTOFF_HOUR,
    ) -> "ReconcileScope":
        return cls(SCOPE_DAY, business_day=business_day, policy=policy, cutoff_hour=cutoff_hour)

    @classmethod
    def for_all(cls, policy: AllocationPolicy = AllocationPolicy.FIFO) -> "ReconcileScope":
        return cls(SCOPE_ALL, policy=policy)

    def validate(self) -> None:
        if self.kind not in SCOPE_KINDS:
            raise DomainError(
                "ALLOC-VALID-001",
                detail="재계산 범위는 product / day / all 중 하나여야 합니다.",
                ctx={"scope": self.kind},
            )
        if self.kind == SCOPE_PRODUCT and not self.product_id:
            raise DomainError(
                "ALLOC-VALID-001",
                detail="상품 범위 재계산에는 product_id가 필요합니다.",
                ctx={"scope": self.kind},
            )
        if self.kind == SCOPE_DAY and self.business_day is None:
            raise DomainError(
                "ALLOC-VALID-001",
                detail="영업일 범위 재계산에는 business_day가 필요합니다.",
                ctx={"scope": self.kind},
            )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "product_id": self.product_id,
            "business_day": self.business_day.isoformat() if self.business_day else None,
            "policy": AllocationPolicy.parse(self.policy).value,
        }


@dataclass
class ReconcileSummary:
    orders_processed: int = 0
    fully_allocated: int = 0
    partially_allocated: int = 0
    unallocated: int = 0
    released_qty: int = 0
    granted_qty: int = 0
    variants: int = 0
    drift: List[Dict[str, Any]] = field(default_factory=list)
    statuses: Dict[int, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "orders_processed": self.orders_processed,
            "fully_allocated": self.fully_allocated,
            "partially_allocated": self.partially_allocated,
            "unallocated": self.unallocated,
            "released_qty": self.released_qty,
            "granted_qty": self.granted_qty,
            "variants": self.variants,
            "drift": list(self.drift),
        }


class ReconciliationJob:
    def __init__(
        self,
        session: Session,
        *,
        actor: str = "system",
        max_retries: int = ALLOCATION_MAX_RETRIES,
    ):
        self.session = session
        self.ledger = StockLedger(session, actor=actor)
        self.allocator = Allocator(session, ledger=self.ledger, max_retries=max_retries)
        self.projector = OrderStateProjector(session, actor=actor)
        self.actor = self.ledger.actor

    # ─────────────────────────────────────────────
    # 범위 조회
    # ─────────────────────────────────────────────
    def _scope_orders(self, scope: ReconcileScope) -> List[Any]:
        stmt = (
            select(
                OrderHeader.id,
                OrderHeader.created_at,
                OrderHeader.total_amount,
                Customer.priority_level,
                Customer.user_type,
            )
            .outerjoin(Customer, Customer.id == OrderHeader.customer_id)
            .where(
                OrderHeader.status.notin_(sorted(TERMINAL_ORDER_STATUSES)),
                OrderHeader.deleted_at.is_(None),
            )
        )
        if scope.kind == SCOPE_PRODUCT:
            stmt = stmt.where(
                OrderHeader.id.in_(
                    select(OrderItem.header_id).where(OrderItem.product_id == scope.product_id)
                )
            )
        elif scope.kind == SCOPE_DAY:
            start, end = business_day_window(scope.business_day, scope.cutoff_hour)
            stmt = stmt.where(OrderHeader.created_at >= start, OrderHeader.created_at < end)
        return list(self.session.execute(stmt).all())

    def _scope_lines(self, scope: ReconcileScope, order_ids: List[int]) -> List[OrderItem]:
        if not order_ids:
            return []
        stmt = (
            select(OrderItem)
            .where(OrderItem.header_id.in_(order_ids))
            .order_by(OrderItem.id.asc())
            .execution_options(populate_existing=True)
        )
        if scope.kind == SCOPE_PRODUCT:
            stmt = stmt.where(OrderItem.product_id == scope.product_id)
        return list(self.session.execute(stmt).scalars().all())

    def _extra_variant_keys(self, scope: ReconcileScope) -> Set[VariantKey]:
        """주문이 없어도 보정 대상이 되는 옵션 (product/all 범위)."""
        if scope.kind == SCOPE_DAY:
            return set()
        stmt = select(StockVariant.product_id, StockVariant.color, StockVariant.size)
        if scope.kind == SCOPE_PRODUCT:
            stmt = stmt.where(StockVariant.product_id == scope.product_id)
        return {VariantKey.from_row(r) for r in self.session.execute(stmt).all()}

    # ─────────────────────────────────────────────
    # 실행
    # ─────────────────────────────────────────────
    def run(self, scope: ReconcileScope) -> ReconcileSummary:
        scope.validate()
        policy = AllocationPolicy.parse(scope.policy)
        summary = ReconcileSummary()

        orders = self._scope_orders(scope)
        order_ids = sorted(o.id for o in orders)
        lines = self._scope_lines(scope, order_ids)

        keys_by_order: Dict[int, Set[VariantKey]] = defaultdict(set)
        for line in lines:
            keys_by_order[line.header_id].add(VariantKey.from_row(line))

        affected = set(self._extra_variant_keys(scope))
        for keys in keys_by_order.values():
            affected |= keys

        # 범위 내 옵션 전체를 id 순서로 잠근 채 끝까지 간다
        self.ledger.lock(affected)
        summary.variants = len(affected)

        # 1) 범위 내 할당 해제
        for line in lines:
            qty = int(line.allocated_qty or 0)
            if qty <= 0:
                continue
            key = VariantKey.from_row(line)
            movement = self.ledger.release(
                key,
                qty,
                reference_type=REFERENCE_ORDER,
                reference_id=line.header_id,
                notes=f"재계산 할당 초기화 (item_id={line.id})",
            )
            summary.released_qty += movement.quantity_delta if movement else 0
            line.allocated_qty = 0
            line.updated_by = self.actor
            line.updated_at = utc_now()
        self.session.flush()

        # 2) 옵션별 allocated_stock 강제 보정
        for key in sorted(affected, key=VariantKey.sort_key):
            residual = self.ledger.allocated_by_lines(key)
            variant = self.ledger.find(key)
            allocated_before = int(variant.allocated_stock) if variant else 0
            self.ledger.force_allocated(key, residual, reason="재계산 할당재고 보정")
            if allocated_before != residual:
                summary.drift.append(
                    {
                        **key.as_dict(),
                        "allocated_before": allocated_before,
                        "allocated_after": residual,
                    }
                )

        # 3) 정책 정렬키로 주문 정렬
        ordered = sorted(
            orders,
            key=lambda o: order_sort_key(
                policy,
                order_id=o.id,
                created_at=o.created_at,
                priority=customer_priority(o.priority_level),
                type_rank=user_type_rank(o.user_type),
                total_amount=o.total_amount,
            ),
        )

        # 4) 주문 1건씩 재할당
        for order in ordered:
            for key in sorted(keys_by_order.get(order.id, ()), key=VariantKey.sort_key):
                run = self.allocator.allocate_variant(key, policy, order_ids=[order.id])
                summary.granted_qty += run.total_granted

        # 5) 상태 재계산
        summary.statuses = self.projector.project(order_ids)
        summary.orders_processed = len(order_ids)
        for status in summary.statuses.values():
            if status == ORDER_CONFIRMED:
                summary.fully_allocated += 1
            elif status == ORDER_PARTIAL:
                summary.partially_allocated += 1
            elif status == ORDER_PENDING:
                summary.unallocated += 1

        logger.info(
            "재계산 완료: scope=%s orders=%s full=%s partial=%s none=%s drift=%s",
            scope.as_dict(),
            summary.orders_processed,
            summary.fully_allocated,
            summary.partially_allocated,
            summary.unallocated,
            len(summary.drift),
        )
        return summary

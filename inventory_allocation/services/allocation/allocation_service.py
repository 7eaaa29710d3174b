# 📄 inventory_allocation/services/allocation/allocation_service.py
# 페이지: 재고 할당 엔진 (주문 접수 / 입출고 / 출고소진 / 주문취소 / 재계산)
# 역할: 외부 협력자(주문접수·재고조정·명세서/출고·배치) 진입점
#       트랜잭션 경계(commit/rollback) 소유, 동기 SQLAlchemy 작업은 anyio 스레드에서 실행
# 단계: v2.0
#
# ✅ 오류 처리
# - LedgerInconsistency
#   · 주문접수 / 실재고 변경 / 주문취소 : 옵션별 SAVEPOINT 만 되돌리고 차단 → 결과의 blocked 로 보고
#   · 수동 할당 / 출고 소진 : rollback → 새 트랜잭션에서 해당 옵션 차단(is_blocked) + commit → 그대로 전달
# - ConcurrentModification(재시도 소진) / 기타 DomainError : rollback → 그대로 전달
# - SQLAlchemyError : rollback → SYSTEM-DB-901 로 감싸서 전달

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import anyio
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_allocation.models import (
    MOVEMENT_ORDER_SHIPMENT,
    ORDER_CANCELLED,
    REFERENCE_ORDER,
    TERMINAL_ORDER_STATUSES,
    OrderHeader,
    OrderItem,
    StockVariant,
)
from inventory_allocation.services.allocation.allocation_policy import AllocationPolicy
from inventory_allocation.services.allocation.allocator import AllocationRun, Allocator
from inventory_allocation.services.allocation.reconciliation import (
    ReconcileScope,
    ReconciliationJob,
)
from inventory_allocation.services.orders.order_state_projector import OrderStateProjector
from inventory_allocation.services.stock.stock_ledger import StockLedger, VariantKey
from inventory_allocation.system.config import (
    ALLOCATION_DEFAULT_POLICY,
    ALLOCATION_MAX_RETRIES,
    BUSINESS_DAY_CUTOFF_HOUR,
)
from inventory_allocation.system.error_codes import DomainError, LedgerInconsistency
from inventory_allocation.system.timeutil import kst_today, utc_now

logger = logging.getLogger(__name__)

PAGE_ID = "allocation.engine"
PAGE_VERSION = "v2.0"


async def _run_sync(fn):
    return await anyio.to_thread.run_sync(fn)


def _safe_user_id(user: Optional[Dict[str, Any]]) -> str:
    user = user or {}
    return str(user.get("username") or user.get("sub") or user.get("user_id") or "system")


def _movement_dict(movement) -> Optional[Dict[str, Any]]:
    if movement is None:
        return None
    return {
        "id": movement.id,
        "product_id": movement.product_id,
        "color": movement.color,
        "size": movement.size,
        "quantity_delta": movement.quantity_delta,
        "movement_type": movement.movement_type,
        "reference_type": movement.reference_type,
        "reference_id": movement.reference_id,
        "notes": movement.notes,
        "created_by": movement.created_by,
        "created_at": movement.created_at.isoformat() if movement.created_at else None,
    }


def _variant_dict(variant: StockVariant) -> Dict[str, Any]:
    return {
        "id": variant.id,
        "product_id": variant.product_id,
        "color": variant.color,
        "size": variant.size,
        "physical_stock": variant.physical_stock,
        "allocated_stock": variant.allocated_stock,
        "available_stock": variant.available_stock,
        "version": variant.version,
        "is_blocked": bool(variant.is_blocked),
        "blocked_reason": variant.blocked_reason,
    }


def _parse_business_day(value: Any) -> date:
    if value is None or value == "":
        return kst_today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise DomainError(
            "ALLOC-VALID-001",
            detail="business_day 날짜 형식이 잘못되었습니다. (YYYY-MM-DD)",
            ctx={"page_id": PAGE_ID, "value": value},
        )


@dataclass
class AllocationService:
    session: Session
    user: Optional[Dict[str, Any]] = None

    page_id = PAGE_ID
    page_version = PAGE_VERSION

    # ─────────────────────────────────────────────
    # 내부 구성요소
    # ─────────────────────────────────────────────
    @property
    def actor(self) -> str:
        return _safe_user_id(self.user)

    def _ledger(self) -> StockLedger:
        return StockLedger(self.session, actor=self.actor)

    def _allocator(self, ledger: StockLedger) -> Allocator:
        return Allocator(self.session, ledger=ledger, max_retries=ALLOCATION_MAX_RETRIES)

    def _projector(self) -> OrderStateProjector:
        return OrderStateProjector(self.session, actor=self.actor)

    @staticmethod
    def _policy(policy: Any) -> AllocationPolicy:
        return AllocationPolicy.parse(policy, default=ALLOCATION_DEFAULT_POLICY)

    # ─────────────────────────────────────────────
    # 트랜잭션 경계
    # ─────────────────────────────────────────────
    def _in_transaction(self, work: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        session = self.session
        try:
            result = work()
            session.commit()
            return result
        except LedgerInconsistency as exc:
            session.rollback()
            self._block_variant(exc)
            raise
        except DomainError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("할당 엔진 DB 오류: %s", exc)
            raise DomainError(
                "SYSTEM-DB-901",
                detail="재고 할당 처리 중 DB 오류가 발생했습니다.",
                ctx={"page_id": PAGE_ID, "exc": exc.__class__.__name__},
            )

    def _block_variant(self, exc: LedgerInconsistency) -> None:
        ctx = exc.ctx or {}
        if not ctx.get("product_id"):
            return

        key = VariantKey.of(ctx["product_id"], ctx.get("color"), ctx.get("size"))
        ledger = self._ledger()
        try:
            variant = ledger.find(key)
            if variant is not None and variant.is_blocked:
                return
            ledger.block(key, exc.detail or "원장 불일치")
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("옵션 차단 기록 실패: variant=%s", key)

    def _allocate_contained(
        self,
        ledger: StockLedger,
        key: VariantKey,
        policy: AllocationPolicy,
    ) -> Tuple[Optional[AllocationRun], Optional[Dict[str, Any]]]:
        """
        옵션 1개 할당을 SAVEPOINT 안에서 실행한다.
        원장 불일치면 그 옵션 작업만 되돌리고 차단 기록 후 (None, 차단정보) 반환.
        같은 호출의 다른 옵션 / 실재고 조정 / 할당 해제는 그대로 커밋된다.
        """
        try:
            with self.session.begin_nested():
                return self._allocator(ledger).allocate_variant(key, policy), None
        except LedgerInconsistency as exc:
            reason = exc.detail or "원장 불일치"
            variant = ledger.find(key)
            if variant is not None and variant.is_blocked:
                reason = variant.blocked_reason or reason
            else:
                ledger.block(key, reason)
            logger.warning("할당 건너뜀(차단 옵션): variant=%s reason=%s", key, reason)
            return None, {**key.as_dict(), "reason": reason}

    def _allocate_keys(
        self,
        ledger: StockLedger,
        keys,
        policy: AllocationPolicy,
    ) -> Tuple[List[AllocationRun], List[Dict[str, Any]]]:
        runs: List[AllocationRun] = []
        blocked: List[Dict[str, Any]] = []
        for key in sorted(set(keys), key=VariantKey.sort_key):
            run, blocked_info = self._allocate_contained(ledger, key, policy)
            if run is not None:
                runs.append(run)
            if blocked_info is not None:
                blocked.append(blocked_info)
        return runs, blocked

    def _get_order(self, order_id: int) -> OrderHeader:
        header = (
            self.session.execute(
                select(OrderHeader)
                .where(OrderHeader.id == order_id, OrderHeader.deleted_at.is_(None))
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )
        if header is None:
            raise DomainError(
                "ORDER-NOTFOUND-101",
                detail="주문을 찾을 수 없습니다.",
                ctx={"page_id": PAGE_ID, "order_id": order_id},
            )
        return header

    def _order_lines(self, order_id: int) -> List[OrderItem]:
        stmt = (
            select(OrderItem)
            .where(OrderItem.header_id == order_id)
            .order_by(OrderItem.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars().all())

    # ─────────────────────────────────────────────
    # 1) 주문 접수 → 옵션별 할당
    # ─────────────────────────────────────────────
    async def on_order_created(self, *, order_id: int, policy: Optional[str] = None) -> Dict[str, Any]:
        policy_ = self._policy(policy)

        def work() -> Dict[str, Any]:
            header = self._get_order(order_id)
            if header.status in TERMINAL_ORDER_STATUSES:
                raise DomainError(
                    "ORDER-STATE-451",
                    detail="종결된 주문은 할당할 수 없습니다.",
                    ctx={"page_id": PAGE_ID, "order_id": order_id, "status": header.status},
                )

            ledger = self._ledger()
            keys = {VariantKey.from_row(line) for line in self._order_lines(order_id)}
            runs, blocked = self._allocate_keys(ledger, keys, policy_)

            touched: Set[int] = {order_id}
            for run in runs:
                touched.update(run.touched_order_ids)
            statuses = self._projector().project(touched)

            return {
                "order_id": order_id,
                "status": statuses.get(order_id),
                "policy": policy_.value,
                "runs": [run.as_dict() for run in runs],
                "statuses": statuses,
                "blocked": blocked,
            }

        return await _run_sync(lambda: self._in_transaction(work))

    # ─────────────────────────────────────────────
    # 2) 실재고 변경 (입고/출고/조정/반품/샘플)
    # ─────────────────────────────────────────────
    async def on_physical_stock_changed(
        self,
        *,
        product_id: int,
        color: Optional[str] = None,
        size: Optional[str] = None,
        delta: int,
        reason: Optional[str] = None,
        movement_type: Optional[str] = None,
        policy: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = VariantKey.of(product_id, color, size)
        policy_ = self._policy(policy)

        def work() -> Dict[str, Any]:
            ledger = self._ledger()
            movement = ledger.adjust_physical(key, delta, reason, movement_type=movement_type)

            run: Optional[AllocationRun] = None
            blocked: List[Dict[str, Any]] = []
            statuses: Dict[int, str] = {}
            if movement.quantity_delta > 0:
                # 새로 생긴 가용재고는 가장 오래된(우선순위 높은) 미충족 수요로
                # 차단/불일치 옵션이어도 입고 자체는 기록된다
                run, blocked_info = self._allocate_contained(ledger, key, policy_)
                if blocked_info is not None:
                    blocked.append(blocked_info)
                if run is not None:
                    statuses = self._projector().project(run.touched_order_ids)

            return {
                "movement": _movement_dict(movement),
                "variant": _variant_dict(ledger.find(key)),
                "allocation": run.as_dict() if run else None,
                "blocked": blocked,
                "statuses": statuses,
            }

        return await _run_sync(lambda: self._in_transaction(work))

    # ─────────────────────────────────────────────
    # 3) 출고 소진 (할당 → 실재고 차감)
    # ─────────────────────────────────────────────
    async def ship_allocated(self, *, order_item_id: int, quantity: int) -> Dict[str, Any]:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            quantity = 0
        if quantity <= 0:
            raise DomainError(
                "ORDER-VALID-001",
                detail="출고 수량은 1 이상이어야 합니다.",
                ctx={"page_id": PAGE_ID, "quantity": quantity},
            )

        def work() -> Dict[str, Any]:
            item = (
                self.session.execute(
                    select(OrderItem)
                    .where(OrderItem.id == order_item_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .first()
            )
            if item is None:
                raise DomainError(
                    "ORDER-NOTFOUND-101",
                    detail="주문 품목을 찾을 수 없습니다.",
                    ctx={"page_id": PAGE_ID, "order_item_id": order_item_id},
                )

            header = self._get_order(item.header_id)
            if header.status == ORDER_CANCELLED:
                raise DomainError(
                    "ORDER-STATE-451",
                    detail="취소된 주문은 출고할 수 없습니다.",
                    ctx={"page_id": PAGE_ID, "order_id": header.id, "status": header.status},
                )
            if quantity > int(item.allocated_qty or 0):
                raise DomainError(
                    "ORDER-STATE-451",
                    detail="할당된 수량보다 많이 출고할 수 없습니다.",
                    ctx={
                        "page_id": PAGE_ID,
                        "order_item_id": item.id,
                        "allocated_qty": item.allocated_qty,
                        "quantity": quantity,
                    },
                )

            key = VariantKey.from_row(item)
            ledger = self._ledger()
            ledger.lock([key])

            # 할당 해제를 먼저 해야 실재고 차감 조건(physical + delta >= allocated)을 통과한다
            released = ledger.release(
                key,
                quantity,
                reference_type=REFERENCE_ORDER,
                reference_id=header.id,
                notes=f"출고 소진 할당 해제 (item_id={item.id})",
            )
            if released is None or released.quantity_delta != quantity:
                raise LedgerInconsistency(
                    detail="옵션 할당재고가 주문 품목 할당수량보다 적습니다.",
                    ctx={**key.as_dict(), "order_item_id": item.id, "quantity": quantity},
                )

            shipment = ledger.adjust_physical(
                key,
                -quantity,
                f"주문 출고 (item_id={item.id})",
                movement_type=MOVEMENT_ORDER_SHIPMENT,
                reference_type=REFERENCE_ORDER,
                reference_id=header.id,
            )

            item.allocated_qty = int(item.allocated_qty) - quantity
            item.shipped_qty = int(item.shipped_qty or 0) + quantity
            item.updated_by = self.actor
            item.updated_at = utc_now()
            self.session.flush()

            statuses = self._projector().project([header.id])
            return {
                "order_item_id": item.id,
                "order_id": header.id,
                "allocated_qty": item.allocated_qty,
                "shipped_qty": item.shipped_qty,
                "status": statuses.get(header.id),
                "movements": [_movement_dict(released), _movement_dict(shipment)],
                "variant": _variant_dict(ledger.find(key)),
            }

        return await _run_sync(lambda: self._in_transaction(work))

    # ─────────────────────────────────────────────
    # 4) 주문 취소 → 할당 해제 + 대기 수요 재할당
    # ─────────────────────────────────────────────
    async def on_order_cancelled(self, *, order_id: int, policy: Optional[str] = None) -> Dict[str, Any]:
        policy_ = self._policy(policy)

        def work() -> Dict[str, Any]:
            header = self._get_order(order_id)
            if header.status == ORDER_CANCELLED:
                return {"order_id": order_id, "status": ORDER_CANCELLED, "released_qty": 0, "runs": [], "statuses": {}, "blocked": []}
            if header.status in TERMINAL_ORDER_STATUSES:
                raise DomainError(
                    "ORDER-STATE-451",
                    detail="출고/완료된 주문은 취소할 수 없습니다.",
                    ctx={"page_id": PAGE_ID, "order_id": order_id, "status": header.status},
                )

            ledger = self._ledger()
            lines = self._order_lines(order_id)
            keys = {VariantKey.from_row(line) for line in lines}
            ledger.lock(keys)

            released_qty = 0
            freed: Set[VariantKey] = set()
            for line in lines:
                qty = int(line.allocated_qty or 0)
                if qty <= 0:
                    continue
                key = VariantKey.from_row(line)
                movement = ledger.release(
                    key,
                    qty,
                    reference_type=REFERENCE_ORDER,
                    reference_id=order_id,
                    notes=f"주문 취소 할당 해제 (item_id={line.id})",
                )
                released_qty += movement.quantity_delta if movement else 0
                line.allocated_qty = 0
                line.updated_by = self.actor
                line.updated_at = utc_now()
                freed.add(key)

            header.status = ORDER_CANCELLED
            header.updated_by = self.actor
            header.updated_at = utc_now()
            self.session.flush()

            runs, blocked = self._allocate_keys(ledger, freed, policy_)
            touched: Set[int] = set()
            for run in runs:
                touched.update(run.touched_order_ids)
            statuses = self._projector().project(touched)

            logger.info("주문 취소: order_id=%s released=%s reallocated=%s", order_id, released_qty, sum(r.total_granted for r in runs))
            return {
                "order_id": order_id,
                "status": ORDER_CANCELLED,
                "released_qty": released_qty,
                "runs": [run.as_dict() for run in runs],
                "statuses": statuses,
                "blocked": blocked,
            }

        return await _run_sync(lambda: self._in_transaction(work))

    # ─────────────────────────────────────────────
    # 5) 수동 할당 (옵션 1개)
    # ─────────────────────────────────────────────
    async def allocate_variant(
        self,
        *,
        product_id: int,
        color: Optional[str] = None,
        size: Optional[str] = None,
        policy: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = VariantKey.of(product_id, color, size)
        policy_ = self._policy(policy)

        def work() -> Dict[str, Any]:
            run = self._allocator(self._ledger()).allocate_variant(key, policy_)
            statuses = self._projector().project(run.touched_order_ids)
            return {**run.as_dict(), "statuses": statuses}

        return await _run_sync(lambda: self._in_transaction(work))

    # ─────────────────────────────────────────────
    # 6) 재계산 (product / day / all)
    # ─────────────────────────────────────────────
    async def reconcile(
        self,
        *,
        scope: str,
        product_id: Optional[int] = None,
        business_day: Any = None,
        policy: Optional[str] = None,
    ) -> Dict[str, Any]:
        policy_ = self._policy(policy)
        kind = (scope or "").strip().lower()
        if kind == "product":
            scope_ = ReconcileScope.for_product(int(product_id or 0), policy_)
        elif kind == "day":
            scope_ = ReconcileScope.for_day(_parse_business_day(business_day), policy_, BUSINESS_DAY_CUTOFF_HOUR)
        else:
            scope_ = ReconcileScope(kind, policy=policy_)
        scope_.validate()

        def work() -> Dict[str, Any]:
            job = ReconciliationJob(self.session, actor=self.actor, max_retries=ALLOCATION_MAX_RETRIES)
            summary = job.run(scope_)
            return {"scope": scope_.as_dict(), **summary.as_dict()}

        return await _run_sync(lambda: self._in_transaction(work))

    # ─────────────────────────────────────────────
    # 7) 조회 / 점검
    # ─────────────────────────────────────────────
    async def get_variant(
        self,
        *,
        product_id: int,
        color: Optional[str] = None,
        size: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = VariantKey.of(product_id, color, size)

        def work() -> Dict[str, Any]:
            variant = self._ledger().find(key)
            if variant is None:
                raise DomainError(
                    "STOCK-NOTFOUND-101",
                    detail="재고 옵션을 찾을 수 없습니다.",
                    ctx={"page_id": PAGE_ID, **key.as_dict()},
                )
            return _variant_dict(variant)

        return await _run_sync(work)

    async def audit(self, *, product_id: Optional[int] = None, only_issues: bool = False) -> Dict[str, Any]:
        """행 값 / 이동이력 재생 / 주문품목 합계를 옵션별로 비교한 보고서. 예외를 던지지 않는다."""

        def work() -> Dict[str, Any]:
            ledger = self._ledger()

            variant_stmt = select(StockVariant.product_id, StockVariant.color, StockVariant.size)
            line_stmt = (
                select(OrderItem.product_id, OrderItem.color, OrderItem.size)
                .where(OrderItem.allocated_qty > 0)
                .distinct()
            )
            if product_id is not None:
                variant_stmt = variant_stmt.where(StockVariant.product_id == product_id)
                line_stmt = line_stmt.where(OrderItem.product_id == product_id)

            keys = {VariantKey.from_row(r) for r in self.session.execute(variant_stmt).all()}
            keys |= {VariantKey.from_row(r) for r in self.session.execute(line_stmt).all()}

            items: List[Dict[str, Any]] = []
            issue_count = 0
            for key in sorted(keys, key=VariantKey.sort_key):
                check = ledger.inspect(key)
                if not check.ok:
                    issue_count += 1
                elif only_issues:
                    continue
                items.append(check.as_dict())

            if issue_count:
                logger.warning("재고 원장 점검: 불일치 옵션 %s건 (product_id=%s)", issue_count, product_id)
            return {
                "checked": len(keys),
                "issue_count": issue_count,
                "items": items,
            }

        return await _run_sync(work)

# 📄 inventory_allocation/services/stock/stock_ledger.py
# 역할: 옵션(StockVariant)별 실재고/할당재고 변경 + 이동이력(stock_movement) 기록
# 단계: v2.0
#
# ✅ 원칙
# - 모든 재고 변경은 "조건부 UPDATE 1회"로 처리한다. (읽고-쓰기 2회 왕복 금지)
#     reserve : allocated_stock += q  WHERE physical_stock - allocated_stock >= q
#     release : allocated_stock -= q  WHERE allocated_stock >= q
#     adjust  : physical_stock  += d  WHERE physical_stock + d >= allocated_stock (d < 0 일 때)
# - 변경 1건마다 stock_movement 1행을 남긴다. (0 변경은 남기지 않음)
# - 가용재고가 음수로 보이면 보정하지 않고 LedgerInconsistency 로 올린다.
# - commit 은 하지 않는다. (트랜잭션 경계는 호출 서비스 소유)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_allocation.models import (
    ALLOCATION_MOVEMENT_TYPES,
    MOVEMENT_INBOUND,
    MOVEMENT_ORDER_ALLOCATION,
    MOVEMENT_OUTBOUND,
    PHYSICAL_MOVEMENT_TYPES,
    OrderItem,
    StockMovement,
    StockVariant,
)
from inventory_allocation.system.error_codes import (
    ConcurrentModification,
    DomainError,
    InsufficientAvailableStock,
    InsufficientPhysicalStock,
    LedgerInconsistency,
)
from inventory_allocation.system.timeutil import utc_now

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────
# 옵션 키
# ─────────────────────────────────────────────────────────
def _clean_option(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class VariantKey:
    """(product_id, color, size). 옵션 없는 상품은 color/size = None."""

    product_id: int
    color: Optional[str] = None
    size: Optional[str] = None

    @classmethod
    def of(cls, product_id: int, color: Optional[str] = None, size: Optional[str] = None) -> "VariantKey":
        try:
            pid = int(product_id)
        except (TypeError, ValueError):
            raise DomainError(
                "STOCK-VALID-001",
                detail="product_id는 정수여야 합니다.",
                ctx={"product_id": product_id},
            )
        if pid <= 0:
            raise DomainError(
                "STOCK-VALID-001",
                detail="product_id는 1 이상이어야 합니다.",
                ctx={"product_id": pid},
            )
        return cls(pid, _clean_option(color), _clean_option(size))

    @classmethod
    def from_row(cls, row) -> "VariantKey":
        return cls(int(row.product_id), _clean_option(row.color), _clean_option(row.size))

    def where(self, model):
        # NULL 옵션도 같은 키로 비교 (PostgreSQL: IS NOT DISTINCT FROM / SQLite: IS)
        return and_(
            model.product_id == self.product_id,
            model.color.is_not_distinct_from(self.color),
            model.size.is_not_distinct_from(self.size),
        )

    def as_dict(self) -> Dict[str, object]:
        return {"product_id": self.product_id, "color": self.color, "size": self.size}

    def sort_key(self) -> Tuple[int, str, str]:
        return (self.product_id, self.color or "", self.size or "")

    def __str__(self) -> str:
        return f"{self.product_id}/{self.color or '-'}/{self.size or '-'}"


# ─────────────────────────────────────────────────────────
# 원장 점검 결과
# ─────────────────────────────────────────────────────────
@dataclass
class LedgerCheck:
    key: VariantKey
    physical_stock: int
    allocated_stock: int
    replay_physical: int
    replay_allocated: int
    lines_allocated: int
    is_blocked: bool = False
    issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def as_dict(self) -> Dict[str, object]:
        return {
            **self.key.as_dict(),
            "physical_stock": self.physical_stock,
            "allocated_stock": self.allocated_stock,
            "available_stock": self.physical_stock - self.allocated_stock,
            "replay_physical": self.replay_physical,
            "replay_allocated": self.replay_allocated,
            "lines_allocated": self.lines_allocated,
            "is_blocked": self.is_blocked,
            "issues": list(self.issues),
        }


def _positive_int(value, field_name: str) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise DomainError(
            "STOCK-VALID-001",
            detail=f"{field_name}는 정수여야 합니다.",
            ctx={"field": field_name, "value": value},
        )
    if v <= 0:
        raise DomainError(
            "STOCK-VALID-001",
            detail=f"{field_name}는 1 이상이어야 합니다.",
            ctx={"field": field_name, "value": v},
        )
    return v


# ─────────────────────────────────────────────────────────
# Stock Ledger
# ─────────────────────────────────────────────────────────
class StockLedger:
    def __init__(self, session: Session, *, actor: str = "system"):
        self.session = session
        self.actor = actor or "system"

    # ── 조회 ──────────────────────────────────────────────
    def find(self, key: VariantKey, *, lock: bool = False) -> Optional[StockVariant]:
        stmt = (
            select(StockVariant)
            .where(key.where(StockVariant))
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalars().first()

    def get_or_create(self, key: VariantKey) -> StockVariant:
        variant = self.find(key)
        if variant is not None:
            return variant

        try:
            with self.session.begin_nested():
                variant = StockVariant(
                    product_id=key.product_id,
                    color=key.color,
                    size=key.size,
                    physical_stock=0,
                    allocated_stock=0,
                    version=0,
                    is_blocked=False,
                    updated_by=self.actor,
                )
                self.session.add(variant)
        except IntegrityError:
            # 동시에 다른 트랜잭션이 먼저 만든 경우
            variant = self.find(key)
            if variant is None:
                raise
        return variant

    def lock(self, keys: Iterable[VariantKey]) -> Dict[VariantKey, StockVariant]:
        """
        옵션 행들을 id 오름차순으로 FOR UPDATE 잠근다. (교착 방지용 고정 순서)
        없는 옵션은 (0, 0) 행으로 생성한 뒤 잠근다.
        """
        unique_keys = sorted(set(keys), key=VariantKey.sort_key)
        if not unique_keys:
            return {}

        ids = [self.get_or_create(k).id for k in unique_keys]
        stmt = (
            select(StockVariant)
            .where(StockVariant.id.in_(ids))
            .order_by(StockVariant.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = self.session.execute(stmt).scalars().all()
        return {VariantKey.from_row(v): v for v in rows}

    def get_available(self, key: VariantKey) -> int:
        """physical_stock - allocated_stock. 없는 옵션은 0."""
        variant = self.find(key)
        if variant is None:
            return 0

        available = variant.available_stock
        if available < 0 or variant.allocated_stock < 0:
            raise LedgerInconsistency(
                detail="할당재고가 실재고를 초과했습니다.",
                ctx={
                    **key.as_dict(),
                    "physical_stock": variant.physical_stock,
                    "allocated_stock": variant.allocated_stock,
                },
            )
        return available

    # ── 이력 ──────────────────────────────────────────────
    def _append(
        self,
        key: VariantKey,
        delta: int,
        movement_type: str,
        *,
        notes: Optional[str],
        reference_type: Optional[str],
        reference_id: Optional[int],
    ) -> StockMovement:
        movement = StockMovement(
            product_id=key.product_id,
            color=key.color,
            size=key.size,
            quantity_delta=int(delta),
            movement_type=movement_type,
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
            created_by=self.actor,
            created_at=utc_now(),
        )
        self.session.add(movement)
        self.session.flush()
        return movement

    # ── 실재고 조정 ───────────────────────────────────────
    def adjust_physical(
        self,
        key: VariantKey,
        delta: int,
        reason: Optional[str] = None,
        *,
        movement_type: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> StockMovement:
        try:
            delta = int(delta)
        except (TypeError, ValueError):
            raise DomainError("STOCK-VALID-001", detail="delta는 정수여야 합니다.", ctx={"delta": delta})
        if delta == 0:
            raise DomainError("STOCK-VALID-001", detail="delta는 0일 수 없습니다.", ctx=key.as_dict())

        movement_type = movement_type or (MOVEMENT_INBOUND if delta > 0 else MOVEMENT_OUTBOUND)
        if movement_type not in PHYSICAL_MOVEMENT_TYPES:
            raise DomainError(
                "STOCK-VALID-001",
                detail="실재고 조정에 사용할 수 없는 이동유형입니다.",
                ctx={"movement_type": movement_type},
            )

        variant = self.get_or_create(key) if delta > 0 else self.find(key)
        if variant is None:
            raise InsufficientPhysicalStock(
                detail="재고 행이 없어 차감할 수 없습니다.",
                ctx={**key.as_dict(), "physical_stock": 0, "delta": delta},
            )

        conditions = [StockVariant.id == variant.id]
        if delta < 0:
            # 음수 방지 + 이미 할당된 수량 아래로는 내리지 않는다
            conditions.append(StockVariant.physical_stock + delta >= StockVariant.allocated_stock)
            conditions.append(StockVariant.physical_stock + delta >= 0)

        stmt = (
            update(StockVariant)
            .where(*conditions)
            .values(
                physical_stock=StockVariant.physical_stock + delta,
                version=StockVariant.version + 1,
                updated_by=self.actor,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)

        if result.rowcount != 1:
            current = self.find(key)
            physical = current.physical_stock if current else 0
            allocated = current.allocated_stock if current else 0
            raise InsufficientPhysicalStock(
                detail="실재고가 부족하거나 할당재고 아래로 차감하려고 합니다.",
                ctx={**key.as_dict(), "physical_stock": physical, "allocated_stock": allocated, "delta": delta},
            )

        self.find(key)  # identity map 갱신
        return self._append(
            key,
            delta,
            movement_type,
            notes=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )

    # ── 할당(예약) ────────────────────────────────────────
    def reserve(
        self,
        key: VariantKey,
        quantity: int,
        *,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> StockMovement:
        quantity = _positive_int(quantity, "quantity")

        variant = self.find(key)
        if variant is None:
            raise InsufficientAvailableStock(
                detail="재고 행이 없습니다.",
                ctx={**key.as_dict(), "available_stock": 0, "requested": quantity},
            )
        if variant.is_blocked:
            raise LedgerInconsistency(
                detail="원장 불일치로 할당이 차단된 옵션입니다.",
                ctx={**key.as_dict(), "blocked_reason": variant.blocked_reason},
            )

        conditions = [
            StockVariant.id == variant.id,
            StockVariant.physical_stock - StockVariant.allocated_stock >= quantity,
            StockVariant.is_blocked.is_(False),
        ]
        if expected_version is not None:
            conditions.append(StockVariant.version == expected_version)

        stmt = (
            update(StockVariant)
            .where(*conditions)
            .values(
                allocated_stock=StockVariant.allocated_stock + quantity,
                version=StockVariant.version + 1,
                updated_by=self.actor,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)

        if result.rowcount != 1:
            current = self.find(key)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentModification(
                    detail="할당 중 다른 작업이 재고를 변경했습니다.",
                    ctx={**key.as_dict(), "expected_version": expected_version, "actual_version": current.version},
                )
            if current.is_blocked:
                raise LedgerInconsistency(
                    detail="원장 불일치로 할당이 차단된 옵션입니다.",
                    ctx={**key.as_dict(), "blocked_reason": current.blocked_reason},
                )
            raise InsufficientAvailableStock(
                detail="가용재고가 부족합니다.",
                ctx={**key.as_dict(), "available_stock": current.available_stock, "requested": quantity},
            )

        self.find(key)
        return self._append(
            key,
            -quantity,
            MOVEMENT_ORDER_ALLOCATION,
            notes=notes or "주문 할당",
            reference_type=reference_type,
            reference_id=reference_id,
        )

    # ── 할당 해제 ─────────────────────────────────────────
    def release(
        self,
        key: VariantKey,
        quantity: int,
        *,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[StockMovement]:
        """
        할당재고를 quantity 만큼 줄인다.
        할당재고보다 많이 요청하면 0 까지만 줄이고 경고를 남긴다. 실제 변경이 없으면 None.
        """
        quantity = _positive_int(quantity, "quantity")

        variant = self.find(key)
        allocated = variant.allocated_stock if variant else 0
        actual = min(quantity, max(allocated, 0))

        if quantity > allocated:
            logger.warning(
                "할당 해제 요청이 할당재고보다 큽니다: variant=%s requested=%s allocated=%s ref=%s:%s",
                key, quantity, allocated, reference_type, reference_id,
            )
        if actual == 0:
            return None

        conditions = [
            StockVariant.id == variant.id,
            StockVariant.allocated_stock >= actual,
        ]
        if expected_version is not None:
            conditions.append(StockVariant.version == expected_version)

        stmt = (
            update(StockVariant)
            .where(*conditions)
            .values(
                allocated_stock=StockVariant.allocated_stock - actual,
                version=StockVariant.version + 1,
                updated_by=self.actor,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)

        if result.rowcount != 1:
            current = self.find(key)
            raise ConcurrentModification(
                detail="할당 해제 중 다른 작업이 재고를 변경했습니다.",
                ctx={
                    **key.as_dict(),
                    "requested": actual,
                    "allocated_stock": current.allocated_stock if current else 0,
                    "expected_version": expected_version,
                },
            )

        self.find(key)
        return self._append(
            key,
            actual,
            MOVEMENT_ORDER_ALLOCATION,
            notes=notes or "주문 할당 해제",
            reference_type=reference_type,
            reference_id=reference_id,
        )

    # ── 재계산 전용 보정 ──────────────────────────────────
    def force_allocated(self, key: VariantKey, target: int, reason: str) -> Optional[StockMovement]:
        """
        allocated_stock 을 target 으로 직접 맞추고 차단을 해제한다.
        이동이력 재생값이 target 이 되도록 보정 이동이력을 남긴다. (이후 replay == 행 값)
        """
        variant = self.find(key, lock=True)
        if variant is None:
            if target == 0:
                return None
            variant = self.get_or_create(key)

        if target < 0 or target > variant.physical_stock:
            raise LedgerInconsistency(
                detail="보정 목표 할당재고가 실재고 범위를 벗어났습니다.",
                ctx={**key.as_dict(), "target": target, "physical_stock": variant.physical_stock},
            )

        row_drift = variant.allocated_stock - target
        _, replay_allocated = self.replay(key)
        compensation = replay_allocated - target

        self.session.execute(
            update(StockVariant)
            .where(StockVariant.id == variant.id)
            .values(
                allocated_stock=target,
                version=StockVariant.version + 1,
                is_blocked=False,
                blocked_reason=None,
                updated_by=self.actor,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        self.find(key)

        if row_drift or compensation:
            logger.warning(
                "할당재고 불일치 보정: variant=%s allocated=%s → %s (row_drift=%s, replay_drift=%s)",
                key, target + row_drift, target, row_drift, compensation,
            )
        if compensation == 0:
            return None

        # 할당 이동은 음수=예약, 양수=해제
        return self._append(
            key,
            compensation,
            MOVEMENT_ORDER_ALLOCATION,
            notes=reason,
            reference_type=None,
            reference_id=None,
        )

    def block(self, key: VariantKey, reason: str) -> None:
        variant = self.get_or_create(key)
        self.session.execute(
            update(StockVariant)
            .where(StockVariant.id == variant.id)
            .values(is_blocked=True, blocked_reason=reason, updated_by=self.actor, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.find(key)
        logger.error("옵션 할당 차단: variant=%s reason=%s", key, reason)

    def unblock(self, key: VariantKey) -> None:
        variant = self.find(key)
        if variant is None or not variant.is_blocked:
            return
        self.session.execute(
            update(StockVariant)
            .where(StockVariant.id == variant.id)
            .values(is_blocked=False, blocked_reason=None, updated_by=self.actor, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.find(key)
        logger.info("옵션 할당 차단 해제: variant=%s", key)

    # ── 원장 점검 ─────────────────────────────────────────
    def replay(self, key: VariantKey) -> Tuple[int, int]:
        """이동이력만으로 (physical_stock, allocated_stock) 을 다시 계산한다."""
        stmt = (
            select(StockMovement.movement_type, func.coalesce(func.sum(StockMovement.quantity_delta), 0))
            .where(key.where(StockMovement))
            .group_by(StockMovement.movement_type)
        )
        physical = 0
        allocated = 0
        for movement_type, total in self.session.execute(stmt).all():
            if movement_type in ALLOCATION_MOVEMENT_TYPES:
                allocated -= int(total)
            elif movement_type in PHYSICAL_MOVEMENT_TYPES:
                physical += int(total)
        return physical, allocated

    def allocated_by_lines(self, key: VariantKey) -> int:
        stmt = select(func.coalesce(func.sum(OrderItem.allocated_qty), 0)).where(key.where(OrderItem))
        return int(self.session.execute(stmt).scalar() or 0)

    def inspect(self, key: VariantKey) -> LedgerCheck:
        variant = self.find(key)
        physical = variant.physical_stock if variant else 0
        allocated = variant.allocated_stock if variant else 0
        replay_physical, replay_allocated = self.replay(key)

        check = LedgerCheck(
            key=key,
            physical_stock=physical,
            allocated_stock=allocated,
            replay_physical=replay_physical,
            replay_allocated=replay_allocated,
            lines_allocated=self.allocated_by_lines(key),
            is_blocked=bool(variant.is_blocked) if variant else False,
        )
        if physical < 0 or allocated < 0 or allocated > physical:
            check.issues.append("available_negative")
        if replay_physical != physical:
            check.issues.append("physical_drift")
        if replay_allocated != allocated:
            check.issues.append("allocated_replay_drift")
        if check.lines_allocated != allocated:
            check.issues.append("allocated_lines_drift")
        return check

    def verify(self, key: VariantKey) -> LedgerCheck:
        check = self.inspect(key)
        if not check.ok:
            raise LedgerInconsistency(
                detail="재고 원장 점검에 실패했습니다.",
                ctx=check.as_dict(),
            )
        return check

# 📄 tests/helpers.py
# 테스트 조회 헬퍼 (항상 DB 값으로 다시 읽는다)

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_allocation.models import OrderHeader, OrderItem, StockMovement, StockVariant
from inventory_allocation.services.stock.stock_ledger import StockLedger, VariantKey

# 2025-03-10 10:00 KST
BASE_TIME = datetime(2025, 3, 10, 1, 0, 0)


def variant_of(session: Session, product_id: int, *, color: Optional[str] = None, size: Optional[str] = None) -> StockVariant:
    key = VariantKey.of(product_id, color, size)
    return session.execute(
        select(StockVariant).where(key.where(StockVariant)).execution_options(populate_existing=True)
    ).scalar_one()


def lines_of(session: Session, order_id: int) -> List[OrderItem]:
    return list(
        session.execute(
            select(OrderItem)
            .where(OrderItem.header_id == order_id)
            .order_by(OrderItem.id)
            .execution_options(populate_existing=True)
        ).scalars()
    )


def status_of(session: Session, order_id: int) -> str:
    return session.execute(
        select(OrderHeader.status).where(OrderHeader.id == order_id)
    ).scalar_one()


def allocated_total(session: Session, product_id: int, *, color: Optional[str] = None, size: Optional[str] = None) -> int:
    key = VariantKey.of(product_id, color, size)
    return StockLedger(session).allocated_by_lines(key)


def movements_of(session: Session, product_id: int, movement_type: Optional[str] = None) -> List[StockMovement]:
    stmt = select(StockMovement).where(StockMovement.product_id == product_id).order_by(StockMovement.id)
    if movement_type:
        stmt = stmt.where(StockMovement.movement_type == movement_type)
    return list(session.execute(stmt).scalars())

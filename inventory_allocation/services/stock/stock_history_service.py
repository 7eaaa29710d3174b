# 📄 inventory_allocation/services/stock/stock_history_service.py
# 페이지: 재고 이동이력(HistoryPage)
# 역할: stock_movement 조회(필터/페이지) + 엑셀(xlsx) 내보내기
# 단계: v2.2 (stock_movement 기준으로 전환)
# PAGE_ID: stock.history
# PAGE_VERSION: v2.2

from __future__ import annotations

import base64
from io import BytesIO
from typing import Optional, Dict, Any, List
from datetime import datetime, date, timedelta

from openpyxl import Workbook
from sqlalchemy import select, and_, desc, func
from sqlalchemy.orm import Session

from inventory_allocation.models import MOVEMENT_TYPES, StockMovement
from inventory_allocation.system.error_codes import DomainError
from inventory_allocation.system.timeutil import KST_OFFSET

PAGE_ID = "stock.history"
PAGE_VERSION = "v2.2"

MOVEMENT_LABELS = {
    "inbound": "입고",
    "outbound": "출고",
    "order_allocation": "주문할당",
    "order_shipment": "주문출고",
    "initial_stock": "기초재고",
    "sample_out": "샘플출고",
    "adjustment": "실사조정",
    "return_in": "반품입고",
}

MAX_PAGE_SIZE = 500


class StockHistoryService:
    page_id: str = PAGE_ID
    page_version: str = PAGE_VERSION

    def __init__(self, *, session: Session, user: Optional[Dict[str, Any]]):
        if not isinstance(session, Session):
            raise DomainError(
                "SYSTEM-DB-901",
                detail="지원하지 않는 DB 세션 타입입니다.",
                ctx={"page_id": PAGE_ID, "session_type": str(type(session))},
            )
        self.session = session
        self.user = user or {}

    def _parse_date(self, value: Optional[str], field: str) -> Optional[date]:
        if not value:
            return None
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError:
            raise DomainError(
                "STOCK-VALID-001",
                detail=f"{field} 날짜 형식이 잘못되었습니다.",
                ctx={"value": value},
            )

    def _conditions(
        self,
        *,
        from_date: Optional[str],
        to_date: Optional[str],
        product_id: Optional[int],
        color: Optional[str],
        size: Optional[str],
        movement_type: Optional[str],
        reference_id: Optional[int],
    ) -> List[Any]:
        M = StockMovement
        conditions: List[Any] = []

        # 날짜 필터는 KST 달력 기준 → naive UTC 로 변환
        date_from = self._parse_date(from_date, "from_date")
        date_to = self._parse_date(to_date, "to_date")
        if date_from:
            conditions.append(M.created_at >= datetime.combine(date_from, datetime.min.time()) - KST_OFFSET)
        if date_to:
            conditions.append(
                M.created_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time()) - KST_OFFSET
            )

        if product_id is not None:
            conditions.append(M.product_id == product_id)
        if color:
            conditions.append(M.color == color.strip())
        if size:
            conditions.append(M.size == size.strip())
        if movement_type:
            if movement_type not in MOVEMENT_TYPES:
                raise DomainError(
                    "STOCK-VALID-001",
                    detail="알 수 없는 이동유형입니다.",
                    ctx={"movement_type": movement_type, "allowed": sorted(MOVEMENT_TYPES)},
                )
            conditions.append(M.movement_type == movement_type)
        if reference_id is not None:
            conditions.append(M.reference_id == reference_id)
        return conditions

    @staticmethod
    def _row_dict(m: StockMovement) -> Dict[str, Any]:
        return {
            "movement_id": m.id,
            "created_at": m.created_at.isoformat() if m.created_at else None,
            "movement_type": m.movement_type,
            "movement_label": MOVEMENT_LABELS.get(m.movement_type, m.movement_type),
            "product_id": m.product_id,
            "color": m.color,
            "size": m.size,
            "quantity_delta": m.quantity_delta,
            "reference_type": m.reference_type,
            "reference_id": m.reference_id,
            "notes": m.notes,
            "handler": m.created_by,
        }

    # ─────────────────────────────────────
    # 1) 이동이력 조회
    # ─────────────────────────────────────
    async def list_items(
        self,
        *,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        product_id: Optional[int] = None,
        color: Optional[str] = None,
        size: Optional[str] = None,
        movement_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        page: int = 1,
        size_per_page: int = 20,
    ) -> Dict[str, Any]:

        if page <= 0:
            raise DomainError(
                "STOCK-VALID-001",
                detail="page는 1 이상이어야 합니다.",
                ctx={"page": page},
            )
        if size_per_page <= 0 or size_per_page > MAX_PAGE_SIZE:
            raise DomainError(
                "STOCK-VALID-001",
                detail=f"size는 1 이상 {MAX_PAGE_SIZE} 이하여야 합니다.",
                ctx={"size": size_per_page},
            )

        conditions = self._conditions(
            from_date=from_date,
            to_date=to_date,
            product_id=product_id,
            color=color,
            size=size,
            movement_type=movement_type,
            reference_id=reference_id,
        )
        where_clause = and_(*conditions) if conditions else None

        count_stmt = select(func.count()).select_from(StockMovement)
        if where_clause is not None:
            count_stmt = count_stmt.where(where_clause)
        total_count = int(self.session.execute(count_stmt).scalar() or 0)

        if total_count == 0:
            return {"items": [], "count": 0, "page": page, "size": size_per_page}

        list_stmt = (
            select(StockMovement)
            .order_by(desc(StockMovement.created_at), desc(StockMovement.id))
            .offset((page - 1) * size_per_page)
            .limit(size_per_page)
        )
        if where_clause is not None:
            list_stmt = list_stmt.where(where_clause)

        rows = self.session.execute(list_stmt).scalars().all()
        return {
            "items": [self._row_dict(m) for m in rows],
            "count": total_count,
            "page": page,
            "size": size_per_page,
        }

    # ─────────────────────────────────────
    # 2) 엑셀 내보내기
    # ─────────────────────────────────────
    async def export_items(
        self,
        *,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        product_id: Optional[int] = None,
        color: Optional[str] = None,
        size: Optional[str] = None,
        movement_type: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> Dict[str, Any]:

        conditions = self._conditions(
            from_date=from_date,
            to_date=to_date,
            product_id=product_id,
            color=color,
            size=size,
            movement_type=movement_type,
            reference_id=reference_id,
        )

        stmt = select(StockMovement).order_by(desc(StockMovement.created_at), desc(StockMovement.id))
        if conditions:
            stmt = stmt.where(and_(*conditions))
        rows = self.session.execute(stmt).scalars().all()

        if not rows:
            raise DomainError(
                "STOCK-NOTFOUND-101",
                detail="엑셀로 내보낼 데이터가 없습니다.",
                ctx={"page_id": PAGE_ID},
            )

        wb = Workbook()
        ws = wb.active
        ws.title = "stock_movement"

        ws.append(
            [
                "처리일시(KST)",
                "구분",
                "상품ID",
                "색상",
                "사이즈",
                "수량",
                "참조유형",
                "참조ID",
                "메모",
                "처리자",
            ]
        )

        for m in rows:
            created_kst = (m.created_at + KST_OFFSET).strftime("%Y-%m-%d %H:%M:%S") if m.created_at else ""
            ws.append(
                [
                    created_kst,
                    MOVEMENT_LABELS.get(m.movement_type, m.movement_type),
                    m.product_id,
                    m.color or "",
                    m.size or "",
                    m.quantity_delta,
                    m.reference_type or "",
                    m.reference_id if m.reference_id is not None else "",
                    m.notes or "",
                    m.created_by or "",
                ]
            )

        buffer = BytesIO()
        wb.save(buffer)
        buffer.seek(0)

        content_base64 = base64.b64encode(buffer.read()).decode("utf-8")
        file_name = f"stock_movement_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"

        return {
            "file_name": file_name,
            "content_type": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "content_base64": content_base64,
            "count": len(rows),
        }

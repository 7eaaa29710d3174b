# 📄 inventory_allocation/routers/stock/stock_history.py
# 페이지: 재고 이동이력(HistoryPage)
# 역할: 프론트 요청 수신 → 가드/의존성 → 서비스 호출 → 응답 포맷 래핑
# 단계: v1.4 (stock_movement 기준)
# PAGE_ID: stock.history
# PAGE_VERSION: v1.4

from __future__ import annotations
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inventory_allocation.services.stock.stock_history_service import StockHistoryService
from inventory_allocation.db.session import get_sync_session
from inventory_allocation.security.guard import guard

# ─────────────────────────────────────────────────────────
# 페이지 메타
# ─────────────────────────────────────────────────────────
PAGE_ID = "stock.history"
PAGE_VERSION = "v1.4"

ROUTE_PREFIX = "/api/stock/history"
ROUTE_TAGS = ["stock-history"]

stock_history = APIRouter(prefix=ROUTE_PREFIX, tags=ROUTE_TAGS)
__all__ = ["stock_history"]

# ─────────────────────────────────────────────────────────
# 의존성: 인증/가드, 세션, 서비스 DI
# ─────────────────────────────────────────────────────────
def get_service(
    user: Optional[Dict[str, Any]] = Depends(guard),
    session: Session = Depends(get_sync_session),
) -> StockHistoryService:
    """
    서비스 DI.
    - 공용 guard에서 인증된 사용자 정보(user)를 받고,
    - get_sync_session으로 동기 DB 세션을 주입한다.
    """
    return StockHistoryService(session=session, user=user)

# ─────────────────────────────────────────────────────────
# 공통 응답 래퍼
# ─────────────────────────────────────────────────────────
class ResponseBase(BaseModel):
    ok: bool = True
    trace_id: Optional[str] = None


class ActionData(BaseModel):
    result: Dict[str, Any] = Field(default_factory=dict)


class ActionResponse(ResponseBase):
    data: ActionData


class PingResponse(ResponseBase):
    page: str
    version: str
    stage: str

# ─────────────────────────────────────────────────────────
# [system] 핑
# ─────────────────────────────────────────────────────────
@stock_history.get(
    "/ping",
    response_model=PingResponse,
    summary="[system] 페이지 헬스 체크",
)
def ping():
    return PingResponse(
        ok=True,
        page=PAGE_ID,
        version=PAGE_VERSION,
        stage="router+service+db",
    )

# ─────────────────────────────────────────────────────────
# 1) 이동이력 목록 조회
# ─────────────────────────────────────────────────────────
@stock_history.get(
    "/list",
    response_model=ActionResponse,
    summary="[read] 재고 이동이력 목록 조회",
)
async def list_items(
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    product_id: Optional[int] = None,
    color: Optional[str] = None,
    size: Optional[str] = None,
    movement_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
    svc: StockHistoryService = Depends(get_service),
):
    result = await svc.list_items(
        from_date=from_date,
        to_date=to_date,
        product_id=product_id,
        color=color,
        size=size,
        movement_type=movement_type,
        reference_id=reference_id,
        page=page,
        size_per_page=page_size,
    )
    return ActionResponse(ok=True, data=ActionData(result=result))

# ─────────────────────────────────────────────────────────
# 2) 엑셀 내보내기
# ─────────────────────────────────────────────────────────
@stock_history.get(
    "/export",
    response_model=ActionResponse,
    summary="[read] 재고 이동이력 엑셀 내보내기",
)
async def export_items(
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    product_id: Optional[int] = None,
    color: Optional[str] = None,
    size: Optional[str] = None,
    movement_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    svc: StockHistoryService = Depends(get_service),
):
    result = await svc.export_items(
        from_date=from_date,
        to_date=to_date,
        product_id=product_id,
        color=color,
        size=size,
        movement_type=movement_type,
        reference_id=reference_id,
    )
    return ActionResponse(ok=True, data=ActionData(result=result))

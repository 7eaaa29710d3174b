# 📄 inventory_allocation/routers/stock/stock_ledger.py
# 페이지: 재고 원장(옵션별 실재고/할당재고)
# 역할: 옵션 조회 / 실재고 조정(입고·출고·실사·반품·샘플) / 원장 점검
# 단계: v2.0
# PAGE_ID: stock.ledger
# PAGE_VERSION: v2.0

from __future__ import annotations
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inventory_allocation.services.allocation.allocation_service import AllocationService
from inventory_allocation.db.session import get_sync_session
from inventory_allocation.security.guard import guard

PAGE_ID = "stock.ledger"
PAGE_VERSION = "v2.0"

ROUTE_PREFIX = "/api/stock/ledger"
ROUTE_TAGS = ["stock-ledger"]

stock_ledger = APIRouter(prefix=ROUTE_PREFIX, tags=ROUTE_TAGS)
__all__ = ["stock_ledger"]


def get_service(
    user: Optional[Dict[str, Any]] = Depends(guard),
    session: Session = Depends(get_sync_session),
) -> AllocationService:
    return AllocationService(session=session, user=user)


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


class AdjustBody(BaseModel):
    product_id: int = Field(..., gt=0)
    color: Optional[str] = None
    size: Optional[str] = None
    delta: int = Field(..., description="양수: 입고/반품, 음수: 출고/샘플")
    reason: Optional[str] = Field(default=None, max_length=500)
    movement_type: Optional[str] = Field(
        default=None,
        description="inbound | outbound | initial_stock | sample_out | adjustment | return_in",
    )
    policy: Optional[str] = None


@stock_ledger.get(
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


@stock_ledger.get(
    "/variant",
    response_model=ActionResponse,
    summary="[read] 옵션 재고 조회",
)
async def get_variant(
    product_id: int,
    color: Optional[str] = None,
    size: Optional[str] = None,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.get_variant(product_id=product_id, color=color, size=size)
    return ActionResponse(ok=True, data=ActionData(result=result))


@stock_ledger.post(
    "/adjust",
    response_model=ActionResponse,
    summary="[action] 실재고 조정 (입고 시 자동 할당)",
)
async def adjust(
    body: AdjustBody,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.on_physical_stock_changed(
        product_id=body.product_id,
        color=body.color,
        size=body.size,
        delta=body.delta,
        reason=body.reason,
        movement_type=body.movement_type,
        policy=body.policy,
    )
    return ActionResponse(ok=True, data=ActionData(result=result))


@stock_ledger.get(
    "/audit",
    response_model=ActionResponse,
    summary="[read] 원장 점검 (행 값 / 이동이력 / 주문 할당 합계 비교)",
)
async def audit(
    product_id: Optional[int] = None,
    only_issues: bool = False,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.audit(product_id=product_id, only_issues=only_issues)
    return ActionResponse(ok=True, data=ActionData(result=result))

# 📄 inventory_allocation/routers/allocation/allocation.py
# 페이지: 재고 할당 엔진
# 역할: 외부 협력자 요청 수신 → 가드/의존성 → 서비스 호출 → 응답 포맷 래핑
# 단계: v2.0
# PAGE_ID: allocation.engine
# PAGE_VERSION: v2.0

from __future__ import annotations
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inventory_allocation.services.allocation.allocation_service import AllocationService
from inventory_allocation.db.session import get_sync_session
from inventory_allocation.security.guard import guard

# ─────────────────────────────────────────────────────────
# 페이지 메타
# ─────────────────────────────────────────────────────────
PAGE_ID = "allocation.engine"
PAGE_VERSION = "v2.0"

ROUTE_PREFIX = "/api/allocation"
ROUTE_TAGS = ["allocation"]

allocation = APIRouter(prefix=ROUTE_PREFIX, tags=ROUTE_TAGS)
__all__ = ["allocation"]

# ─────────────────────────────────────────────────────────
# 의존성: 인증/가드, 세션, 서비스 DI
# ─────────────────────────────────────────────────────────
def get_service(
    user: Optional[Dict[str, Any]] = Depends(guard),
    session: Session = Depends(get_sync_session),
) -> AllocationService:
    return AllocationService(session=session, user=user)

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
# 요청 바디
# ─────────────────────────────────────────────────────────
class PolicyBody(BaseModel):
    policy: Optional[str] = Field(default=None, description="fifo | priority (생략 시 기본 정책)")


class ShipBody(BaseModel):
    quantity: int = Field(..., gt=0, description="출고 수량")


class VariantAllocateBody(PolicyBody):
    product_id: int = Field(..., gt=0)
    color: Optional[str] = None
    size: Optional[str] = None


class ReconcileBody(PolicyBody):
    scope: str = Field(..., description="product | day | all")
    product_id: Optional[int] = None
    business_day: Optional[str] = Field(default=None, description="YYYY-MM-DD (day 범위, 생략 시 오늘)")

# ─────────────────────────────────────────────────────────
# [system] 핑
# ─────────────────────────────────────────────────────────
@allocation.get(
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
# 1) 주문 접수 → 할당
# ─────────────────────────────────────────────────────────
@allocation.post(
    "/orders/{order_id}/allocate",
    response_model=ActionResponse,
    summary="[action] 신규 주문 할당",
)
async def allocate_order(
    order_id: int,
    body: Optional[PolicyBody] = None,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.on_order_created(order_id=order_id, policy=body.policy if body else None)
    return ActionResponse(ok=True, data=ActionData(result=result))

# ─────────────────────────────────────────────────────────
# 2) 주문 취소 → 할당 해제
# ─────────────────────────────────────────────────────────
@allocation.post(
    "/orders/{order_id}/cancel",
    response_model=ActionResponse,
    summary="[action] 주문 취소 및 할당 해제",
)
async def cancel_order(
    order_id: int,
    body: Optional[PolicyBody] = None,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.on_order_cancelled(order_id=order_id, policy=body.policy if body else None)
    return ActionResponse(ok=True, data=ActionData(result=result))

# ─────────────────────────────────────────────────────────
# 3) 출고 소진
# ─────────────────────────────────────────────────────────
@allocation.post(
    "/items/{order_item_id}/ship",
    response_model=ActionResponse,
    summary="[action] 할당 수량 출고 처리",
)
async def ship_item(
    order_item_id: int,
    body: ShipBody,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.ship_allocated(order_item_id=order_item_id, quantity=body.quantity)
    return ActionResponse(ok=True, data=ActionData(result=result))

# ─────────────────────────────────────────────────────────
# 4) 옵션 수동 할당
# ─────────────────────────────────────────────────────────
@allocation.post(
    "/variant",
    response_model=ActionResponse,
    summary="[action] 옵션 단위 수동 할당",
)
async def allocate_variant(
    body: VariantAllocateBody,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.allocate_variant(
        product_id=body.product_id,
        color=body.color,
        size=body.size,
        policy=body.policy,
    )
    return ActionResponse(ok=True, data=ActionData(result=result))

# ─────────────────────────────────────────────────────────
# 5) 재계산
# ─────────────────────────────────────────────────────────
@allocation.post(
    "/reconcile",
    response_model=ActionResponse,
    summary="[action] 할당 초기화 후 재할당",
)
async def reconcile(
    body: ReconcileBody,
    svc: AllocationService = Depends(get_service),
):
    result = await svc.reconcile(
        scope=body.scope,
        product_id=body.product_id,
        business_day=body.business_day,
        policy=body.policy,
    )
    return ActionResponse(ok=True, data=ActionData(result=result))

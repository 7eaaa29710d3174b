# 📄 inventory_allocation/system/error_codes.py
# 목적: 프로젝트 공통 에러 코드·메시지·HTTP 상태 정규화 + 전역 핸들링
# 규칙: <DOMAIN>-<TYPE>-<NNN>
#   - DOMAIN: AUTH, STOCK, ALLOC, ORDER, SYSTEM
#   - TYPE:   VALID, NOTFOUND, CONFLICT, DENY, TOKEN, STATE, CONFIG, DB, UNKNOWN
#   - NNN 대역: VALID 001-099, NOTFOUND 100-199, CONFLICT 200-299,
#               DENY/TOKEN 300-399, STATE 451-499, CONFIG 800-899,
#               DB 900-949, UNKNOWN 950-999
# 사용:
#   - 서비스: raise DomainError(code, detail=..., ctx=...)  → 전역핸들러가 HTTP 변환
#   - 재고 엔진: InsufficientPhysicalStock / InsufficientAvailableStock /
#                LedgerInconsistency / ConcurrentModification (DomainError 하위 클래스)
#   - 앱 시작 시: register_global_handlers(app) 한 줄로 전역 핸들러 장착
# 상태: v3.0

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Tuple
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────
# 타입 정의
# ─────────────────────────────────────────────────────────
ErrorStage = Literal["router", "service"]

ERROR_SPEC_VERSION = "v3.0"
_CODE_PATTERN = re.compile(
    r"^(AUTH|STOCK|ALLOC|ORDER|SYSTEM)-"
    r"(VALID|NOTFOUND|CONFLICT|DENY|TOKEN|STATE|CONFIG|DB|UNKNOWN)-\d{3}$"
)


@dataclass(frozen=True)
class ErrorSpec:
    http: int
    message: str
    hint: str


# ─────────────────────────────────────────────────────────
# 레지스트리: 공통 기본 세트
# ─────────────────────────────────────────────────────────
REGISTRY: Dict[str, ErrorSpec] = {
    # SYSTEM
    "SYSTEM-VALID-001":   ErrorSpec(422, "요청 값이 유효하지 않습니다", "입력값을 확인하세요."),
    "SYSTEM-NOTFOUND-101": ErrorSpec(404, "대상을 찾을 수 없습니다", "식별자를 확인하세요."),
    "SYSTEM-CONFIG-801":  ErrorSpec(500, "서버 설정이 올바르지 않습니다", "관리자에게 문의하세요"),
    "SYSTEM-DB-901":      ErrorSpec(500, "데이터 처리 중 오류가 발생했습니다", "관리자에게 문의하세요"),
    "SYSTEM-UNKNOWN-999": ErrorSpec(500, "처리 중 오류가 발생했습니다", "잠시 후 다시 시도하세요"),

    # AUTH
    "AUTH-DENY-301":  ErrorSpec(403, "권한이 없습니다", "권한이 있는 계정으로 시도하세요."),
    "AUTH-TOKEN-311": ErrorSpec(401, "인증이 필요합니다", "다시 로그인하세요."),
    "AUTH-TOKEN-312": ErrorSpec(401, "토큰이 만료되었습니다", "다시 로그인하세요."),
    "AUTH-TOKEN-313": ErrorSpec(401, "토큰 타입이 올바르지 않습니다", "access 토큰을 사용하세요."),

    # STOCK
    "STOCK-VALID-001":     ErrorSpec(422, "요청 값이 유효하지 않습니다", "입력값을 확인하세요."),
    "STOCK-NOTFOUND-101":  ErrorSpec(404, "재고 정보를 찾을 수 없습니다", "상품/옵션을 확인하세요."),
    "STOCK-CONFLICT-202":  ErrorSpec(409, "다른 작업과 재고 변경이 충돌했습니다", "잠시 후 다시 시도하세요."),
    "STOCK-STATE-452":     ErrorSpec(409, "실재고가 부족합니다", "실재고/할당재고를 확인하세요."),
    "STOCK-STATE-453":     ErrorSpec(409, "가용재고가 부족하여 일부만 할당되었습니다", "입고 후 다시 할당하세요."),
    "STOCK-STATE-454":     ErrorSpec(500, "재고 원장이 일치하지 않습니다", "재고 재계산(재할당)을 실행하세요."),

    # ALLOC
    "ALLOC-VALID-001":    ErrorSpec(422, "요청 값이 유효하지 않습니다", "입력값을 확인하세요."),
    "ALLOC-NOTFOUND-101": ErrorSpec(404, "할당 대상을 찾을 수 없습니다", "조건을 확인하세요."),

    # ORDER
    "ORDER-VALID-001":    ErrorSpec(422, "요청 값이 유효하지 않습니다", "입력값을 확인하세요."),
    "ORDER-NOTFOUND-101": ErrorSpec(404, "주문을 찾을 수 없습니다", "주문번호를 확인하세요."),
    "ORDER-STATE-451":    ErrorSpec(409, "현재 주문 상태에서는 허용되지 않습니다", "주문 상태를 확인하세요."),
}

# ─────────────────────────────────────────────────────────
# 유틸
# ─────────────────────────────────────────────────────────

def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

def _normalize_code(code: str) -> str:
    # 공백 제거, 대문자 변환
    c = (code or "").strip().upper()
    if not _CODE_PATTERN.match(c):
        return "SYSTEM-UNKNOWN-999"
    return c

def _lookup(code: str) -> Tuple[str, ErrorSpec]:
    c = _normalize_code(code)
    return c, REGISTRY.get(c, REGISTRY["SYSTEM-UNKNOWN-999"])

def add_registry(overrides: Dict[str, ErrorSpec]) -> None:
    """
    레지스트리를 런타임에 확장하거나 덮어쓴다.
    사용 예: add_registry({"ORDER-NOTFOUND-102": ErrorSpec(404, "주문 품목이 없습니다", "품목 id를 확인하세요")})
    """
    for k, v in overrides.items():
        REGISTRY[_normalize_code(k)] = v

# ─────────────────────────────────────────────────────────
# 도메인 예외: 서비스는 이 예외만 던진다
# ─────────────────────────────────────────────────────────
class DomainError(Exception):
    """
    서비스 계층 전용 도메인 예외.
    메시지 조립, HTTP 상태 결정은 하지 않는다.
    """
    def __init__(
        self,
        code: str,
        *,
        detail: str = "",
        ctx: Optional[dict] = None,
        stage: ErrorStage = "service",
        domain: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> None:
        self.code = _normalize_code(code)
        self.detail = detail
        self.ctx = ctx or {}
        self.stage = stage
        self.domain = domain
        self.trace_id = trace_id  # 없으면 핸들러에서 생성
        super().__init__(self.code)


# ─────────────────────────────────────────────────────────
# 재고 엔진 예외: 코드가 고정된 DomainError
# ─────────────────────────────────────────────────────────
class _FixedCodeError(DomainError):
    CODE = "SYSTEM-UNKNOWN-999"

    def __init__(self, *, detail: str = "", ctx: Optional[dict] = None, **kwargs: Any) -> None:
        super().__init__(self.CODE, detail=detail, ctx=ctx, **kwargs)


class InsufficientPhysicalStock(_FixedCodeError):
    """실재고 조정 결과가 음수(또는 할당재고 미만)가 되는 경우. 부분 반영 없이 거절."""
    CODE = "STOCK-STATE-452"


class InsufficientAvailableStock(_FixedCodeError):
    """reserve() 요청 수량을 가용재고로 전부 채울 수 없는 경우. 할당기 내부에서 흡수된다."""
    CODE = "STOCK-STATE-453"


class LedgerInconsistency(_FixedCodeError):
    """원장 불변식 위반(allocated > physical 등). 해당 옵션은 재계산 전까지 할당 차단."""
    CODE = "STOCK-STATE-454"


class ConcurrentModification(_FixedCodeError):
    """reserve()/release() 의 CAS 경합 패배. 재시도 소진 시 호출자에게 전달된다."""
    CODE = "STOCK-CONFLICT-202"


# ─────────────────────────────────────────────────────────
# 에러 바디 빌더
# ─────────────────────────────────────────────────────────
def build_error(
    code: str,
    *,
    detail: str = "",
    ctx: Optional[dict] = None,
    stage: ErrorStage = "service",
    domain: Optional[str] = None,
    trace_id: Optional[str] = None,
) -> Tuple[int, dict]:
    """
    반환값: (http_status, body)
    body:
    {
      "ok": False,
      "error": {
        "code": "...",
        "message": "...",
        "hint": "...",
        "detail": "...",
        "ctx": {...},
        "stage": "router" | "service",
        "domain": "allocation.engine",
        "trace_id": "req-...",
        "timestamp": "UTC ISO8601Z"
      },
      "meta": {"spec_version": "v3.0"}
    }
    """
    code_norm, spec = _lookup(code)
    body = {
        "ok": False,
        "error": {
            "code": code_norm,
            "message": spec.message,
            "hint": spec.hint,
            "detail": detail,
            "ctx": ctx or {},
            "stage": stage,
            "domain": domain,
            "trace_id": trace_id or f"req-{uuid4().hex}",
            "timestamp": _utc_now_iso(),
        },
        "meta": {"spec_version": ERROR_SPEC_VERSION},
    }
    return spec.http, body

def raise_http_exception(
    code: str,
    *,
    detail: str = "",
    ctx: Optional[dict] = None,
    stage: ErrorStage = "router",
    domain: Optional[str] = None,
    trace_id: Optional[str] = None,
):
    """라우터에서 즉시 HTTPException 으로 변환해 던진다."""
    status, body = build_error(
        code, detail=detail, ctx=ctx, stage=stage, domain=domain, trace_id=trace_id
    )
    raise HTTPException(status_code=status, detail=body)

# ─────────────────────────────────────────────────────────
# 예외 → 표준 에러로 매핑
# ─────────────────────────────────────────────────────────
def map_exception(exc: Exception) -> Tuple[int, dict]:
    """
    임의의 예외를 표준 에러 바디로 변환한다.
    - DomainError: 선언된 코드 사용
    - ValueError, KeyError: VALID 422
    - FileNotFoundError: NOTFOUND 404
    - PermissionError: AUTH DENY 403
    - IntegrityError(문자열로 탐지): SYSTEM DB 500
    - 그 외: SYSTEM UNKNOWN 500
    """
    if isinstance(exc, DomainError):
        return build_error(
            exc.code,
            detail=exc.detail,
            ctx=exc.ctx,
            stage=exc.stage,
            domain=exc.domain,
            trace_id=exc.trace_id,
        )

    name = exc.__class__.__name__
    msg = str(exc)

    if name in ("ValueError", "TypeError", "AssertionError", "KeyError"):
        return build_error("SYSTEM-VALID-001", detail=msg, ctx={"exc": name})
    if name in ("FileNotFoundError",):
        return build_error("SYSTEM-NOTFOUND-101", detail=msg, ctx={"exc": name})
    if name in ("PermissionError",):
        return build_error("AUTH-DENY-301", detail=msg, ctx={"exc": name})

    # SQLAlchemy IntegrityError 탐지(직접 임포트 없이 문자열로)
    if "IntegrityError" in name or "IntegrityError" in msg:
        return build_error("SYSTEM-DB-901", detail=msg, ctx={"exc": name})

    return build_error("SYSTEM-UNKNOWN-999", detail=msg, ctx={"exc": name})

# ─────────────────────────────────────────────────────────
# FastAPI 전역 핸들러 등록
# ─────────────────────────────────────────────────────────
def register_global_handlers(app: FastAPI) -> None:
    """
    앱 부팅 시 1회 호출:
        from inventory_allocation.system.error_codes import register_global_handlers
        register_global_handlers(app)
    """

    @app.exception_handler(DomainError)
    async def _domain_error_handler(request: Request, exc: DomainError):
        status, body = map_exception(exc)
        if status >= 500:
            logger.error("도메인 오류 %s: %s ctx=%s", exc.code, exc.detail, exc.ctx)
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(HTTPException)  # 라우터에서 직접 raise한 경우
    async def _http_exception_handler(request: Request, exc: HTTPException):
        # detail이 우리가 만든 포맷이면 그대로 사용, 아니면 표준 바디로 감싼다
        if isinstance(exc.detail, dict) and "error" in exc.detail and "ok" in exc.detail:
            return JSONResponse(status_code=exc.status_code, content=exc.detail)
        status, body = build_error(
            "SYSTEM-UNKNOWN-999",
            detail=str(exc.detail),
            ctx={"status_code": exc.status_code},
            stage="router",
        )
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(Exception)  # 최후의 보루
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("처리되지 않은 예외: %s", exc)
        status, body = map_exception(exc)
        return JSONResponse(status_code=status, content=body)

# 📄 inventory_allocation/security/jwt_tokens.py
# 역할: JWT access 토큰 검증
# 주의:
# - 토큰 발급은 외부 회원 시스템 담당. 여기서는 decode 만 한다.
# - 환경변수 기반 설정 (JWT_SECRET_KEY, JWT_ALGORITHM) → system/config.py
# - PyJWT 사용

from __future__ import annotations

from typing import Any, Dict

import jwt

from inventory_allocation.system import config
from inventory_allocation.system.error_codes import DomainError


def _get_secret() -> str:
    """
    JWT 서명 검증에 사용할 시크릿 키 가져오기.
    설정되지 않았으면 DomainError로 처리.
    """
    if not config.JWT_SECRET_KEY:
        raise DomainError(
            "SYSTEM-CONFIG-801",
            detail="JWT_SECRET_KEY 환경변수가 설정되지 않았습니다.",
            ctx={"env": "JWT_SECRET_KEY"},
        )
    return config.JWT_SECRET_KEY


# ─────────────────────────────────────────────────────────
# 토큰 검증 (decode)
# ─────────────────────────────────────────────────────────
def _decode_token(token: str, expected_type: str) -> Dict[str, Any]:
    """
    공통 decode 로직
    - type(access / refresh)도 함께 검증
    """
    try:
        payload = jwt.decode(token, _get_secret(), algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise DomainError(
            "AUTH-TOKEN-312",
            detail="토큰이 만료되었습니다.",
            ctx={"type": expected_type},
        )
    except jwt.InvalidTokenError as e:
        raise DomainError(
            "AUTH-TOKEN-311",
            detail="유효하지 않은 토큰입니다.",
            ctx={"type": expected_type, "error": str(e)},
        )

    token_type = payload.get("type")
    if token_type != expected_type:
        raise DomainError(
            "AUTH-TOKEN-313",
            detail="토큰 타입이 올바르지 않습니다.",
            ctx={"expected": expected_type, "actual": token_type},
        )

    return payload


def decode_access_token(token: str) -> Dict[str, Any]:
    return _decode_token(token, "access")

# 📄 inventory_allocation/security/guard.py
# 역할: JWT 기반 인증 가드
# - 개발 모드(AUTH_REQUIRED=false): 토큰 검사 생략, None 반환
# - 운영 모드(AUTH_REQUIRED=true): Authorization: Bearer <access_token> 필수
#   * access_token 디코딩 및 검증
#   * 실패 시 DomainError로 통일

from __future__ import annotations

from typing import Optional, Dict, Any

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from inventory_allocation.security.jwt_tokens import decode_access_token
from inventory_allocation.system import config
from inventory_allocation.system.error_codes import DomainError

_bearer = HTTPBearer(auto_error=False)


def guard(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Optional[Dict[str, Any]]:
    """
    공통 인증 가드.

    개발 모드(AUTH_REQUIRED=false):
        - 토큰이 없어도 통과, user 는 None
        - 서비스는 user 가 None 이면 처리자를 "system" 으로 기록한다

    운영 모드(AUTH_REQUIRED=true):
        - Authorization 헤더 필수 (Bearer 토큰)
        - 실패 시 DomainError(AUTH-TOKEN-3XX) 발생
        - 성공 시 JWT payload(dict) 반환
          예: {"sub": "3", "username": "admin", "role": "admin", "type": "access", ...}
    """
    if not config.AUTH_REQUIRED:
        return None

    if credentials is None or not credentials.credentials:
        raise DomainError(
            "AUTH-TOKEN-311",
            detail="인증 토큰이 필요합니다.",
            ctx={"location": "header.Authorization"},
        )

    return decode_access_token(credentials.credentials)

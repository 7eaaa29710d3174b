# 📄 inventory_allocation/db/session.py
# 목적: 동기(Session) 세션팩토리 제공
# 규칙: 재고 할당은 행 잠금(SELECT ... FOR UPDATE) + 조건부 UPDATE 를 쓰므로 동기 세션으로 고정한다.
#       async 라우터에서는 서비스가 anyio 스레드로 넘겨 실행한다.

from __future__ import annotations

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session

from inventory_allocation.system.config import DB_URL_SYNC

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# Sync 엔진/세션팩토리
# ─────────────────────────────────────────────────────────────
sync_engine = create_engine(
    DB_URL_SYNC,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    echo=False,
)
SessionLocal = sessionmaker(
    bind=sync_engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    class_=Session,
)

def get_sync_session():
    """
    동기 세션 의존성
    라우터에서: `db: Session = Depends(get_sync_session)`
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def ping_sync() -> bool:
    """
    동기 커넥션 헬스체크
    """
    try:
        with sync_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.warning("DB ping 실패: %s", exc)
        return False

# ─────────────────────────────────────────────────────────────
# 종료 훅: 애플리케이션 종료 시 커넥션 풀 정리에 사용
# ─────────────────────────────────────────────────────────────
def dispose_sync_engine() -> None:
    sync_engine.dispose()

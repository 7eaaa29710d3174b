# 📄 inventory_allocation/main.py
# 실행: uvicorn inventory_allocation.main:app --host 0.0.0.0 --port 8000

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware

from inventory_allocation.system.config import CORS_ORIGINS, LOG_LEVEL
from inventory_allocation.system.error_codes import register_global_handlers
from inventory_allocation.db.session import dispose_sync_engine, ping_sync

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("inventory-allocation 시작")
    yield
    # 종료 시 커넥션 풀 정리
    dispose_sync_engine()
    logger.info("inventory-allocation 종료")


app = FastAPI(
    title="inventory-allocation",
    version="2.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

register_global_handlers(app)

# ─────────────────────────────────────────────
# CORS
#  - localhost 계열은 정규식으로 통째로 허용 (http/https + 포트 유무)
#  - 그 외 도메인은 CORS_ORIGINS 환경변수
# ─────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=r"^https?://localhost(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}

system_router = APIRouter(prefix="/api/system", tags=["system"])

@system_router.get("/ping")
def system_ping():
    return {"ok": True, "data": "pong"}

@system_router.get("/health")
def api_system_health():
    db_ok = ping_sync()
    return {
        "ok": db_ok,
        "service": "inventory-allocation",
        "status": "healthy" if db_ok else "degraded",
    }

app.include_router(system_router)

from inventory_allocation.routers.allocation.allocation import allocation
app.include_router(allocation)

from inventory_allocation.routers.stock.stock_ledger import stock_ledger
app.include_router(stock_ledger)

from inventory_allocation.routers.stock.stock_history import stock_history
app.include_router(stock_history)

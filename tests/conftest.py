# 📄 tests/conftest.py
# 공통 픽스처: SQLite 메모리 DB(StaticPool) + 팩토리
# SQLite SAVEPOINT 가 동작하도록 pysqlite 트랜잭션 처리를 직접 제어한다.

from __future__ import annotations

import itertools
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

# 앱 모듈 임포트 전에 테스트 환경 고정 (.env 값보다 우선)
os.environ["AUTH_REQUIRED"] = "false"
os.environ["ALLOCATION_DEFAULT_POLICY"] = "fifo"
os.environ["ALLOCATION_MAX_RETRIES"] = "3"
os.environ["BUSINESS_DAY_CUTOFF_HOUR"] = "15"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inventory_allocation.models import (
    MOVEMENT_INITIAL_STOCK,
    Base,
    Customer,
    OrderHeader,
    OrderItem,
    StockVariant,
)
from inventory_allocation.services.stock.stock_ledger import StockLedger, VariantKey
from tests.helpers import BASE_TIME, variant_of


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine) -> Session:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)
    db = factory()
    yield db
    db.close()


@pytest.fixture
def ledger(session) -> StockLedger:
    return StockLedger(session, actor="tester")


# ─────────────────────────────────────────────
# 팩토리
# ─────────────────────────────────────────────
@pytest.fixture
def make_customer(session):
    counter = itertools.count(1)

    def _make(*, user_type: Optional[str] = "retailer", priority_level: Optional[int] = None) -> Customer:
        customer = Customer(
            company_name=f"거래처{next(counter)}",
            user_type=user_type,
            priority_level=priority_level,
        )
        session.add(customer)
        session.commit()
        return customer

    return _make


@pytest.fixture
def make_order(session, make_customer):
    counter = itertools.count(1)

    def _make(
        lines: List[Dict[str, Any]],
        *,
        customer: Optional[Customer] = None,
        created_at: Optional[datetime] = None,
        total_amount: Decimal = Decimal("100000"),
        status: str = "pending",
    ) -> OrderHeader:
        n = next(counter)
        customer = customer or make_customer()
        header = OrderHeader(
            order_number=f"PO20250310-{n:04d}",
            customer_id=customer.id,
            total_amount=total_amount,
            status=status,
            created_at=created_at or BASE_TIME + timedelta(minutes=n),
        )
        session.add(header)
        session.flush()
        for line in lines:
            session.add(
                OrderItem(
                    header_id=header.id,
                    product_id=line["product_id"],
                    product_name=line.get("product_name", f"상품{line['product_id']}"),
                    color=line.get("color"),
                    size=line.get("size"),
                    qty=line["qty"],
                    allocated_qty=line.get("allocated_qty", 0),
                    shipped_qty=line.get("shipped_qty", 0),
                    unit_price=Decimal("10000"),
                )
            )
        session.commit()
        return header

    return _make


@pytest.fixture
def make_stock(session):
    def _make(product_id: int, physical: int, *, color: Optional[str] = None, size: Optional[str] = None) -> StockVariant:
        key = VariantKey.of(product_id, color, size)
        StockLedger(session, actor="tester").adjust_physical(
            key, physical, "기초재고", movement_type=MOVEMENT_INITIAL_STOCK
        )
        session.commit()
        return variant_of(session, product_id, color=color, size=size)

    return _make



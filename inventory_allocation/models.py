# 📄 inventory_allocation/models.py
# 목적: 재고 할당 엔진 DB 스펙 v2.0 SQLAlchemy 모델 정의
# 기준 스키마: customer / order_header / order_item / stock_variant / stock_movement
#
# ✅ 기본 원칙 (v2.0)
# 1) 재고는 (product_id, color, size) 단위의 stock_variant 행으로 관리한다.
#    옵션이 없는 상품은 (product_id, NULL, NULL) 한 행을 사용한다.
# 2) 가용재고(available)는 저장하지 않는다. 항상 physical_stock - allocated_stock 으로 계산한다.
# 3) stock_movement 는 이력 보존용 append-only 테이블이다. (수정/삭제 없음, deleted_at 없음)
# 4) 주문 정렬 기준은 order_header.created_at 단 하나다. (생성 후 변경 금지)
# 5) 고객 등급/우선순위는 외부 회원 시스템의 값을 customer 테이블로 투영해 사용한다.

from __future__ import annotations

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Numeric,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


# ─────────────────────────────────────────────
# 상수: 이동유형 / 주문상태
# ─────────────────────────────────────────────
MOVEMENT_INBOUND = "inbound"
MOVEMENT_OUTBOUND = "outbound"
MOVEMENT_ORDER_ALLOCATION = "order_allocation"
MOVEMENT_ORDER_SHIPMENT = "order_shipment"
MOVEMENT_INITIAL_STOCK = "initial_stock"
MOVEMENT_SAMPLE_OUT = "sample_out"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_RETURN_IN = "return_in"

# allocated_stock 을 움직이는 유형 (나머지는 전부 physical_stock)
ALLOCATION_MOVEMENT_TYPES = frozenset({MOVEMENT_ORDER_ALLOCATION})
PHYSICAL_MOVEMENT_TYPES = frozenset(
    {
        MOVEMENT_INBOUND,
        MOVEMENT_OUTBOUND,
        MOVEMENT_ORDER_SHIPMENT,
        MOVEMENT_INITIAL_STOCK,
        MOVEMENT_SAMPLE_OUT,
        MOVEMENT_ADJUSTMENT,
        MOVEMENT_RETURN_IN,
    }
)
MOVEMENT_TYPES = ALLOCATION_MOVEMENT_TYPES | PHYSICAL_MOVEMENT_TYPES

ORDER_PENDING = "pending"
ORDER_PARTIAL = "partial"
ORDER_CONFIRMED = "confirmed"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

# 할당 대상에서 빠지는 종결 상태
TERMINAL_ORDER_STATUSES = frozenset(
    {ORDER_SHIPPED, ORDER_DELIVERED, ORDER_COMPLETED, ORDER_CANCELLED}
)

REFERENCE_ORDER = "order"
REFERENCE_STATEMENT = "statement"


# ─────────────────────────────────────────────
# 공통 Mixin
# ─────────────────────────────────────────────
class CreatedUpdatedMixin:
    """
    created_at, updated_at 둘 다 있는 테이블용 Mixin.
    - created_at: 행이 처음 만들어진 시각
    - updated_at: 행이 생성되거나 수정될 때마다 자동 갱신
    """

    created_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


# ─────────────────────────────────────────────
# 0. 거래처: customer (외부 회원 시스템 투영)
# ─────────────────────────────────────────────
class Customer(CreatedUpdatedMixin, Base):
    __tablename__ = "customer"

    id = Column(Integer, primary_key=True)
    company_name = Column(String(200), nullable=False)             # 업체명

    user_type = Column(String(30))
    # 예: 'main_distributor' > 'distributor' > 'retailer'

    priority_level = Column(Integer)                               # 낮을수록 우선 (NULL = 999 취급)

    # 감사 필드
    updated_by = Column(String(50))
    deleted_at = Column(DateTime)

    orders = relationship("OrderHeader", back_populates="customer")


# ─────────────────────────────────────────────
# 1. 주문: order_header, order_item
# ─────────────────────────────────────────────
class OrderHeader(CreatedUpdatedMixin, Base):
    __tablename__ = "order_header"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(100), nullable=False, unique=True)   # 예: PO20250101-0001
    customer_id = Column(
        Integer,
        ForeignKey("customer.id"),
        nullable=False,
    )

    total_amount = Column(
        Numeric(14, 2),
        nullable=False,
        server_default=text("0"),
    )  # 주문 총액 (우선순위 할당 시 큰 주문 우선)

    status = Column(
        String(20),
        nullable=False,
        server_default=text("'pending'"),
    )
    # 예: 'pending', 'partial', 'confirmed', 'shipped', 'delivered', 'completed', 'cancelled'

    memo = Column(Text)

    # 감사 필드
    created_by = Column(String(50))
    updated_by = Column(String(50))
    deleted_at = Column(DateTime)

    # 관계
    customer = relationship("Customer", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="header",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderItem.id",
    )

    __table_args__ = (
        Index("idx_order_header_status", "status"),
        Index("idx_order_header_created_at", "created_at"),
    )


class OrderItem(CreatedUpdatedMixin, Base):
    __tablename__ = "order_item"

    id = Column(Integer, primary_key=True)
    header_id = Column(
        Integer,
        ForeignKey("order_header.id", ondelete="CASCADE"),
        nullable=False,
    )

    product_id = Column(Integer, nullable=False)                   # 외부 상품 카탈로그 id
    product_name = Column(String(200))                             # 주문 시점 상품명 (표시용)
    color = Column(String(50))                                     # 옵션: 색상 (없으면 NULL)
    size = Column(String(50))                                      # 옵션: 사이즈 (없으면 NULL)

    qty = Column(Integer, nullable=False)                          # 주문수량 (생성 후 고정)
    allocated_qty = Column(
        Integer,
        nullable=False,
        server_default=text("0"),
    )  # 현재 할당(예약) 중인 수량
    shipped_qty = Column(
        Integer,
        nullable=False,
        server_default=text("0"),
    )  # 출고로 소진된 할당 수량

    unit_price = Column(Numeric(12, 2))                            # 단가

    # 감사 필드
    updated_by = Column(String(50))

    # 관계
    header = relationship("OrderHeader", back_populates="items")

    __table_args__ = (
        Index("idx_order_item_header_id", "header_id"),
        Index("idx_order_item_variant", "product_id", "color", "size"),
        CheckConstraint("qty > 0", name="ck_order_item_qty_positive"),
        CheckConstraint("allocated_qty >= 0", name="ck_order_item_allocated_non_negative"),
        CheckConstraint("shipped_qty >= 0", name="ck_order_item_shipped_non_negative"),
        CheckConstraint(
            "allocated_qty + shipped_qty <= qty",
            name="ck_order_item_fulfilled_le_qty",
        ),
    )


# ─────────────────────────────────────────────
# 2. 재고: stock_variant(현황), stock_movement(이력)
# ─────────────────────────────────────────────
class StockVariant(Base):
    __tablename__ = "stock_variant"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, nullable=False)
    color = Column(String(50))
    size = Column(String(50))

    physical_stock = Column(Integer, nullable=False, server_default=text("0"))   # 실재고
    allocated_stock = Column(Integer, nullable=False, server_default=text("0"))  # 할당재고

    # 낙관적 잠금용 버전 (재고 변경 시마다 +1)
    version = Column(Integer, nullable=False, server_default=text("0"))

    # 원장 불일치 감지 시 할당 차단 (재계산으로만 해제)
    is_blocked = Column(Boolean, nullable=False, server_default=text("false"))
    blocked_reason = Column(Text)

    # 감사 필드
    updated_by = Column(String(50))
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # NULL 옵션도 같은 키로 취급 (PostgreSQL 15+)
        Index(
            "ux_stock_variant_key",
            "product_id",
            "color",
            "size",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
        CheckConstraint("physical_stock >= 0", name="ck_stock_variant_physical_non_negative"),
        CheckConstraint("allocated_stock >= 0", name="ck_stock_variant_allocated_non_negative"),
    )

    @property
    def available_stock(self) -> int:
        return int(self.physical_stock or 0) - int(self.allocated_stock or 0)


class StockMovement(Base):
    __tablename__ = "stock_movement"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, nullable=False)
    color = Column(String(50))
    size = Column(String(50))

    quantity_delta = Column(Integer, nullable=False)
    # 양수: 입고/반품/할당해제, 음수: 출고/할당/출고소진

    movement_type = Column(String(30), nullable=False)
    # 예: 'inbound', 'outbound', 'order_allocation', 'order_shipment', 'initial_stock', 'sample_out'

    reference_id = Column(Integer)                                 # 참조 전표 id
    reference_type = Column(String(20))                            # 'order', 'statement' 또는 NULL

    notes = Column(Text)

    created_by = Column(String(50))
    created_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    # updated_at / deleted_at 없음: 이력 보존용 (예외 테이블)

    __table_args__ = (
        Index("idx_stock_movement_variant", "product_id", "color", "size"),
        Index("idx_stock_movement_created_at", "created_at"),
        Index("idx_stock_movement_reference", "reference_type", "reference_id"),
    )

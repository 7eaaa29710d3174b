# 📄 alembic/versions/7c1e2a9d4b10_v2_0_stock_variant_allocation_engine.py
# v2.0: customer / order_header / order_item / stock_variant / stock_movement
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7c1e2a9d4b10"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        "customer",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_name", sa.String(200), nullable=False),
        sa.Column("user_type", sa.String(30), nullable=True),
        sa.Column("priority_level", sa.Integer(), nullable=True),
        sa.Column("updated_by", sa.String(50), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "order_header",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_number", sa.String(100), nullable=False, unique=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customer.id"), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(50), nullable=True),
        sa.Column("updated_by", sa.String(50), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_order_header_status", "order_header", ["status"])
    op.create_index("idx_order_header_created_at", "order_header", ["created_at"])

    op.create_table(
        "order_item",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "header_id",
            sa.Integer(),
            sa.ForeignKey("order_header.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(200), nullable=True),
        sa.Column("color", sa.String(50), nullable=True),
        sa.Column("size", sa.String(50), nullable=True),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("allocated_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("shipped_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("updated_by", sa.String(50), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("qty > 0", name="ck_order_item_qty_positive"),
        sa.CheckConstraint("allocated_qty >= 0", name="ck_order_item_allocated_non_negative"),
        sa.CheckConstraint("shipped_qty >= 0", name="ck_order_item_shipped_non_negative"),
        sa.CheckConstraint("allocated_qty + shipped_qty <= qty", name="ck_order_item_fulfilled_le_qty"),
    )
    op.create_index("idx_order_item_header_id", "order_item", ["header_id"])
    op.create_index("idx_order_item_variant", "order_item", ["product_id", "color", "size"])

    op.create_table(
        "stock_variant",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(50), nullable=True),
        sa.Column("size", sa.String(50), nullable=True),
        sa.Column("physical_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("allocated_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(50), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("physical_stock >= 0", name="ck_stock_variant_physical_non_negative"),
        sa.CheckConstraint("allocated_stock >= 0", name="ck_stock_variant_allocated_non_negative"),
    )
    # NULL 옵션도 같은 키 (PostgreSQL 15+)
    op.create_index(
        "ux_stock_variant_key",
        "stock_variant",
        ["product_id", "color", "size"],
        unique=True,
        postgresql_nulls_not_distinct=True,
    )

    op.create_table(
        "stock_movement",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(50), nullable=True),
        sa.Column("size", sa.String(50), nullable=True),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(30), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("reference_type", sa.String(20), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_stock_movement_variant", "stock_movement", ["product_id", "color", "size"])
    op.create_index("idx_stock_movement_created_at", "stock_movement", ["created_at"])
    op.create_index("idx_stock_movement_reference", "stock_movement", ["reference_type", "reference_id"])


def downgrade():
    op.drop_index("idx_stock_movement_reference", table_name="stock_movement")
    op.drop_index("idx_stock_movement_created_at", table_name="stock_movement")
    op.drop_index("idx_stock_movement_variant", table_name="stock_movement")
    op.drop_table("stock_movement")

    op.drop_index("ux_stock_variant_key", table_name="stock_variant")
    op.drop_table("stock_variant")

    op.drop_index("idx_order_item_variant", table_name="order_item")
    op.drop_index("idx_order_item_header_id", table_name="order_item")
    op.drop_table("order_item")

    op.drop_index("idx_order_header_created_at", table_name="order_header")
    op.drop_index("idx_order_header_status", table_name="order_header")
    op.drop_table("order_header")

    op.drop_table("customer")

"""
Order Service — テーブル定義

カートと注文は同じサービス (同じ DB) が所有する。
そのため「注文確定 + カートを空にする」は 1 つのローカルトランザクションで書ける。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

carts = Table(
    "carts",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", String(64), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("cart_id", Integer, ForeignKey("carts.id"), nullable=False, index=True),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
    UniqueConstraint("cart_id", "product_id", name="uq_cart_item_product"),
    # 明細 ID は冪等キーの材料なので SQLite でも再利用させない
    sqlite_autoincrement=True,
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("payment_method", String(64), nullable=False),
    Column("delivery_address", Text, nullable=False),
    Column("payment_status", String(16), nullable=False),
    Column("delivery_status", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("idempotency_key", String(128)),
    Column("cancel_reason", Text),
    Column("placed_at", DateTime(timezone=True), nullable=False),
    Column("estimated_delivery_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "idempotency_key", name="uq_order_idempotency_key"),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", Integer, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
)

"""
Inventory Service — テーブル定義

products の stock が在庫カウンタ。
stock_reservations は注文ごとの引き当て台帳で、
同じ (order_id, product_id) の二重引き当て・二重解放を防ぐ。
"""

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("title", String(255), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", String(64), nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "product_id", name="uq_reservation_order_product"),
)

RESERVED = "RESERVED"
RELEASED = "RELEASED"

"""
Inventory Service — テーブル定義

products.reserved は HELD 状態の確保数の合計。
確保が CONFIRMED になると quantity と reserved の両方から差し引く。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Uuid,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("reserved >= 0 AND reserved <= quantity", name="ck_products_reserved"),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("token", String(64), primary_key=True),
    Column("idempotency_key", String(255), nullable=False, unique=True),
    Column("product_id", Uuid, ForeignKey("products.id"), nullable=False),
    Column("order_id", Uuid, nullable=True),
    Column("quantity", Integer, nullable=False),
    # HELD → RELEASED | CONFIRMED | EXPIRED
    Column("status", String(16), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
)

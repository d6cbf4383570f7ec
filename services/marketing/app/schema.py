"""
Marketing Service — テーブル定義 (マーケティング専用 DB)
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table, Uuid

metadata = MetaData()

# 投影済みの注文 ID。同じ OrderPlaced が再送されても1回しか数えない。
processed_orders = Table(
    "processed_orders",
    metadata,
    Column("order_id", Uuid, primary_key=True),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)

customer_summary = Table(
    "customer_summary",
    metadata,
    Column("customer_id", String(255), primary_key=True),
    Column("total_orders", Integer, nullable=False),
    Column("total_revenue", Numeric(14, 4), nullable=False),
    Column("first_order_at", DateTime(timezone=True), nullable=False),
    Column("last_order_at", DateTime(timezone=True), nullable=False),
)

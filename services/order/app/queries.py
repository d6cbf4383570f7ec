"""
Order Service — クエリハンドラ (Read 側)

コミット済みの注文を読み出して API 向けの dict に変換する。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .persistence import load_order
from .schema import orders


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """注文を明細付きで取得する。"""
    order = await load_order(session, order_id)
    return order.to_dict() if order else None


async def list_orders(session: AsyncSession, customer_id: str | None = None) -> list[dict]:
    """注文一覧 (明細なし) を新しい順に返す。"""
    stmt = select(orders).order_by(orders.c.created_at.desc())
    if customer_id:
        stmt = stmt.where(orders.c.customer_id == customer_id)
    result = await session.execute(stmt)
    return [
        {
            "id": str(row.id),
            "customer_id": row.customer_id,
            "total": str(row.total),
            "status": row.status,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]

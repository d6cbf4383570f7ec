"""
Inventory Service — クエリハンドラ (Read 側)
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import products, stock_reservations


def _product_dict(row) -> dict:
    return {
        "id": str(row.id),
        "name": row.name,
        "quantity": row.quantity,
        "reserved": row.reserved,
        "available": row.quantity - row.reserved,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_product(session: AsyncSession, product_id: UUID) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return _product_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(products).order_by(products.c.name))
    return [_product_dict(row) for row in result.fetchall()]


async def get_reservation(session: AsyncSession, token: str) -> dict | None:
    result = await session.execute(
        select(stock_reservations).where(stock_reservations.c.token == token)
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "reservation_token": row.token,
        "product_id": str(row.product_id),
        "order_id": str(row.order_id) if row.order_id else None,
        "quantity": row.quantity,
        "status": row.status,
        "expires_at": row.expires_at.isoformat() if row.expires_at else None,
    }

"""
Marketing Service — クエリハンドラ (Read 側)

マーケティング用リードモデルから顧客ごとの集計を返す。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import customer_summary


def _summary_dict(row) -> dict:
    return {
        "customer_id": row.customer_id,
        "total_orders": row.total_orders,
        "total_revenue": str(row.total_revenue),
        "first_order_at": row.first_order_at.isoformat() if row.first_order_at else None,
        "last_order_at": row.last_order_at.isoformat() if row.last_order_at else None,
    }


async def list_customer_summaries(session: AsyncSession) -> list[dict]:
    """顧客サマリー一覧(売上順)"""
    result = await session.execute(
        select(customer_summary).order_by(customer_summary.c.total_revenue.desc())
    )
    return [_summary_dict(row) for row in result.fetchall()]


async def get_customer_summary(session: AsyncSession, customer_id: str) -> dict | None:
    """特定顧客のサマリー"""
    result = await session.execute(
        select(customer_summary).where(customer_summary.c.customer_id == customer_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return _summary_dict(row)

"""
Marketing Service — イベント投影 (Projection)

orders.placed から受信した OrderPlaced を顧客サマリーに投影する。

配信は at-least-once なので同じイベントが複数回届き得る。
processed_orders に order_id を記録し、同じトランザクションで集計を更新する。
既に記録済みなら何もしない → 注文1件につき1回だけ数える。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import customer_summary, processed_orders


class OrderPlacedPayload(BaseModel):
    order_id: UUID
    customer_id: str
    total: Decimal
    timestamp: datetime


async def project_order_placed(session: AsyncSession, payload: dict) -> bool:
    """
    OrderPlaced を投影する。

    Returns:
        今回投影したら True、重複として読み捨てたら False
    """
    event = OrderPlacedPayload.model_validate(payload)
    order_id, customer_id = event.order_id, event.customer_id
    total, timestamp = event.total, event.timestamp

    try:
        await session.execute(
            insert(processed_orders).values(order_id=order_id, processed_at=timestamp)
        )
        await session.flush()
    except IntegrityError:
        await session.rollback()
        return False

    summary = (
        await session.execute(
            select(customer_summary)
            .where(customer_summary.c.customer_id == customer_id)
            .with_for_update()
        )
    ).fetchone()
    if summary is None:
        await session.execute(
            insert(customer_summary).values(
                customer_id=customer_id,
                total_orders=1,
                total_revenue=total,
                first_order_at=timestamp,
                last_order_at=timestamp,
            )
        )
    else:
        await session.execute(
            update(customer_summary)
            .where(customer_summary.c.customer_id == customer_id)
            .values(
                total_orders=customer_summary.c.total_orders + 1,
                total_revenue=customer_summary.c.total_revenue + total,
                last_order_at=timestamp,
            )
        )
    await session.commit()
    return True

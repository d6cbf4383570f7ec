"""
Order Service — 永続化ゲートウェイ (Persistence Gateway)

注文ヘッダと明細を1つのトランザクションでコミットする。

冪等な INSERT:
  同じ注文 ID の INSERT は主キー制約違反 (IntegrityError) になる。
  そのとき既に注文が存在すれば「コミット済み」とみなし、保存済みの注文を返す。
  (コミットされたのに応答が届かず、呼び出し元がリトライしたケース)
"""

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .aggregate import Order, OrderLineItem, OrderStatus
from .errors import PersistenceFailure
from .schema import order_line_items, orders

logger = logging.getLogger(__name__)


class OrderPersistenceGateway:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def commit(self, order: Order) -> tuple[Order, bool]:
        """
        注文をコミットする。

        Returns:
            (コミット済みの注文, 今回新規に作成したか)

        Raises:
            PersistenceFailure: ロールバックした場合。order は PENDING のまま。
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        insert(orders).values(
                            id=order.id,
                            customer_id=order.customer_id,
                            total=order.total,
                            status=OrderStatus.CONFIRMED.value,
                            created_at=order.created_at,
                        )
                    )
                    await session.execute(
                        insert(order_line_items),
                        [
                            {
                                "order_id": order.id,
                                "line_no": line_no,
                                "product_id": item.product_id,
                                "quantity": item.quantity,
                                "unit_price": item.unit_price,
                            }
                            for line_no, item in enumerate(order.line_items)
                        ],
                    )
        except IntegrityError as exc:
            existing = await self.get(order.id)
            if existing is None:
                raise PersistenceFailure(f"Constraint violation for order {order.id}") from exc
            logger.info("Order %s already committed; treating duplicate insert as success", order.id)
            return existing, False
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceFailure(f"Failed to commit order {order.id}: {exc}") from exc

        order.mark_confirmed()
        logger.info("Order %s committed (total=%s)", order.id, order.total)
        return order, True

    async def get(self, order_id: UUID) -> Order | None:
        try:
            async with self._session_factory() as session:
                return await load_order(session, order_id)
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceFailure(f"Failed to load order {order_id}: {exc}") from exc


async def load_order(session: AsyncSession, order_id: UUID) -> Order | None:
    header = (
        await session.execute(select(orders).where(orders.c.id == order_id))
    ).fetchone()
    if header is None:
        return None
    rows = (
        await session.execute(
            select(order_line_items)
            .where(order_line_items.c.order_id == order_id)
            .order_by(order_line_items.c.line_no)
        )
    ).fetchall()
    return Order(
        id=header.id,
        customer_id=header.customer_id,
        line_items=[
            OrderLineItem(
                product_id=row.product_id,
                quantity=row.quantity,
                unit_price=Decimal(row.unit_price),
            )
            for row in rows
        ],
        total=Decimal(header.total),
        status=OrderStatus(header.status),
        created_at=header.created_at,
    )

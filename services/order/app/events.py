"""
Order Service — ドメインイベント定義

イベントは過去形で命名し、不変(immutable)として扱う。
OrderPlaced はコミット済みの注文1件につき1回だけ発行される
(at-least-once。受信側は order_id で重複排除する)。
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from .aggregate import Order

ORDERS_PLACED_TOPIC = "orders.placed"


class OrderPlacedEvent(BaseModel):
    """注文が確定された"""

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    customer_id: str
    total: Decimal
    timestamp: datetime

    @property
    def key(self) -> str:
        return str(self.order_id)

    @classmethod
    def from_order(cls, order: Order, now: datetime | None = None) -> "OrderPlacedEvent":
        return cls(
            order_id=order.id,
            customer_id=order.customer_id,
            total=order.total,
            timestamp=now or datetime.now(timezone.utc),
        )

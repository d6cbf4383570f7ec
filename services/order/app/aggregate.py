"""
Order Service — 注文集約 (Order Aggregate) と集約ビルダー

注文 (Order) は明細 (OrderLineItem) を所有する集約ルート。
合計金額は Decimal で計算する。float は丸め誤差が出るので使わない。

状態遷移:
    PENDING → CONFIRMED  (在庫引き当て + 永続化が両方成功)
    PENDING → FAILED     (どちらかが失敗)
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class OrderLineItem:
    product_id: UUID
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class InventoryReservation:
    """Products サービス側で確保された在庫。token で解放・確定する。"""

    product_id: UUID
    quantity: int
    token: str


@dataclass(frozen=True)
class OrderRequest:
    """
    注文リクエスト。1回の呼び出しごとに作られ、そのまま保存はしない。

    order_id を指定すると、その ID が冪等キーになる。
    (呼び出し元がリトライしても注文は1件しか作られない)
    """

    customer_id: str | None
    line_items: Sequence[OrderLineItem] = field(default_factory=tuple)
    order_id: UUID | None = None


class Order:
    """注文集約"""

    def __init__(
        self,
        id: UUID,
        customer_id: str,
        line_items: Sequence[OrderLineItem],
        total: Decimal,
        status: OrderStatus = OrderStatus.PENDING,
        created_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.customer_id = customer_id
        self.line_items: tuple[OrderLineItem, ...] = tuple(line_items)
        self.total = total
        self.status = status
        self.created_at = created_at or datetime.now(timezone.utc)

    # ── 状態遷移 ─────────────────────────────────

    def mark_confirmed(self) -> None:
        if self.status is not OrderStatus.PENDING:
            raise ValueError(f"Cannot confirm order in status {self.status.value}")
        self.status = OrderStatus.CONFIRMED

    def mark_failed(self) -> None:
        if self.status is OrderStatus.CONFIRMED:
            raise ValueError("Cannot fail an order that is already confirmed")
        self.status = OrderStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "customer_id": self.customer_id,
            "line_items": [
                {
                    "product_id": str(item.product_id),
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                }
                for item in self.line_items
            ],
            "total": str(self.total),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"Order(id={self.id}, status={self.status.value}, total={self.total})"


# ── 集約ビルダー ─────────────────────────────────


def compute_total(line_items: Sequence[OrderLineItem]) -> Decimal:
    """明細ごとの 単価 × 数量 を合計する。"""
    return sum((item.line_total for item in line_items), Decimal("0"))


def build_order(
    request: OrderRequest,
    reservations: Sequence[InventoryReservation],
    order_id: UUID | None = None,
    now: datetime | None = None,
) -> Order:
    """
    検証済みリクエストと引き当て済み在庫から PENDING の注文を組み立てる。
    I/O は行わない。
    """
    if len(reservations) != len(request.line_items):
        raise ValueError(
            f"Expected {len(request.line_items)} reservations, got {len(reservations)}"
        )
    for item, reservation in zip(request.line_items, reservations):
        if reservation.product_id != item.product_id or reservation.quantity != item.quantity:
            raise ValueError(f"Reservation {reservation.token} does not match line item")

    return Order(
        id=order_id or request.order_id or uuid4(),
        customer_id=request.customer_id or "",
        line_items=request.line_items,
        total=compute_total(request.line_items),
        status=OrderStatus.PENDING,
        created_at=now,
    )

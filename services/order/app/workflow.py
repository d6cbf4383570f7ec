"""
Order Service — 注文確定ワークフロー (PlaceOrder)

Saga パターン（オーケストレーション型）:
  ワークフローが各ステップを順に実行し、失敗時は補償トランザクション
  (在庫の解放) を実行して整合性を保つ。

  ┌──────────────────────────────────────────────────────────────┐
  │  Received → Validating → ReservingInventory → Persisting     │
  │           → Publishing → Completed                           │
  │                                                              │
  │  ReservingInventory / Persisting / Publishing                │
  │           ──(回復不能なエラー)──▶ Compensating → Failed      │
  └──────────────────────────────────────────────────────────────┘

キャンセル:
  永続化の前にキャンセルされたら確保済みの在庫を解放して中断する。
  コミット後のキャンセルは受け付けない (注文は既に存在する)。
  在庫の確定とイベント発行はそのまま続ける。

冪等な再実行:
  指定された注文 ID が既に保存済みなら、同じ冪等キーで在庫を取り直して確定し、
  保存済みの注文を返す。イベントは再発行しない。
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from .aggregate import InventoryReservation, Order, OrderRequest, build_order
from .errors import (
    DependencyUnavailable,
    OutOfStock,
    PersistenceFailure,
    ValidationError,
)
from .events import OrderPlacedEvent
from .inventory_client import InventoryReservationClient
from .persistence import OrderPersistenceGateway
from .publisher import EventPublisher
from .validator import validate_order_request

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    RECEIVED = "Received"
    VALIDATING = "Validating"
    RESERVING_INVENTORY = "ReservingInventory"
    PERSISTING = "Persisting"
    PUBLISHING = "Publishing"
    COMPLETED = "Completed"
    COMPENSATING = "Compensating"
    FAILED = "Failed"


_TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.RECEIVED: frozenset({WorkflowState.VALIDATING}),
    WorkflowState.VALIDATING: frozenset(
        {
            WorkflowState.RESERVING_INVENTORY,
            WorkflowState.FAILED,
            # 指定された注文 ID が既にコミット済み (冪等な再実行)
            WorkflowState.COMPLETED,
        }
    ),
    WorkflowState.RESERVING_INVENTORY: frozenset(
        {WorkflowState.PERSISTING, WorkflowState.COMPENSATING}
    ),
    WorkflowState.PERSISTING: frozenset({WorkflowState.PUBLISHING, WorkflowState.COMPENSATING}),
    WorkflowState.PUBLISHING: frozenset({WorkflowState.COMPLETED, WorkflowState.COMPENSATING}),
    WorkflowState.COMPENSATING: frozenset({WorkflowState.FAILED}),
    WorkflowState.COMPLETED: frozenset(),
    WorkflowState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED})


class IllegalTransition(RuntimeError):
    pass


class PlacementRun:
    """1回の PlaceOrder 実行の状態と履歴 (saga log)"""

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        self.state = WorkflowState.RECEIVED
        self.history: list[dict] = [self._entry(WorkflowState.RECEIVED)]

    def transition(self, new_state: WorkflowState, error: str | None = None) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {new_state.value}")
        logger.info("Order %s: %s -> %s", self.order_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(self._entry(new_state, error))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @staticmethod
    def _entry(state: WorkflowState, error: str | None = None) -> dict:
        entry = {"state": state.value, "timestamp": datetime.now(timezone.utc).isoformat()}
        if error:
            entry["error"] = error
        return entry


class PlaceOrderWorkflow:
    def __init__(
        self,
        inventory: InventoryReservationClient,
        gateway: OrderPersistenceGateway,
        publisher: EventPublisher,
        persist_timeout: float = 5.0,
        publish_timeout: float = 2.0,
    ) -> None:
        self._inventory = inventory
        self._gateway = gateway
        self._publisher = publisher
        self._persist_timeout = persist_timeout
        self._publish_timeout = publish_timeout

    async def place_order(self, request: OrderRequest, run: PlacementRun | None = None) -> Order:
        """
        注文を確定する。run を渡すと状態遷移の履歴を呼び出し元で参照できる。

        Returns:
            CONFIRMED の注文

        Raises:
            ValidationError, OutOfStock, DependencyUnavailable, PersistenceFailure
        """
        order_id = request.order_id or uuid4()
        run = run or PlacementRun(order_id)

        # ── Step 1: 検証 ───────────────────────────
        run.transition(WorkflowState.VALIDATING)
        try:
            validate_order_request(request)
        except ValidationError as e:
            run.transition(WorkflowState.FAILED, str(e))
            raise

        if request.order_id is not None:
            try:
                existing = await self._gateway.get(order_id)
                if existing is not None:
                    # 在庫の確定だけやり直す。イベントは再発行しない。
                    await asyncio.shield(self._confirm_replayed(existing))
            except (PersistenceFailure, DependencyUnavailable) as e:
                run.transition(WorkflowState.FAILED, str(e))
                raise
            except asyncio.CancelledError:
                run.transition(WorkflowState.FAILED, "cancelled")
                raise
            if existing is not None:
                run.transition(WorkflowState.COMPLETED)
                return existing

        # ── Step 2: 在庫を引き当て ─────────────────
        run.transition(WorkflowState.RESERVING_INVENTORY)
        try:
            reservations = await self._inventory.reserve_all(order_id, request.line_items)
        except (OutOfStock, DependencyUnavailable) as e:
            # reserve_all が確保済みの分を解放済み
            run.transition(WorkflowState.COMPENSATING, str(e))
            run.transition(WorkflowState.FAILED)
            raise
        except asyncio.CancelledError:
            run.transition(WorkflowState.COMPENSATING, "cancelled")
            run.transition(WorkflowState.FAILED)
            raise

        # ── Step 3: 集約を組み立てて永続化 ─────────
        order = build_order(request, reservations, order_id=order_id)
        run.transition(WorkflowState.PERSISTING)
        try:
            committed, created = await asyncio.wait_for(
                self._gateway.commit(order), timeout=self._persist_timeout
            )
        except (PersistenceFailure, asyncio.TimeoutError) as e:
            error = str(e) or f"persistence timed out after {self._persist_timeout}s"
            await self._compensate(run, order, reservations, error)
            if isinstance(e, PersistenceFailure):
                raise
            raise PersistenceFailure(error) from e
        except asyncio.CancelledError:
            await asyncio.shield(self._compensate(run, order, reservations, "cancelled"))
            raise

        # ── Step 4: コミット後 (キャンセル不可) ────
        await asyncio.shield(self._after_commit(run, committed, reservations, created))
        return committed

    async def _after_commit(
        self,
        run: PlacementRun,
        order: Order,
        reservations: Sequence[InventoryReservation],
        created: bool,
    ) -> None:
        await self._inventory.confirm_all(reservations)

        run.transition(WorkflowState.PUBLISHING)
        if created:
            await self._publisher.publish_within(
                OrderPlacedEvent.from_order(order), timeout=self._publish_timeout
            )
        else:
            # 先行した実行が既に発行している
            logger.info("Order %s was committed by an earlier attempt; not republishing", order.id)
        run.transition(WorkflowState.COMPLETED)

    async def _confirm_replayed(self, order: Order) -> None:
        """
        保存済みの注文が再送されたとき、最初の実行の確保を確定する。
        (コミット後に応答が失われると、確保が HELD のまま期限切れになり得る)
        """
        logger.info("Order %s already placed; confirming its reservations", order.id)
        reservations = await self._inventory.reacquire_all(order.id, order.line_items)
        await self._inventory.confirm_all(reservations)

    async def _compensate(
        self,
        run: PlacementRun,
        order: Order,
        reservations: Sequence[InventoryReservation],
        error: str,
    ) -> None:
        logger.warning("Order %s failed while %s: %s", order.id, run.state.value, error)
        run.transition(WorkflowState.COMPENSATING, error)
        await self._inventory.release_all(reservations)
        order.mark_failed()
        run.transition(WorkflowState.FAILED)

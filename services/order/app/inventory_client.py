"""
Order Service — 在庫引き当てクライアント (Inventory Reservation Client)

Products 機能 (Inventory Service) の HTTP API を呼び出して在庫を確保する。

  ReserveStock(productId, qty) → ReservationToken | OutOfStock | TransientFailure
  ReleaseStock(token)
  ConfirmStock(token)   注文確定後、確保を在庫の減算に変える

耐障害性:
  - 一時的失敗 (5xx / 429 / タイムアウト / 通信断) は tenacity で指数バックオフ付きリトライ
  - リトライが尽きたら DependencyUnavailable に昇格
  - 呼び出しはすべてサーキットブレーカーを通す (OPEN 中は通信せず即失敗)

補償 (Saga ロールバック):
  後続ステップが失敗したら、このクライアントが確保した在庫を
  確保した順番どおりに解放する。解放に失敗した場合は例外にせず、
  運用者による突き合わせが必要な不整合として ERROR ログに残す。
  (確保と補償の間でプロセスが落ちると確保が残る。これは
   Products 側の有効期限切れ処理で回収される前提。)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar
from uuid import UUID

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .aggregate import InventoryReservation, OrderLineItem
from .config import RetryPolicy
from .errors import DependencyUnavailable, OutOfStock, TransientFailure
from .resilience import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def idempotency_key(order_id: UUID, line_no: int) -> str:
    return f"{order_id}:{line_no}"


class InventoryReservationClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        breaker: CircuitBreaker,
        retry: RetryPolicy | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._breaker = breaker
        self._retry = retry or RetryPolicy()
        self._timeout = timeout

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # ── 単一操作 ─────────────────────────────────

    async def reserve_stock(
        self, order_id: UUID, line_no: int, item: OrderLineItem
    ) -> InventoryReservation:
        async def _reserve() -> InventoryReservation:
            resp = await self._post(
                f"/commands/inventory/{item.product_id}/reserve",
                {
                    "idempotency_key": idempotency_key(order_id, line_no),
                    "order_id": str(order_id),
                    "quantity": item.quantity,
                },
            )
            if resp.status_code in (404, 409):
                available = _available_from(resp)
                raise OutOfStock(item.product_id, item.quantity, available)
            self._raise_for_status(resp)
            return InventoryReservation(
                product_id=item.product_id,
                quantity=item.quantity,
                token=resp.json()["reservation_token"],
            )

        return await self._call_with_policy(_reserve)

    async def release_stock(self, reservation: InventoryReservation) -> None:
        async def _release() -> None:
            resp = await self._post(f"/commands/reservations/{reservation.token}/release", None)
            # 404 = 既に解放済み / 期限切れ。解放は冪等に扱う。
            if resp.status_code != 404:
                self._raise_for_status(resp)

        await self._call_with_policy(_release)

    async def confirm_stock(self, reservation: InventoryReservation) -> None:
        async def _confirm() -> None:
            resp = await self._post(f"/commands/reservations/{reservation.token}/confirm", None)
            self._raise_for_status(resp)

        await self._call_with_policy(_confirm)

    # ── 注文単位の操作 ───────────────────────────

    async def reserve_all(
        self, order_id: UUID, line_items: Sequence[OrderLineItem]
    ) -> list[InventoryReservation]:
        """
        明細ごとに在庫を確保する。
        途中で失敗 (在庫不足・依存先停止・キャンセル) したら、
        この呼び出しで確保済みの分をすべて解放してから例外を再送出する。
        """
        acquired: list[InventoryReservation] = []
        try:
            for line_no, item in enumerate(line_items):
                acquired.append(await self.reserve_stock(order_id, line_no, item))
        except (Exception, asyncio.CancelledError):
            if acquired:
                logger.info(
                    "Order %s: releasing %d reservation(s) after failed reservation",
                    order_id,
                    len(acquired),
                )
                await asyncio.shield(self.release_all(acquired))
            raise
        return acquired

    async def reacquire_all(
        self, order_id: UUID, line_items: Sequence[OrderLineItem]
    ) -> list[InventoryReservation]:
        """
        コミット済み注文の再実行用。同じ冪等キーで明細ごとに確保を取り直す。
        Products は有効な確保 (HELD / CONFIRMED) をそのまま返し、
        解放・期限切れになった確保は取り直す。

        reserve_all と違い、失敗しても他の明細は解放しない (注文は既に存在する)。
        在庫不足は不整合として ERROR ログに残す。DependencyUnavailable は送出する。
        """
        reservations: list[InventoryReservation] = []
        for line_no, item in enumerate(line_items):
            try:
                reservations.append(await self.reserve_stock(order_id, line_no, item))
            except OutOfStock as exc:
                logger.error(
                    "INCONSISTENCY: order %s is committed but line %d could not be "
                    "re-reserved; operator reconciliation required: %s",
                    order_id,
                    line_no,
                    exc,
                )
        return reservations

    async def release_all(
        self, reservations: Sequence[InventoryReservation]
    ) -> list[InventoryReservation]:
        """確保した順に解放する。解放できなかった分を返す。"""
        failed: list[InventoryReservation] = []
        for reservation in reservations:
            try:
                await self.release_stock(reservation)
            except Exception as exc:
                failed.append(reservation)
                logger.error(
                    "INCONSISTENCY: failed to release reservation %s "
                    "(product=%s, quantity=%d); operator reconciliation required: %s",
                    reservation.token,
                    reservation.product_id,
                    reservation.quantity,
                    exc,
                )
        return failed

    async def confirm_all(
        self, reservations: Sequence[InventoryReservation]
    ) -> list[InventoryReservation]:
        failed: list[InventoryReservation] = []
        for reservation in reservations:
            try:
                await self.confirm_stock(reservation)
            except Exception as exc:
                failed.append(reservation)
                logger.error(
                    "INCONSISTENCY: failed to confirm reservation %s "
                    "(product=%s, quantity=%d); operator reconciliation required: %s",
                    reservation.token,
                    reservation.product_id,
                    reservation.quantity,
                    exc,
                )
        return failed

    # ── 通信・リトライ・ブレーカー ───────────────

    async def _call_with_policy(self, operation: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientFailure),
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_exponential(multiplier=self._retry.base_delay, max=self._retry.max_delay),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._breaker.call(operation)
        except TransientFailure as exc:
            raise DependencyUnavailable(
                self._breaker.name,
                f"retries exhausted after {self._retry.max_attempts} attempts: {exc}",
            ) from exc
        return result

    async def _post(self, path: str, payload: dict | None) -> httpx.Response:
        try:
            return await self._http.post(
                f"{self._base_url}{path}", json=payload, timeout=self._timeout
            )
        except httpx.TransportError as exc:
            raise TransientFailure(f"{type(exc).__name__}: {exc}") from exc

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code in RETRYABLE_STATUS_CODES:
            raise TransientFailure(f"HTTP {resp.status_code}: {resp.text[:200]}")
        if resp.is_error:
            raise DependencyUnavailable(
                self._breaker.name, f"unexpected HTTP {resp.status_code}: {resp.text[:200]}"
            )


def _available_from(resp: httpx.Response) -> int | None:
    if resp.status_code == 404:
        return 0
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return None
    if isinstance(detail, dict):
        return detail.get("available")
    return None

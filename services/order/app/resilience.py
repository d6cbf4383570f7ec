"""
Order Service — サーキットブレーカー

下流サービス (依存先) ごとに1つ持つ。連続した一時的失敗が閾値に達すると
OPEN になり、クールダウンが終わるまでネットワーク呼び出しをせずに
DependencyUnavailable で即座に失敗させる。

  CLOSED ──(連続失敗 >= 閾値)──▶ OPEN ──(クールダウン経過)──▶ HALF_OPEN
    ▲                                                          │
    └──────────────(試験呼び出し成功)──────────────────────────┘
                    (試験呼び出し失敗 → OPEN に戻る)

asyncio の単一イベントループ上で使う前提。状態更新の間に await を
挟まないので、ロックは不要。
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import DependencyUnavailable, TransientFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0


class CircuitBreaker:
    """
    例:
        breaker = CircuitBreaker("inventory-service")
        token = await breaker.call(client.reserve, product_id, qty)

    failure_exceptions に含まれる例外だけを失敗として数える。
    それ以外の例外 (在庫不足など) は「依存先は応答した」とみなして成功扱い。
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        failure_exceptions: tuple[type[BaseException], ...] = (TransientFailure,),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._failure_exceptions = failure_exceptions
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_remaining() <= 0:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "retry_after": max(self._cooldown_remaining(), 0.0)
            if self._state is CircuitState.OPEN
            else None,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self._failure_exceptions:
            self._on_failure()
            raise
        except Exception:
            self._on_success()
            raise
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        self._on_success()
        return result

    # ── 内部状態遷移 ─────────────────────────────

    def _cooldown_remaining(self) -> float:
        return self.config.cooldown_seconds - (self._clock() - self._opened_at)

    def _before_call(self) -> None:
        if self._state is CircuitState.OPEN:
            remaining = self._cooldown_remaining()
            if remaining > 0:
                raise DependencyUnavailable(self.name, "circuit open", retry_after=remaining)
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            # 試験呼び出しは1本だけ通す
            if self._trial_in_flight:
                raise DependencyUnavailable(self.name, "circuit half-open, trial call in flight")
            self._trial_in_flight = True

    def _on_success(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._consecutive_failures += 1
        self._trial_in_flight = False
        if self._state is CircuitState.HALF_OPEN:
            self._open()
        elif (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.config.failure_threshold
        ):
            self._open()

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.warning(
            "Circuit %s: %s -> %s (consecutive_failures=%d)",
            self.name,
            self._state.value,
            new_state.value,
            self._consecutive_failures,
        )
        self._state = new_state

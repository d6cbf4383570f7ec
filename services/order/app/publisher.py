"""
Order Service — イベント発行 (Event Publisher)

コミット済みの注文について OrderPlaced を発行する。

  1. Redis Streams (orders.placed) に XADD。key = order_id
  2. 失敗したら指数バックオフでリトライ (tenacity)
  3. リトライが尽きたら Outbox に退避 (捨てない)

Redis Pub/Sub は購読者がいない間のメッセージを失うので、
ストリームを使い、受信側はコンシューマグループで読む。

発行は HTTP レスポンスから見て fire-and-forget。
publish_within() は最大 timeout 秒だけ待ち、残りはバックグラウンドで続ける。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryPolicy
from .errors import PublishFailure
from .events import ORDERS_PLACED_TOPIC, OrderPlacedEvent
from .outbox import EventTransport, OutboxStore

logger = logging.getLogger(__name__)


class RedisStreamTransport:
    def __init__(self, redis: aioredis.Redis, maxlen: int | None = 100_000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    async def publish(self, topic: str, key: str, payload: dict) -> None:
        try:
            await self._redis.xadd(
                topic,
                {"key": key, "payload": json.dumps(payload, default=str)},
                maxlen=self._maxlen,
                approximate=True,
            )
        except (RedisError, OSError) as exc:
            raise PublishFailure(f"XADD {topic} failed: {exc}") from exc


class EventPublisher:
    def __init__(
        self,
        transport: EventTransport,
        outbox: OutboxStore,
        retry: RetryPolicy | None = None,
        topic: str = ORDERS_PLACED_TOPIC,
    ) -> None:
        self._transport = transport
        self._outbox = outbox
        self._retry = retry or RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)
        self._topic = topic
        self._in_flight: set[asyncio.Task] = set()

    async def publish(self, event: OrderPlacedEvent) -> bool:
        """
        イベントを発行する。例外は送出しない。

        Returns:
            ブローカーに届いたら True、Outbox に退避したら False
        """
        payload = event.model_dump(mode="json")
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(PublishFailure),
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_exponential(multiplier=self._retry.base_delay, max=self._retry.max_delay),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._transport.publish(self._topic, event.key, payload)
        except PublishFailure as exc:
            logger.warning(
                "Publishing %s for order %s failed after %d attempts, staging in outbox: %s",
                self._topic,
                event.key,
                self._retry.max_attempts,
                exc,
            )
            return await self._stage(event, payload)

        logger.info("Published %s for order %s", self._topic, event.key)
        return True

    def schedule(self, event: OrderPlacedEvent) -> asyncio.Task:
        """発行をバックグラウンドタスクとして開始する。"""
        task = asyncio.create_task(self.publish(event))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def publish_within(self, event: OrderPlacedEvent, timeout: float) -> None:
        """最大 timeout 秒だけ発行を待つ。タイムアウト後も発行は続く。"""
        task = self.schedule(event)
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.info("Publishing order %s still in flight after %.1fs", event.key, timeout)

    async def drain(self) -> None:
        """シャットダウン時に実行中の発行を待つ。"""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _stage(self, event: OrderPlacedEvent, payload: dict) -> bool:
        try:
            await self._outbox.enqueue(self._topic, event.key, payload)
        except Exception:
            logger.exception(
                "INCONSISTENCY: order %s committed but %s could not be published "
                "nor staged in outbox; operator redelivery required",
                event.key,
                self._topic,
            )
        return False

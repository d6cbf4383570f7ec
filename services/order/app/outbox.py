"""
Order Service — Outbox (発行できなかったイベントの退避と再送)

Outbox パターン:
  ブローカーへの発行がリトライしても失敗した場合、イベントを DB に保存する。
  バックグラウンドのリレーが定期的に未発行のイベントを読み出して再送する。
  → イベントを取りこぼさず、最終的に at-least-once で届ける。

同じ (topic, key) のイベントは1行だけ保存する (UNIQUE 制約)。
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import PublishFailure
from .schema import order_outbox

logger = logging.getLogger(__name__)


class EventTransport(Protocol):
    async def publish(self, topic: str, key: str, payload: dict) -> None:
        """失敗時は PublishFailure を送出する。"""
        ...


@dataclass(frozen=True)
class OutboxMessage:
    id: int
    topic: str
    key: str
    payload: dict
    attempts: int


class OutboxStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def enqueue(self, topic: str, key: str, payload: dict) -> bool:
        """イベントを退避する。既に同じキーがあれば False。"""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        insert(order_outbox).values(
                            topic=topic,
                            message_key=key,
                            payload=json.dumps(payload, default=str),
                            attempts=0,
                            created_at=datetime.now(timezone.utc),
                        )
                    )
        except IntegrityError:
            logger.info("Outbox already holds %s/%s", topic, key)
            return False
        return True

    async def fetch_pending(self, limit: int = 100) -> list[OutboxMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(order_outbox)
                .where(order_outbox.c.published_at.is_(None))
                .order_by(order_outbox.c.id)
                .limit(limit)
            )
            return [
                OutboxMessage(
                    id=row.id,
                    topic=row.topic,
                    key=row.message_key,
                    payload=json.loads(row.payload),
                    attempts=row.attempts,
                )
                for row in result.fetchall()
            ]

    async def mark_published(self, message_id: int) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(order_outbox)
                    .where(order_outbox.c.id == message_id)
                    .values(published_at=datetime.now(timezone.utc))
                )

    async def record_failure(self, message_id: int, error: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(order_outbox)
                    .where(order_outbox.c.id == message_id)
                    .values(attempts=order_outbox.c.attempts + 1, last_error=error[:1000])
                )


async def relay_pending(store: OutboxStore, transport: EventTransport, batch_size: int = 100) -> int:
    """
    未発行のイベントを古い順に再送する。送れた件数を返す。
    失敗した行は試行回数を増やして次回に回す。
    """
    delivered = 0
    for message in await store.fetch_pending(batch_size):
        try:
            await transport.publish(message.topic, message.key, message.payload)
        except PublishFailure as exc:
            logger.warning(
                "Outbox redelivery of %s/%s failed (attempt %d): %s",
                message.topic,
                message.key,
                message.attempts + 1,
                exc,
            )
            await store.record_failure(message.id, str(exc))
            continue
        await store.mark_published(message.id)
        delivered += 1
    if delivered:
        logger.info("Outbox relay delivered %d event(s)", delivered)
    return delivered


async def run_outbox_relay(
    store: OutboxStore,
    transport: EventTransport,
    shutdown_event: asyncio.Event,
    interval: float = 5.0,
    batch_size: int = 100,
) -> None:
    """shutdown_event がセットされるまで定期的に relay_pending を実行する。"""
    logger.info("Outbox relay started (interval=%.1fs)", interval)
    while not shutdown_event.is_set():
        try:
            await relay_pending(store, transport, batch_size)
        except Exception:
            logger.exception("Outbox relay iteration failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Outbox relay stopped")

"""
Marketing Service — Redis Streams コンシューマ

orders.placed ストリームをコンシューマグループで読み、
受信したイベントをマーケティング用リードモデルに投影する。

Pub/Sub と違い、サービスが停止していた間のメッセージも後から読める。
投影をコミットしてから XACK する (at-least-once)。
重複は projections 側で order_id により排除する。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import ResponseError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import projections

logger = logging.getLogger(__name__)

STREAM = "orders.placed"
GROUP = "marketing"
BATCH_SIZE = 50


async def ensure_group(redis_conn: aioredis.Redis, stream: str = STREAM, group: str = GROUP) -> None:
    try:
        await redis_conn.xgroup_create(stream, group, id="0", mkstream=True)
    except ResponseError as exc:
        if "BUSYGROUP" not in str(exc):
            raise


async def handle_message(
    async_session_factory: async_sessionmaker, fields: dict
) -> bool:
    """1件のメッセージを投影する。投影したら True、重複なら False。"""
    payload = json.loads(fields["payload"])
    async with async_session_factory() as session:
        applied = await projections.project_order_placed(session, payload)
    if applied:
        logger.info("Projected OrderPlaced for order %s", fields.get("key"))
    else:
        logger.info("Skipped duplicate OrderPlaced for order %s", fields.get("key"))
    return applied


async def run_subscriber(
    redis_url: str,
    async_session_factory: async_sessionmaker,
    shutdown_event: asyncio.Event,
    consumer_name: str = "marketing-1",
) -> None:
    """
    shutdown_event がセットされるまでストリームを読み続ける。
    起動直後はまず自分宛ての未 ACK メッセージ (前回の処理途中) を読み直す。
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    await ensure_group(redis_conn)
    logger.info("Consuming %s as %s/%s", STREAM, GROUP, consumer_name)

    last_id = "0"
    try:
        while not shutdown_event.is_set():
            response = await redis_conn.xreadgroup(
                GROUP, consumer_name, {STREAM: last_id}, count=BATCH_SIZE, block=1000
            )
            messages = response[0][1] if response else []
            for message_id, fields in messages:
                try:
                    await handle_message(async_session_factory, fields)
                except Exception:
                    # ACK しない → 次回起動時の読み直しで再処理
                    logger.exception("Failed to process message %s", message_id)
                    continue
                await redis_conn.xack(STREAM, GROUP, message_id)
            if last_id == "0" and len(messages) < BATCH_SIZE:
                # 未 ACK の読み直しが終わったら新着を読む
                last_id = ">"
    finally:
        await redis_conn.aclose()

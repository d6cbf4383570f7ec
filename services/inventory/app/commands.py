"""
Inventory Service — コマンドハンドラ (Write 側)

在庫の確保(Reserve)・解放(Release)・確定(Confirm)・期限切れ(Expire)を処理する。

確保の状態遷移:
    HELD → CONFIRMED  (注文がコミットされた)
    HELD → RELEASED   (注文側の補償トランザクション)
    HELD → EXPIRED    (有効期限までに確定されなかった)

同じ商品への同時確保は products 行の SELECT ... FOR UPDATE で直列化する。
確保は idempotency_key で冪等。同じキーの再送には同じ確保を返す。
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import products, stock_reservations

logger = logging.getLogger(__name__)

HELD = "HELD"
CONFIRMED = "CONFIRMED"
RELEASED = "RELEASED"
EXPIRED = "EXPIRED"


def _new_token() -> str:
    return secrets.token_urlsafe(24)


def _reservation_dict(row, **extra) -> dict:
    return {
        "success": True,
        "reservation_token": row.token,
        "product_id": str(row.product_id),
        "quantity": row.quantity,
        "status": row.status,
        **extra,
    }


async def create_product(
    session: AsyncSession, product_id: UUID, name: str, quantity: int
) -> dict:
    """商品を登録する (在庫の初期投入)。"""
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(products).values(
            id=product_id, name=name, quantity=quantity, reserved=0, updated_at=now
        )
    )
    await session.commit()
    return {"id": str(product_id), "name": name, "quantity": quantity, "reserved": 0}


async def reserve_stock(
    session: AsyncSession,
    product_id: UUID,
    idempotency_key: str,
    quantity: int,
    order_id: UUID | None = None,
    ttl_seconds: float = 900,
    now: datetime | None = None,
) -> dict:
    """
    在庫確保コマンド

    1. 同じ idempotency_key の確保が有効なら、それをそのまま返す
    2. 商品行をロックして空き在庫 (quantity - reserved) を確認
    3. 十分なら確保を記録し reserved を増やす
    """
    now = now or datetime.now(timezone.utc)
    if quantity <= 0:
        return {"success": False, "reason": "invalid_quantity"}

    existing = (
        await session.execute(
            select(stock_reservations)
            .where(stock_reservations.c.idempotency_key == idempotency_key)
            .with_for_update()
        )
    ).fetchone()
    if existing is not None and existing.status in (HELD, CONFIRMED):
        await session.rollback()
        return _reservation_dict(existing, replayed=True)

    product = (
        await session.execute(
            select(products).where(products.c.id == product_id).with_for_update()
        )
    ).fetchone()
    if product is None:
        await session.rollback()
        return {"success": False, "reason": "product_not_found", "available": 0}

    available = product.quantity - product.reserved
    if available < quantity:
        await session.rollback()
        logger.info(
            "Insufficient stock for %s: requested=%d, available=%d",
            product_id,
            quantity,
            available,
        )
        return {"success": False, "reason": "insufficient_stock", "available": available}

    token = _new_token()
    values = {
        "token": token,
        "product_id": product_id,
        "order_id": order_id,
        "quantity": quantity,
        "status": HELD,
        "created_at": now,
        "expires_at": now + timedelta(seconds=ttl_seconds),
    }
    if existing is None:
        await session.execute(
            insert(stock_reservations).values(idempotency_key=idempotency_key, **values)
        )
    else:
        # 解放・期限切れになった確保を同じキーで取り直す
        await session.execute(
            update(stock_reservations)
            .where(stock_reservations.c.idempotency_key == idempotency_key)
            .values(**values)
        )
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(reserved=products.c.reserved + quantity, updated_at=now)
    )
    await session.commit()

    return {
        "success": True,
        "reservation_token": token,
        "product_id": str(product_id),
        "quantity": quantity,
        "status": HELD,
        "expires_at": values["expires_at"].isoformat(),
    }


async def _load_for_update(session: AsyncSession, token: str):
    return (
        await session.execute(
            select(stock_reservations)
            .where(stock_reservations.c.token == token)
            .with_for_update()
        )
    ).fetchone()


async def release_reservation(session: AsyncSession, token: str) -> dict:
    """
    在庫解放コマンド（注文側の補償トランザクション）

    HELD の確保だけを解放する。解放済み・期限切れへの再送は成功扱い。
    """
    now = datetime.now(timezone.utc)
    row = await _load_for_update(session, token)
    if row is None:
        await session.rollback()
        return {"success": False, "reason": "reservation_not_found"}
    if row.status in (RELEASED, EXPIRED):
        await session.rollback()
        return _reservation_dict(row)
    if row.status == CONFIRMED:
        await session.rollback()
        return {"success": False, "reason": "already_confirmed"}

    await session.execute(
        update(stock_reservations)
        .where(stock_reservations.c.token == token)
        .values(status=RELEASED)
    )
    await session.execute(
        update(products)
        .where(products.c.id == row.product_id)
        .values(reserved=products.c.reserved - row.quantity, updated_at=now)
    )
    await session.commit()
    return {**_reservation_dict(row), "status": RELEASED}


async def confirm_reservation(session: AsyncSession, token: str) -> dict:
    """
    在庫確定コマンド

    注文がコミットされたら確保を在庫の減算に変える。確定済みへの再送は成功扱い。
    """
    now = datetime.now(timezone.utc)
    row = await _load_for_update(session, token)
    if row is None:
        await session.rollback()
        return {"success": False, "reason": "reservation_not_found"}
    if row.status == CONFIRMED:
        await session.rollback()
        return _reservation_dict(row)
    if row.status != HELD:
        await session.rollback()
        return {"success": False, "reason": f"reservation_{row.status.lower()}"}

    await session.execute(
        update(stock_reservations)
        .where(stock_reservations.c.token == token)
        .values(status=CONFIRMED)
    )
    await session.execute(
        update(products)
        .where(products.c.id == row.product_id)
        .values(
            quantity=products.c.quantity - row.quantity,
            reserved=products.c.reserved - row.quantity,
            updated_at=now,
        )
    )
    await session.commit()
    return {**_reservation_dict(row), "status": CONFIRMED}


async def expire_reservations(session: AsyncSession, now: datetime | None = None) -> int:
    """
    有効期限を過ぎた HELD の確保を EXPIRED にして在庫を戻す。

    注文側が確保と補償の間で落ちた場合に残る確保は、ここで回収される。
    """
    now = now or datetime.now(timezone.utc)
    rows = (
        await session.execute(
            select(stock_reservations)
            .where(stock_reservations.c.status == HELD)
            .where(stock_reservations.c.expires_at <= now)
            .with_for_update()
        )
    ).fetchall()
    for row in rows:
        await session.execute(
            update(stock_reservations)
            .where(stock_reservations.c.token == row.token)
            .values(status=EXPIRED)
        )
        await session.execute(
            update(products)
            .where(products.c.id == row.product_id)
            .values(reserved=products.c.reserved - row.quantity, updated_at=now)
        )
    await session.commit()
    if rows:
        logger.info("Expired %d stale reservation(s)", len(rows))
    return len(rows)

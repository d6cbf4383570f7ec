"""
Inventory Service — FastAPI エントリーポイント

Products 機能。在庫の確保・解放・確定を HTTP で公開する。
Order Service はこの API 経由でのみ在庫に触れる (DB は共有しない)。

バックグラウンドで期限切れの確保を定期的に回収する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import commands, queries
from .config import Settings

logger = logging.getLogger(__name__)

settings = Settings.from_env()

_FAILURE_STATUS = {
    "product_not_found": 404,
    "reservation_not_found": 404,
    "insufficient_stock": 409,
    "already_confirmed": 409,
    "invalid_quantity": 422,
}


async def run_expiry_loop(
    session_factory: async_sessionmaker, shutdown_event: asyncio.Event, interval: float
) -> None:
    """shutdown_event がセットされるまで期限切れの確保を回収し続ける。"""
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                await commands.expire_reservations(session)
        except Exception:
            logger.exception("Failed to expire reservations")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    engine = create_async_engine(settings.database_url, echo=False)
    app.state.session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    shutdown_event = asyncio.Event()
    expiry_task = asyncio.create_task(
        run_expiry_loop(app.state.session_factory, shutdown_event, settings.expiry_poll_interval)
    )
    yield
    shutdown_event.set()
    await expiry_task
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


def _raise_for_failure(result: dict) -> dict:
    if not result["success"]:
        raise HTTPException(
            status_code=_FAILURE_STATUS.get(result["reason"], 409),
            detail={k: v for k, v in result.items() if k != "success"},
        )
    return result


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    id: UUID
    name: str
    quantity: int


class ReserveRequest(BaseModel):
    idempotency_key: str
    order_id: UUID | None = None
    quantity: int


# ── Command Endpoints ────────────────────────────


@app.post("/commands/products", status_code=201)
async def cmd_create_product(req: CreateProductRequest, request: Request):
    async with request.app.state.session_factory() as session:
        return await commands.create_product(session, req.id, req.name, req.quantity)


@app.post("/commands/inventory/{product_id}/reserve")
async def cmd_reserve(product_id: UUID, req: ReserveRequest, request: Request):
    """在庫確保コマンド"""
    async with request.app.state.session_factory() as session:
        result = await commands.reserve_stock(
            session,
            product_id,
            req.idempotency_key,
            req.quantity,
            order_id=req.order_id,
            ttl_seconds=settings.reservation_ttl_seconds,
        )
        return _raise_for_failure(result)


@app.post("/commands/reservations/{token}/release")
async def cmd_release(token: str, request: Request):
    """在庫解放コマンド（補償トランザクション）"""
    async with request.app.state.session_factory() as session:
        return _raise_for_failure(await commands.release_reservation(session, token))


@app.post("/commands/reservations/{token}/confirm")
async def cmd_confirm(token: str, request: Request):
    """在庫確定コマンド"""
    async with request.app.state.session_factory() as session:
        return _raise_for_failure(await commands.confirm_reservation(session, token))


# ── Query Endpoints ──────────────────────────────


@app.get("/queries/products")
async def query_list_products(request: Request):
    async with request.app.state.session_factory() as session:
        return await queries.list_products(session)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: UUID, request: Request):
    async with request.app.state.session_factory() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


@app.get("/queries/reservations/{token}")
async def query_get_reservation(token: str, request: Request):
    async with request.app.state.session_factory() as session:
        reservation = await queries.get_reservation(session, token)
        if not reservation:
            raise HTTPException(404, "Reservation not found")
        return reservation


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}

"""
Order Service — FastAPI エントリーポイント

注文確定ワークフロー (PlaceOrder) を HTTP API として公開する。
部品は lifespan でコンストラクタ注入により組み立てる。

  ┌──────────┐   reserve / release / confirm   ┌───────────────────┐
  │  Order   │ ──────────── HTTP ────────────▶ │ Inventory Service │
  │ Service  │                                 └───────────────────┘
  │          │ ── orders.placed (Redis Streams) ──▶ Marketing Service
  └────┬─────┘
       │  orders / order_line_items / order_outbox
  ┌────▼─────┐
  │ Order DB │
  └──────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import queries
from .aggregate import OrderLineItem, OrderRequest
from .config import Settings
from .errors import DependencyUnavailable, OutOfStock, PersistenceFailure, ValidationError
from .inventory_client import InventoryReservationClient
from .outbox import OutboxStore, run_outbox_relay
from .persistence import OrderPersistenceGateway
from .publisher import EventPublisher, RedisStreamTransport
from .resilience import CircuitBreaker, CircuitBreakerConfig
from .workflow import PlaceOrderWorkflow

logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)

    engine = create_async_engine(settings.database_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    http = httpx.AsyncClient(timeout=settings.inventory_timeout)

    breaker = CircuitBreaker(
        "inventory-service",
        CircuitBreakerConfig(
            failure_threshold=settings.breaker_failure_threshold,
            cooldown_seconds=settings.breaker_cooldown_seconds,
        ),
    )
    transport = RedisStreamTransport(redis)
    outbox = OutboxStore(session_factory)
    publisher = EventPublisher(transport, outbox, settings.publish_retry)
    workflow = PlaceOrderWorkflow(
        InventoryReservationClient(
            http,
            settings.inventory_service_url,
            breaker,
            settings.inventory_retry,
            settings.inventory_timeout,
        ),
        OrderPersistenceGateway(session_factory),
        publisher,
        persist_timeout=settings.persist_timeout,
        publish_timeout=settings.publish_timeout,
    )

    app.state.session_factory = session_factory
    app.state.breaker = breaker
    app.state.workflow = workflow

    shutdown_event = asyncio.Event()
    relay_task = asyncio.create_task(
        run_outbox_relay(
            outbox,
            transport,
            shutdown_event,
            interval=settings.outbox_poll_interval,
            batch_size=settings.outbox_batch_size,
        )
    )
    yield
    shutdown_event.set()
    await relay_task
    await publisher.drain()
    await http.aclose()
    await redis.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class LineItemRequest(BaseModel):
    product_id: UUID
    quantity: int
    unit_price: Decimal


class PlaceOrderRequest(BaseModel):
    order_id: UUID | None = None
    customer_id: str | None = None
    line_items: list[LineItemRequest] = []

    def to_domain(self) -> OrderRequest:
        return OrderRequest(
            customer_id=self.customer_id,
            line_items=tuple(
                OrderLineItem(item.product_id, item.quantity, item.unit_price)
                for item in self.line_items
            ),
            order_id=self.order_id,
        )


# ── Command Endpoints ────────────────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_place_order(req: PlaceOrderRequest, request: Request):
    """注文確定コマンド"""
    workflow: PlaceOrderWorkflow = request.app.state.workflow
    try:
        order = await workflow.place_order(req.to_domain())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"errors": e.errors})
    except OutOfStock as e:
        raise HTTPException(
            status_code=409,
            detail={
                "reason": str(e),
                "product_id": str(e.product_id),
                "requested": e.requested,
                "available": e.available,
            },
        )
    except DependencyUnavailable as e:
        headers = {"Retry-After": str(int(e.retry_after) + 1)} if e.retry_after else None
        raise HTTPException(status_code=503, detail=str(e), headers=headers)
    except PersistenceFailure as e:
        logger.error("Order placement failed: %s", e)
        raise HTTPException(status_code=500, detail="Order could not be stored")
    return order.to_dict()


# ── Query Endpoints ──────────────────────────────


@app.get("/queries/orders")
async def query_list_orders(request: Request, customer_id: str | None = None):
    async with request.app.state.session_factory() as session:
        return await queries.list_orders(session, customer_id)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID, request: Request):
    async with request.app.state.session_factory() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/health")
async def health(request: Request):
    breaker: CircuitBreaker = request.app.state.breaker
    return {"status": "ok", "service": "order-service", "inventory_circuit": breaker.snapshot()}

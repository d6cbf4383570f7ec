"""
Fixtures for the order service.

The Products capability is simulated in memory behind httpx.MockTransport so the
real InventoryReservationClient (HTTP mapping, retry, circuit breaker) is exercised.
"""

import json
import secrets
from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio

from services.order.app.config import RetryPolicy
from services.order.app.errors import PublishFailure
from services.order.app.inventory_client import InventoryReservationClient
from services.order.app.outbox import OutboxStore
from services.order.app.persistence import OrderPersistenceGateway
from services.order.app.publisher import EventPublisher
from services.order.app.resilience import CircuitBreaker, CircuitBreakerConfig
from services.order.app.schema import metadata
from services.order.app.workflow import PlaceOrderWorkflow

INVENTORY_URL = "http://inventory.test"


class FakeProducts:
    """In-memory Products service speaking the inventory HTTP contract."""

    def __init__(self) -> None:
        self.available: dict[UUID, int] = {}
        self.reservations: dict[str, dict] = {}
        self.tokens_by_key: dict[str, str] = {}
        self.network_calls = 0
        self.released: list[str] = []
        self.fail_next = 0
        self.connect_errors = 0
        self.fail_releases = False

    def add_product(self, quantity: int) -> UUID:
        product_id = uuid4()
        self.available[product_id] = quantity
        return product_id

    def held(self) -> list[dict]:
        return [r for r in self.reservations.values() if r["status"] == "HELD"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.network_calls += 1
        if self.connect_errors:
            self.connect_errors -= 1
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_next:
            self.fail_next -= 1
            return httpx.Response(503, text="service unavailable")

        parts = request.url.path.strip("/").split("/")
        if parts[:2] == ["commands", "inventory"] and parts[3] == "reserve":
            return self._reserve(UUID(parts[2]), json.loads(request.content))
        if parts[:2] == ["commands", "reservations"]:
            reservation = self.reservations.get(parts[2])
            if reservation is None:
                return httpx.Response(404, json={"detail": {"reason": "reservation_not_found"}})
            if parts[3] == "release":
                return self._release(reservation)
            if parts[3] == "confirm":
                reservation["status"] = "CONFIRMED"
                return httpx.Response(200, json={"success": True, "status": "CONFIRMED"})
        return httpx.Response(400, text="unknown route")

    def _reserve(self, product_id: UUID, body: dict) -> httpx.Response:
        key = body["idempotency_key"]
        token = self.tokens_by_key.get(key)
        if token and self.reservations[token]["status"] in ("HELD", "CONFIRMED"):
            return httpx.Response(200, json={"success": True, "reservation_token": token})
        if product_id not in self.available:
            return httpx.Response(404, json={"detail": {"reason": "product_not_found"}})
        quantity = body["quantity"]
        if self.available[product_id] < quantity:
            return httpx.Response(
                409,
                json={
                    "detail": {
                        "reason": "insufficient_stock",
                        "available": self.available[product_id],
                    }
                },
            )
        self.available[product_id] -= quantity
        token = secrets.token_hex(8)
        self.tokens_by_key[key] = token
        self.reservations[token] = {
            "product_id": product_id,
            "quantity": quantity,
            "status": "HELD",
        }
        return httpx.Response(200, json={"success": True, "reservation_token": token})

    def _release(self, reservation: dict) -> httpx.Response:
        if self.fail_releases:
            return httpx.Response(503, text="service unavailable")
        token = next(t for t, r in self.reservations.items() if r is reservation)
        if reservation["status"] == "HELD":
            reservation["status"] = "RELEASED"
            self.available[reservation["product_id"]] += reservation["quantity"]
            self.released.append(token)
        return httpx.Response(200, json={"success": True, "status": "RELEASED"})


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport:
    """Message transport that can be told to fail the next N publishes."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str, dict]] = []
        self.fail_next = 0

    async def publish(self, topic: str, key: str, payload: dict) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise PublishFailure("broker unreachable")
        self.published.append((topic, key, payload))


@pytest.fixture
def products() -> FakeProducts:
    return FakeProducts()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(
        "inventory-service",
        CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=30.0),
        clock=clock,
    )


@pytest_asyncio.fixture
async def http_client(products):
    async with httpx.AsyncClient(transport=httpx.MockTransport(products.handler)) as client:
        yield client


@pytest.fixture
def inventory_client(http_client, breaker) -> InventoryReservationClient:
    return InventoryReservationClient(
        http_client,
        INVENTORY_URL,
        breaker,
        RetryPolicy(max_attempts=3, base_delay=0, max_delay=0),
        timeout=1.0,
    )


@pytest_asyncio.fixture
async def session_factory(make_session_factory):
    return await make_session_factory(metadata)


@pytest.fixture
def gateway(session_factory) -> OrderPersistenceGateway:
    return OrderPersistenceGateway(session_factory)


@pytest.fixture
def outbox(session_factory) -> OutboxStore:
    return OutboxStore(session_factory)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def publisher(transport, outbox) -> EventPublisher:
    return EventPublisher(transport, outbox, RetryPolicy(max_attempts=3, base_delay=0, max_delay=0))


@pytest.fixture
def workflow(inventory_client, gateway, publisher) -> PlaceOrderWorkflow:
    return PlaceOrderWorkflow(
        inventory_client, gateway, publisher, persist_timeout=2.0, publish_timeout=1.0
    )

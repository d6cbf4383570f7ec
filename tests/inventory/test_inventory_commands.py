"""Tests for the inventory command and query handlers."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from services.inventory.app import commands, queries


async def _product(session_factory, product_id) -> dict:
    async with session_factory() as session:
        return await queries.get_product(session, product_id)


async def _reserve(session_factory, product_id, key, quantity, **kwargs) -> dict:
    async with session_factory() as session:
        return await commands.reserve_stock(session, product_id, key, quantity, **kwargs)


class TestReserveStock:
    @pytest.mark.asyncio
    async def test_holds_stock(self, session_factory, make_product) -> None:
        product_id = await make_product(10)
        result = await _reserve(session_factory, product_id, "o1:0", 4, order_id=uuid4())

        assert result["success"] is True
        assert result["status"] == commands.HELD
        product = await _product(session_factory, product_id)
        assert (product["quantity"], product["reserved"], product["available"]) == (10, 4, 6)

    @pytest.mark.asyncio
    async def test_insufficient_stock_reports_available(
        self, session_factory, make_product
    ) -> None:
        product_id = await make_product(1)
        result = await _reserve(session_factory, product_id, "o1:0", 1_000_000)
        assert result == {"success": False, "reason": "insufficient_stock", "available": 1}
        assert (await _product(session_factory, product_id))["reserved"] == 0

    @pytest.mark.asyncio
    async def test_unknown_product(self, session_factory) -> None:
        result = await _reserve(session_factory, uuid4(), "o1:0", 1)
        assert result["reason"] == "product_not_found"

    @pytest.mark.asyncio
    async def test_rejects_non_positive_quantity(self, session_factory, make_product) -> None:
        product_id = await make_product(1)
        result = await _reserve(session_factory, product_id, "o1:0", 0)
        assert result["reason"] == "invalid_quantity"

    @pytest.mark.asyncio
    async def test_same_key_is_replayed(self, session_factory, make_product) -> None:
        product_id = await make_product(10)
        first = await _reserve(session_factory, product_id, "o1:0", 3)
        second = await _reserve(session_factory, product_id, "o1:0", 3)

        assert second["reservation_token"] == first["reservation_token"]
        assert second["replayed"] is True
        assert (await _product(session_factory, product_id))["reserved"] == 3

    @pytest.mark.asyncio
    async def test_released_key_can_be_reserved_again(
        self, session_factory, make_product
    ) -> None:
        product_id = await make_product(5)
        first = await _reserve(session_factory, product_id, "o1:0", 5)
        async with session_factory() as session:
            await commands.release_reservation(session, first["reservation_token"])

        second = await _reserve(session_factory, product_id, "o1:0", 5)
        assert second["success"] is True
        assert second["reservation_token"] != first["reservation_token"]
        assert (await _product(session_factory, product_id))["available"] == 0


class TestReleaseReservation:
    @pytest.mark.asyncio
    async def test_returns_stock(self, session_factory, make_product) -> None:
        product_id = await make_product(5)
        token = (await _reserve(session_factory, product_id, "o1:0", 2))["reservation_token"]

        async with session_factory() as session:
            result = await commands.release_reservation(session, token)

        assert result["status"] == commands.RELEASED
        assert (await _product(session_factory, product_id))["available"] == 5

    @pytest.mark.asyncio
    async def test_repeated_release_is_a_no_op(self, session_factory, make_product) -> None:
        product_id = await make_product(5)
        token = (await _reserve(session_factory, product_id, "o1:0", 2))["reservation_token"]

        for _ in range(2):
            async with session_factory() as session:
                result = await commands.release_reservation(session, token)
            assert result["success"] is True
        product = await _product(session_factory, product_id)
        assert (product["reserved"], product["available"]) == (0, 5)

    @pytest.mark.asyncio
    async def test_unknown_token(self, session_factory) -> None:
        async with session_factory() as session:
            result = await commands.release_reservation(session, "missing")
        assert result == {"success": False, "reason": "reservation_not_found"}

    @pytest.mark.asyncio
    async def test_confirmed_reservation_cannot_be_released(
        self, session_factory, make_product
    ) -> None:
        product_id = await make_product(5)
        token = (await _reserve(session_factory, product_id, "o1:0", 2))["reservation_token"]
        async with session_factory() as session:
            await commands.confirm_reservation(session, token)
        async with session_factory() as session:
            result = await commands.release_reservation(session, token)
        assert result["reason"] == "already_confirmed"


class TestConfirmReservation:
    @pytest.mark.asyncio
    async def test_deducts_stock(self, session_factory, make_product) -> None:
        product_id = await make_product(5)
        token = (await _reserve(session_factory, product_id, "o1:0", 2))["reservation_token"]

        for _ in range(2):
            async with session_factory() as session:
                result = await commands.confirm_reservation(session, token)
            assert result["status"] == commands.CONFIRMED

        product = await _product(session_factory, product_id)
        assert (product["quantity"], product["reserved"], product["available"]) == (3, 0, 3)

    @pytest.mark.asyncio
    async def test_released_reservation_cannot_be_confirmed(
        self, session_factory, make_product
    ) -> None:
        product_id = await make_product(5)
        token = (await _reserve(session_factory, product_id, "o1:0", 2))["reservation_token"]
        async with session_factory() as session:
            await commands.release_reservation(session, token)
        async with session_factory() as session:
            result = await commands.confirm_reservation(session, token)
        assert result == {"success": False, "reason": "reservation_released"}


class TestExpireReservations:
    @pytest.mark.asyncio
    async def test_expires_only_stale_holds(self, session_factory, make_product) -> None:
        product_id = await make_product(10)
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        stale = await _reserve(session_factory, product_id, "o1:0", 2, ttl_seconds=60, now=t0)
        fresh = await _reserve(
            session_factory, product_id, "o2:0", 3, ttl_seconds=600, now=t0
        )

        async with session_factory() as session:
            expired = await commands.expire_reservations(session, now=t0 + timedelta(seconds=120))

        assert expired == 1
        async with session_factory() as session:
            stale_row = await queries.get_reservation(session, stale["reservation_token"])
            fresh_row = await queries.get_reservation(session, fresh["reservation_token"])
        assert stale_row["status"] == commands.EXPIRED
        assert fresh_row["status"] == commands.HELD
        assert (await _product(session_factory, product_id))["reserved"] == 3

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, session_factory) -> None:
        async with session_factory() as session:
            assert await commands.expire_reservations(session) == 0


class TestProductQueries:
    @pytest.mark.asyncio
    async def test_list_products_sorted_by_name(self, session_factory, make_product) -> None:
        await make_product(1, name="bolt")
        await make_product(2, name="anvil")
        async with session_factory() as session:
            listed = await queries.list_products(session)
        assert [p["name"] for p in listed] == ["anvil", "bolt"]

    @pytest.mark.asyncio
    async def test_unknown_product_is_none(self, session_factory) -> None:
        assert await _product(session_factory, uuid4()) is None

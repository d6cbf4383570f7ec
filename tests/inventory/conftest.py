"""Fixtures for the inventory service."""

from uuid import uuid4

import pytest_asyncio

from services.inventory.app import commands
from services.inventory.app.schema import metadata


@pytest_asyncio.fixture
async def session_factory(make_session_factory):
    return await make_session_factory(metadata)


@pytest_asyncio.fixture
async def make_product(session_factory):
    """Register a product with the given stock and return its id."""

    async def _make(quantity: int, name: str = "widget"):
        product_id = uuid4()
        async with session_factory() as session:
            await commands.create_product(session, product_id, name, quantity)
        return product_id

    return _make

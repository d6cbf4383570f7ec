"""Fixtures for the marketing service."""

import pytest_asyncio

from services.marketing.app.schema import metadata


@pytest_asyncio.fixture
async def session_factory(make_session_factory):
    return await make_session_factory(metadata)

"""
Shared pytest fixtures.

SQL code of every service runs against a temporary SQLite file through
aiosqlite; production uses PostgreSQL via asyncpg with the same SQLAlchemy code.
"""

import pytest
import pytest_asyncio
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    yield engine
    await engine.dispose()


@pytest.fixture
def make_session_factory(sqlite_engine):
    """Create the given tables and return a session factory bound to them."""

    async def _make(metadata: MetaData) -> async_sessionmaker[AsyncSession]:
        async with sqlite_engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        return async_sessionmaker(sqlite_engine, class_=AsyncSession, expire_on_commit=False)

    return _make

"""Shared pytest fixtures for SeedFlow tests."""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from seedflow.core.config import get_settings
from seedflow.core.database import Base
from seedflow.main import app


@pytest.fixture
async def client():
    """Create async HTTP client for testing FastAPI endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def session_maker():
    """Create an async session factory over freshly created tables.

    Creates all tables before the test and drops them afterwards.
    Requires PostgreSQL to be running (docker-compose up -d).
    """
    # Register the state store tables on Base.metadata.
    import seedflow.features.orchestrator.models  # noqa: F401

    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    # Cleanup: drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()

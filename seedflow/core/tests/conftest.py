"""Pytest fixtures for core tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from seedflow.main import create_app


@pytest.fixture
def app():
    """Fresh application without lifespan (no orchestrator on app state)."""
    return create_app()


@pytest.fixture
async def client(app):
    """Create async HTTP client for testing FastAPI endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

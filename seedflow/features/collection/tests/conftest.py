"""Pytest fixtures for collection tests."""

import httpx
import pytest

from seedflow.core.config import Settings
from seedflow.features.collection.connectors import HttpApiConnector, StaticConnector


@pytest.fixture
def fast_settings():
    """Settings with instant retries so failure paths run quickly."""
    return Settings(
        collection_retry_attempts=3,
        collection_retry_base_delay_seconds=0.0,
        collection_retry_max_delay_seconds=0.0,
        collection_timeout_seconds=2.0,
        collection_max_workers=4,
    )


@pytest.fixture
def social_rows():
    """Native rows from a social analytics export."""
    return [
        {"id": f"p{i}", "platform": "instagram", "impressions": 1000 + i, "likes": 50 + i}
        for i in range(5)
    ]


@pytest.fixture
def healthy_source(social_rows):
    """Static source that always answers."""
    return StaticConnector("source-a", social_rows, "social_post", reliability=0.9)


@pytest.fixture
def down_source():
    """Static source that is unreachable."""
    return StaticConnector("source-c", [], "social_post", available=False)


@pytest.fixture
def rate_limited_source():
    """HTTP source answering two pages then HTTP 429."""
    calls = {"pages": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("limit") == "1":
            return httpx.Response(200, json={"data": []})
        calls["pages"] += 1
        if calls["pages"] > 2:
            return httpx.Response(429, headers={"Retry-After": "0"})
        page = request.url.params["page"]
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": f"b-{page}-{i}", "platform": "x", "impressions": 200 + i}
                    for i in range(2)
                ]
            },
        )

    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.example.test"
    )
    connector = HttpApiConnector(
        "source-b",
        "https://api.example.test",
        "/posts",
        "social_post",
        client=client,
        reliability=0.7,
    )
    connector.calls = calls  # type: ignore[attr-defined]
    return connector

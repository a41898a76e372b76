"""Pytest fixtures for orchestrator tests."""

import asyncio

import pytest

from seedflow.core.config import Settings
from seedflow.features.collection.connectors import StaticConnector
from seedflow.features.distribution.schemas import TargetConfig
from seedflow.features.orchestrator.service import SeedingOrchestrator
from seedflow.features.orchestrator.store import MemoryStateStore
from seedflow.features.scoring.governance import pii_detection


class Recorder:
    """Direct delivery handler that records batches and can fail on demand."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches = []

    async def __call__(self, batch):
        if self.fail:
            raise ConnectionError("target unreachable")
        self.batches.append(batch)

    @property
    def record_ids(self):
        return [row["record_id"] for batch in self.batches for row in batch.rows]

    def last_record_ids(self):
        return [row["record_id"] for row in self.batches[-1].rows]


class Gate(Recorder):
    """Handler that blocks until released, to hold a run in distribution."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, batch):
        self.entered.set()
        await self.release.wait()
        await super().__call__(batch)


def social_rows(count=100, *, pii_every=10, likes=50):
    """Native social rows; every ``pii_every``-th row leaks an e-mail address."""
    rows = []
    for i in range(count):
        text = "launch recap"
        if pii_every and i % pii_every == 0:
            text = f"questions to owner{i}@example.com"
        rows.append(
            {
                "id": f"p{i}",
                "platform": "instagram",
                "impressions": 1000 + i,
                "reach": 800 + i,
                "likes": likes + i % 7,
                "comments": 5,
                "shares": 2,
                "text": text,
            }
        )
    return rows


def target(target_id, **overrides):
    return TargetConfig(target_id=target_id, schemas=["content_performance"], **overrides)


@pytest.fixture
def orchestrator_settings(tmp_path):
    """Settings with instant retries, an in-memory store and a temp config path."""
    return Settings(
        app_env="testing",
        state_store_backend="memory",
        collection_retry_attempts=1,
        collection_retry_base_delay_seconds=0.0,
        collection_retry_max_delay_seconds=0.0,
        distribution_retry_attempts=2,
        distribution_retry_base_delay_seconds=0.0,
        distribution_timeout_seconds=5.0,
        realtime_poll_interval_seconds=0.01,
        distribution_config_path=str(tmp_path / "distribution.yaml"),
    )


@pytest.fixture
def make_rows():
    return social_rows


@pytest.fixture
def make_target():
    return target


@pytest.fixture
def recorder():
    """Factory for recording handlers."""

    def _make(fail=False):
        return Recorder(fail)

    return _make


@pytest.fixture
def gate():
    return Gate()


@pytest.fixture
def source():
    return StaticConnector("source-a", social_rows(), "social_post", reliability=0.9)


@pytest.fixture
def engine_target():
    return Recorder()


@pytest.fixture
async def orchestrator(orchestrator_settings, source, engine_target):
    """Orchestrator with one static source, one direct target and PII detection only."""
    orchestrator = SeedingOrchestrator(orchestrator_settings, MemoryStateStore())
    orchestrator.scoring.set_policies([pii_detection()])
    orchestrator.register_source(source)
    orchestrator.register_target(target("engine"), engine_target)
    yield orchestrator
    await orchestrator.aclose()

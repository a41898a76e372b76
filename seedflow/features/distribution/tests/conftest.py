"""Pytest fixtures for distribution tests."""

from datetime import UTC, datetime

import pytest

from seedflow.core.config import Settings
from seedflow.features.cleaning.schemas import CanonicalRecord, QualityScore

NOW = datetime(2026, 4, 1, 8, 0, tzinfo=UTC)


class Recorder:
    """Direct delivery handler that records batches and can fail on demand."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls = 0
        self.batches = []

    async def __call__(self, batch):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConnectionError("target unreachable")
        self.batches.append(batch)

    @property
    def rows(self):
        return [row for batch in self.batches for row in batch.rows]

    @property
    def record_ids(self):
        return [row["record_id"] for row in self.rows]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def distribution_settings():
    """Settings with instant retries and a small real-time queue."""
    return Settings(
        distribution_retry_attempts=3,
        distribution_retry_base_delay_seconds=0.0,
        distribution_timeout_seconds=5.0,
        distribution_batch_workers=4,
        distribution_realtime_workers=2,
        realtime_queue_size=5,
        realtime_poll_interval_seconds=0.01,
    )


@pytest.fixture
def recorder():
    """Factory for recording handlers."""

    def _make(fail_times=0):
        return Recorder(fail_times)

    return _make


@pytest.fixture
def make_scored():
    """Factory for scored content_performance records."""

    def _make(
        i=0,
        *,
        schema="content_performance",
        quality=0.9,
        confidence=0.8,
        governance="passed",
        blocked_by=None,
        provenance="observed",
        fields=None,
        run_id="run-1",
    ):
        values = {
            "platform": "instagram",
            "post_id": str(i),
            "engagement_rate": 4.0,
            "region": "emea",
            **(fields or {}),
        }
        entity_key = f"instagram|{i}"
        return CanonicalRecord(
            record_id=CanonicalRecord.compute_id(schema, entity_key, values, {}, provenance),
            run_id=run_id,
            schema_name=schema,
            entity_key=entity_key,
            source_id="synthetic:social" if provenance == "synthetic" else "source-a",
            source_key=entity_key,
            provenance=provenance,
            collected_at=NOW,
            observed_at=NOW,
            fields=values,
            quality=QualityScore(score=quality, dimensions={}, weights={}),
            confidence=confidence,
            governance_status=governance,
            governance_blocked_by=blocked_by or [],
        )

    return _make

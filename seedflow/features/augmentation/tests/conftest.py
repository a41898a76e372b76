"""Pytest fixtures for augmentation tests."""

from datetime import UTC, datetime, timedelta

import pytest

from seedflow.core.config import Settings
from seedflow.features.augmentation.schemas import BenchmarkMetric, BenchmarkSnapshot
from seedflow.features.cleaning.canonical import content_performance_schema
from seedflow.features.cleaning.service import normalize
from seedflow.features.collection.schemas import RawRecord, build_payload

NOW = datetime(2026, 2, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def now():
    """Fixed augmentation reference time."""
    return NOW


@pytest.fixture
def augmentation_settings():
    """Settings with a 30% synthetic cap and 30-day benchmark horizon."""
    return Settings(synthetic_max_ratio=0.3, synthetic_seed=42, benchmark_max_age_hours=720)


@pytest.fixture
def observed_posts():
    """Ten observed content_performance records."""
    raws = []
    for i in range(10):
        payload, extra = build_payload(
            "social_post",
            {
                "platform": "instagram",
                "post_id": f"obs-{i}",
                "posted_at": NOW - timedelta(hours=i),
                "impressions": 1000 + 100 * i,
                "reach": 800,
                "likes": 40 + i,
                "engagement_rate": 2.0 + i * 0.5,
            },
        )
        raws.append(
            RawRecord(
                source_id="source-a",
                source_key=f"obs-{i}",
                collected_at=NOW,
                payload=payload,
                extra=extra,
            )
        )
    return normalize(raws, content_performance_schema(), run_id="run-1").records


@pytest.fixture
def engagement_metric():
    """Engagement-rate benchmark distribution."""
    return BenchmarkMetric(p10=1.0, p25=2.0, p50=3.0, p75=4.5, p90=6.0, sample_size=400)


@pytest.fixture
def fresh_snapshot(engagement_metric):
    """Snapshot published one day before the reference time."""
    return BenchmarkSnapshot(
        sector="consumer_goods",
        provider="acme",
        as_of=NOW - timedelta(days=1),
        reliability=0.85,
        metrics={"engagement_rate": engagement_metric},
    )

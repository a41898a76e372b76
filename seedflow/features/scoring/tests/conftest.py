"""Pytest fixtures for scoring tests."""

from datetime import UTC, datetime

import pytest

from seedflow.core.config import Settings
from seedflow.features.cleaning.schemas import CanonicalRecord, RecordFlags

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

BASE_FIELDS = {
    "platform": "instagram",
    "post_id": "1",
    "author": "brand",
    "content_type": "image",
    "text": "Spring launch",
    "posted_at": NOW,
    "impressions": 1000,
    "reach": 800,
    "likes": 50,
    "comments": 10,
    "shares": 5,
    "saves": 3,
    "follower_count": 12000,
    "engagement_rate": 6.5,
    "audience_segment": "25-34",
    "region": "emea",
}


@pytest.fixture
def now():
    """Fixed scoring reference time."""
    return NOW


@pytest.fixture
def scoring_settings():
    """Settings with default scoring parameters."""
    return Settings(bias_min_group_size=5, bias_significance_level=0.05)


@pytest.fixture
def make_record():
    """Factory for content_performance canonical records."""

    def _make(
        overrides=None,
        *,
        schema="content_performance",
        source_id="source-a",
        provenance="observed",
        chain=None,
        observed_at=NOW,
        collected_at=NOW,
        flags=None,
        extra=None,
        fields=None,
    ):
        values = dict(BASE_FIELDS if fields is None else fields)
        values.update(overrides or {})
        entity_key = "|".join(str(values.get(k)) for k in ("platform", "post_id"))
        extra = extra or {}
        return CanonicalRecord(
            record_id=CanonicalRecord.compute_id(schema, entity_key, values, extra, provenance),
            schema_name=schema,
            entity_key=entity_key,
            source_id=source_id,
            source_key=entity_key,
            provenance=provenance,
            provenance_chain=chain if chain is not None else [f"connector:static:{source_id}"],
            collected_at=collected_at,
            observed_at=observed_at,
            fields=values,
            extra=extra,
            flags=flags or RecordFlags(),
        )

    return _make

"""Pytest fixtures for cleaning tests."""

from datetime import UTC, datetime

import pytest

from seedflow.core.config import Settings
from seedflow.features.collection.schemas import RawRecord, build_payload

COLLECTED = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def collected_at():
    """Default collection timestamp."""
    return COLLECTED


@pytest.fixture
def make_raw():
    """Factory for raw records built from native rows."""

    def _make(
        native,
        *,
        source_id="source-a",
        key="k1",
        kind="social_post",
        collected_at=COLLECTED,
        provenance="observed",
    ):
        payload, extra = build_payload(kind, native)
        return RawRecord(
            source_id=source_id,
            source_key=key,
            collected_at=collected_at,
            payload=payload,
            extra=extra,
            provenance=provenance,
            provenance_chain=(f"connector:static:{source_id}",),
        )

    return _make


@pytest.fixture
def cleaning_settings():
    """Settings with median imputation and IQR outliers."""
    return Settings(cleaning_imputation_strategy="statistical", cleaning_outlier_method="iqr")

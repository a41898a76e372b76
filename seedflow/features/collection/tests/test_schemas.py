"""Tests for raw record schemas."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from seedflow.features.collection.schemas import (
    CampaignPayload,
    RawRecord,
    SocialPostPayload,
    build_payload,
)

COLLECTED = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


class TestBuildPayload:
    """Tests for build_payload."""

    def test_known_fields_go_to_payload(self):
        """Test shape fields are typed and unknown fields kept in extra."""
        payload, extra = build_payload(
            "social_post", {"post_id": "1", "impressions": "120", "mood": "happy"}
        )

        assert isinstance(payload, SocialPostPayload)
        assert payload.impressions == 120
        assert extra == {"mood": "happy"}

    def test_invalid_values_move_to_extra(self):
        """Test values failing validation are preserved in extra, not dropped."""
        payload, extra = build_payload(
            "campaign", {"campaign_id": "c1", "spend": "n/a", "clicks": 10}
        )

        assert isinstance(payload, CampaignPayload)
        assert payload.spend is None
        assert payload.clicks == 10
        assert extra == {"spend": "n/a"}

    def test_unknown_kind_raises(self):
        """Test unknown payload kinds are rejected."""
        with pytest.raises(ValueError, match="Unknown payload kind"):
            build_payload("tweetstorm", {})


class TestRawRecord:
    """Tests for RawRecord."""

    def _record(self, collected_at=COLLECTED, **payload):
        return RawRecord(
            source_id="s1",
            source_key="k1",
            collected_at=collected_at,
            payload={"kind": "social_post", **payload},
        )

    def test_discriminated_payload(self):
        """Test payload dicts are parsed by their kind tag."""
        record = self._record(post_id="1")

        assert isinstance(record.payload, SocialPostPayload)
        assert record.kind == "social_post"

    def test_record_id_ignores_collection_time(self):
        """Test re-collecting the same observation keeps its identity."""
        first = self._record(post_id="1", likes=3)
        second = self._record(
            collected_at=datetime(2026, 1, 11, tzinfo=UTC), post_id="1", likes=3
        )

        assert first.record_id == second.record_id

    def test_record_id_changes_with_content(self):
        """Test different content yields different ids."""
        assert self._record(likes=3).record_id != self._record(likes=4).record_id

    def test_is_immutable(self):
        """Test raw records cannot be mutated."""
        record = self._record(post_id="1")

        with pytest.raises(ValidationError):
            record.source_id = "other"  # type: ignore[misc]

    def test_confidence_bounds(self):
        """Test raw_confidence must stay within [0, 1]."""
        with pytest.raises(ValidationError):
            RawRecord(
                source_id="s",
                source_key="k",
                collected_at=COLLECTED,
                payload={"kind": "page_view"},
                raw_confidence=1.5,
            )

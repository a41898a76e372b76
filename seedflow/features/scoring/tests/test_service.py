"""Tests for the scoring stage."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from seedflow.features.scoring.governance import pii_detection, synthetic_disclosure
from seedflow.features.scoring.service import ScoringService
from seedflow.shared.audit import AuditKind


class TestScoringService:
    """Tests for ScoringService.score."""

    async def test_scores_and_records_stage_statuses(self, scoring_settings, make_record, now):
        """Test quality, confidence, governance and bias outcomes are recorded."""
        audit = AsyncMock()
        service = ScoringService(scoring_settings, policies=[pii_detection()], audit=audit)
        records = [make_record({"post_id": str(i)}) for i in range(9)]
        records.append(make_record({"post_id": "leak", "text": "mail ceo@example.com"}))

        outcome = await service.score(
            records, run_id="run-1", reliability={"source-a": 0.9}, now=now
        )

        assert outcome.report.stages == {
            "quality": "passed",
            "governance": "blocked",
            "bias": "passed",
        }
        assert outcome.report.governance.blocked == 1
        assert all(r.quality is not None for r in outcome.records)
        assert outcome.records[0].confidence == pytest.approx(
            outcome.records[0].quality.score * 0.9
        )
        kinds = [call.args[0].kind for call in audit.await_args_list]
        assert kinds.count(AuditKind.GOVERNANCE_VIOLATION) == 1
        assert kinds.count(AuditKind.BIAS_REPORT) == 1

    async def test_unknown_source_uses_raw_confidence(self, scoring_settings, make_record, now):
        """Test synthetic records use their realism estimate as reliability."""
        service = ScoringService(scoring_settings, policies=[])
        record = make_record(source_id="synthetic:social").model_copy(update={"raw_confidence": 0.5})

        outcome = await service.score([record], reliability={}, now=now)

        scored = outcome.records[0]
        assert scored.confidence == pytest.approx(scored.quality.score * 0.5)

    async def test_confidence_decays_with_age(self, scoring_settings, make_record, now):
        """Test older observations carry lower confidence."""
        service = ScoringService(scoring_settings, policies=[])
        fresh = make_record({"post_id": "a"})
        stale = make_record({"post_id": "b"}, observed_at=now - timedelta(days=5))

        outcome = await service.score([fresh, stale], reliability={"source-a": 1.0}, now=now)

        assert outcome.records[1].confidence < outcome.records[0].confidence

    async def test_bias_blocks_stage(self, scoring_settings, make_record, now):
        """Test a critical bias report marks the bias stage blocked."""
        service = ScoringService(scoring_settings, policies=[])
        records = []
        for i in range(100):
            segment = "young" if i < 50 else "old"
            positive = (i % 50) < (45 if segment == "young" else 5)
            records.append(
                make_record(
                    {
                        "post_id": str(i),
                        "audience_segment": segment,
                        "engagement_rate": 6.0 if positive else 0.5,
                    }
                )
            )

        outcome = await service.score(records, now=now)

        assert outcome.report.stages["bias"] == "blocked"
        assert outcome.report.bias_for("content_performance").risk_tier == "critical"

    async def test_policies_can_be_replaced(self, scoring_settings, make_record, now):
        """Test the active policy set can be swapped at runtime."""
        service = ScoringService(scoring_settings, policies=[pii_detection()])
        service.set_policies([synthetic_disclosure()])

        outcome = await service.score([make_record({"text": "x@example.com"})], now=now)

        assert service.policy_names() == ["synthetic_disclosure"]
        assert outcome.report.governance.status == "passed"

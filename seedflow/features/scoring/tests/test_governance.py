"""Tests for governance policies."""

from datetime import timedelta

import pytest

from seedflow.features.scoring.governance import (
    GovernancePolicy,
    build_policy,
    consent_scope,
    evaluate_governance,
    minimum_completeness,
    pii_detection,
    retention_limit,
    synthetic_disclosure,
    synthetic_share,
)


def _posts(make_record, count, **kwargs):
    return [make_record({"post_id": str(i)}, **kwargs) for i in range(count)]


class TestRecordPolicies:
    """Tests for record-scope presets."""

    def test_pii_blocks_ten_of_hundred(self, make_record, now):
        """Test PII in free text blocks exactly the affected records."""
        records = _posts(make_record, 90) + [
            make_record({"post_id": f"pii-{i}", "text": f"DM me at fan{i}@example.com"})
            for i in range(10)
        ]

        updated, report = evaluate_governance(records, [pii_detection()], now)

        assert report.evaluated == 100
        assert report.blocked == 10
        assert report.passed == 90
        assert report.status == "blocked"
        blocked = [r for r in updated if r.governance_status == "blocked"]
        assert len(blocked) == 10
        assert all(r.governance_blocked_by == ["pii_detection"] for r in blocked)

    def test_pii_detects_phone_in_extra(self, make_record, now):
        """Test phone numbers in extra fields are detected."""
        record = make_record(extra={"bio": "call +1 415-555-0100"})

        _, report = evaluate_governance([record], [pii_detection()], now)

        assert report.violations[0].message.endswith("bio:phone")

    def test_retention_limit(self, make_record, now):
        """Test records past the retention window are blocked."""
        old = make_record({"post_id": "old"}, observed_at=now - timedelta(days=400))
        fresh = make_record({"post_id": "fresh"})

        updated, _ = evaluate_governance([old, fresh], [retention_limit(max_age_days=365)], now)

        assert [r.governance_status for r in updated] == ["blocked", "passed"]

    def test_consent_scope_only_applies_to_navigation(self, make_record, now):
        """Test consent is required for navigation records only."""
        post = make_record()
        view = make_record(
            schema="navigation_behavior",
            fields={"session_id": "s", "page": "/", "consent": False},
        )

        updated, _ = evaluate_governance([post, view], [consent_scope()], now)

        assert [r.governance_status for r in updated] == ["passed", "blocked"]

    def test_minimum_completeness_is_advisory(self, make_record, now):
        """Test advisory violations are recorded without blocking."""
        sparse = make_record(fields={"platform": "x", "post_id": "1", "likes": None, "text": None})

        updated, report = evaluate_governance(
            [sparse], [minimum_completeness(min_completeness=0.9)], now
        )

        assert updated[0].governance_status == "advisory"
        assert updated[0].governance_advisories == ["minimum_completeness"]
        assert report.status == "advisory"

    def test_synthetic_disclosure(self, make_record, now):
        """Test generated records must be tagged as synthetic with their template."""
        disguised = make_record({"post_id": "a"}, source_id="synthetic:social", provenance="observed")
        untraced = make_record({"post_id": "b"}, provenance="synthetic", chain=["seed:7"])
        tagged = make_record(
            {"post_id": "c"},
            source_id="synthetic:social",
            provenance="synthetic",
            chain=["synthetic:template:social_media_content", "seed:7"],
        )

        updated, _ = evaluate_governance([disguised, untraced, tagged], [synthetic_disclosure()], now)

        assert [r.governance_status for r in updated] == ["blocked", "blocked", "passed"]


class TestBatchPolicies:
    """Tests for batch-scope presets."""

    def test_synthetic_share_flags_synthetic_records(self, make_record, now):
        """Test an excessive synthetic share marks the synthetic records advisory."""
        records = _posts(make_record, 6) + [
            make_record({"post_id": f"s{i}"}, provenance="synthetic") for i in range(4)
        ]

        updated, report = evaluate_governance(records, [synthetic_share(max_ratio=0.3)], now)

        statuses = {r.fields["post_id"]: r.governance_status for r in updated}
        assert [statuses[f"s{i}"] for i in range(4)] == ["advisory"] * 4
        assert statuses["0"] == "passed"
        assert report.advisory == 4


class TestPolicyConstruction:
    """Tests for build_policy and failure handling."""

    def test_build_policy_overrides(self):
        """Test enforcement, schema scope and parameters can be overridden."""
        policy = build_policy(
            "retention_limit", enforcement="advisory", schemas=["content_performance"], max_age_days=30
        )

        assert policy.enforcement == "advisory"
        assert policy.applies_to("content_performance")
        assert not policy.applies_to("navigation_behavior")
        assert policy.snapshot()["params"] == {"max_age_days": 30}

    def test_unknown_preset(self):
        """Test unknown presets are rejected."""
        with pytest.raises(ValueError):
            build_policy("nope")

    def test_failing_policy_counts_as_violation(self, make_record, now):
        """Test a crashing check is recorded as a violation of that policy."""

        def broken(record, params, now):
            raise RuntimeError("boom")

        policy = GovernancePolicy(
            name="broken", description="", enforcement="blocking", check=broken
        )

        updated, report = evaluate_governance([make_record()], [policy], now)

        assert updated[0].governance_status == "blocked"
        assert "boom" in report.violations[0].message

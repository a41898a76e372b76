"""Tests for per-target record selection."""

import numpy as np
import pytest

from seedflow.features.distribution.eligibility import select_records, trim_synthetic
from seedflow.features.distribution.schemas import FilterRule, TargetConfig, TransformationRule
from seedflow.features.scoring.schemas import BiasReport


def _target(**overrides):
    return TargetConfig(target_id="engine", schemas=["content_performance"], **overrides)


def _bias(tier):
    return {"content_performance": BiasReport(schema_name="content_performance", risk_tier=tier)}


class TestThresholds:
    """Tests for quality, confidence and advisory minimums."""

    def test_below_minimums_are_filtered(self, make_scored):
        """Test records under the quality or confidence minimum are excluded and counted."""
        records = [
            make_scored(1, quality=0.9, confidence=0.9),
            make_scored(2, quality=0.5, confidence=0.9),
            make_scored(3, quality=0.9, confidence=0.2),
        ]

        selection = select_records(records, _target(min_quality=0.7, min_confidence=0.5))

        assert [r.entity_key for r in selection.records] == ["instagram|1"]
        assert dict(selection.excluded) == {"quality": 1, "confidence": 1}
        assert selection.filtered == 2
        assert selection.candidates == 3

    def test_advisory_records_optional(self, make_scored):
        """Test targets can refuse records with advisory violations."""
        records = [make_scored(1, governance="advisory"), make_scored(2)]

        assert len(select_records(records, _target()).records) == 2
        strict = select_records(records, _target(allow_advisory=False))
        assert len(strict.records) == 1
        assert strict.excluded["advisory"] == 1

    def test_other_schemas_are_not_candidates(self, make_scored):
        """Test records of unaccepted schemas are neither delivered nor counted."""
        records = [make_scored(1, schema="navigation_behavior"), make_scored(2)]

        selection = select_records(records, _target())

        assert selection.candidates == 1
        assert selection.filtered == 0


class TestHolds:
    """Tests for governance and bias holds."""

    def test_bound_blocking_policy_holds(self, make_scored):
        """Test a record blocked by a bound policy is held with a hold entry."""
        blocked = make_scored(1, governance="blocked", blocked_by=["pii_detection"])

        selection = select_records([blocked, make_scored(2)], _target(), run_id="run-9")

        assert len(selection.records) == 1
        assert len(selection.holds) == 1
        hold = selection.holds[0]
        assert hold.reason == "governance"
        assert hold.policies == ["pii_detection"]
        assert hold.run_id == "run-9"
        assert hold.record_id == blocked.record_id

    def test_unbound_policy_does_not_hold(self, make_scored):
        """Test targets only enforce the policies bound to them."""
        blocked = make_scored(1, governance="blocked", blocked_by=["pii_detection"])

        selection = select_records([blocked], _target(policy_bindings=["retention_limit"]))

        assert len(selection.records) == 1
        assert selection.holds == []

    def test_bias_holds_sensitive_targets_only(self, make_scored):
        """Test a high-risk bias report holds records from bias-sensitive targets."""
        records = [make_scored(i) for i in range(3)]
        reports = _bias("high")

        sensitive = select_records(records, _target(bias_sensitive=True), bias_reports=reports)
        tolerant = select_records(records, _target(), bias_reports=reports)

        assert len(sensitive.holds) == 3
        assert {h.reason for h in sensitive.holds} == {"bias"}
        assert len(tolerant.records) == 3

    def test_medium_bias_does_not_hold(self, make_scored):
        """Test medium risk is recorded but not blocking."""
        selection = select_records(
            [make_scored()], _target(bias_sensitive=True), bias_reports=_bias("medium")
        )

        assert selection.holds == []

    def test_override_ignores_holds(self, make_scored):
        """Test released records skip holds but still honour minimums."""
        records = [
            make_scored(1, governance="blocked", blocked_by=["pii_detection"]),
            make_scored(2, governance="blocked", blocked_by=["pii_detection"], quality=0.1),
        ]

        selection = select_records(records, _target(min_quality=0.5), ignore_holds=True)

        assert [r.entity_key for r in selection.records] == ["instagram|1"]
        assert selection.holds == []


class TestFiltersAndMapping:
    """Tests for transformation filters during selection."""

    def test_filter_and_mapping(self, make_scored):
        """Test rows are renamed and filtered on the mapped names."""
        rule = TransformationRule(
            field_mapping={"engagement_rate": "er"},
            include=["er", "region"],
            filters=[FilterRule(field="er", op="gte", value=3.0)],
        )
        records = [
            make_scored(1, fields={"engagement_rate": 5.0}),
            make_scored(2, fields={"engagement_rate": 1.0}),
        ]

        selection = select_records(records, _target(transformation=rule))

        assert selection.rows == [
            {"record_id": records[0].record_id, "run_id": "run-1", "er": 5.0, "region": "emea"}
        ]
        assert selection.excluded["filter"] == 1


class TestSyntheticTrim:
    """Tests for the synthetic ratio cap."""

    def test_keeps_highest_quality_synthetic(self, make_scored):
        """Test the cap keeps the best synthetic records and preserves order."""
        observed = [make_scored(i) for i in range(7)]
        synthetic = [
            make_scored(100 + i, provenance="synthetic", quality=q)
            for i, q in enumerate([0.5, 0.95, 0.6, 0.9, 0.7])
        ]

        kept, trimmed = trim_synthetic([*observed, *synthetic], 0.3)

        kept_synthetic = [r for r in kept if r.is_synthetic]
        assert trimmed == 2
        assert [r.quality.score for r in kept_synthetic] == [0.95, 0.9, 0.7]
        assert kept[:7] == observed

    def test_window_counts_previous_deliveries(self, make_scored):
        """Test already delivered records count toward the ratio."""
        synthetic = make_scored(1, provenance="synthetic")

        assert trim_synthetic([synthetic], 0.3)[1] == 1
        assert trim_synthetic([synthetic], 0.3, observed_base=10)[1] == 0
        assert trim_synthetic([synthetic], 0.3, observed_base=10, synthetic_base=4)[1] == 1

    def test_selection_reports_trimmed(self, make_scored):
        """Test the selection counts trimmed synthetic records."""
        records = [make_scored(1), *(make_scored(10 + i, provenance="synthetic") for i in range(3))]

        selection = select_records(records, _target(max_synthetic_ratio=0.5))

        assert selection.trimmed == 2
        assert selection.synthetic == 1


class TestThresholdInvariant:
    """No target receives a record below its minimums, across random configurations."""

    @pytest.mark.parametrize("seed", range(10))
    def test_random_configurations(self, make_scored, seed):
        """Test every selected record satisfies the target configuration."""
        rng = np.random.default_rng(seed)
        policies = ["pii_detection", "retention_limit", "consent_scope"]
        records = []
        for i in range(60):
            status = str(rng.choice(["passed", "advisory", "blocked"]))
            blocked_by = [str(rng.choice(policies))] if status == "blocked" else []
            records.append(
                make_scored(
                    i,
                    quality=float(rng.uniform(0, 1)),
                    confidence=float(rng.uniform(0, 1)),
                    governance=status,
                    blocked_by=blocked_by,
                    provenance="synthetic" if rng.uniform() < 0.3 else "observed",
                )
            )
        bindings = [p for p in policies if rng.uniform() < 0.5] if rng.uniform() < 0.7 else None
        config = _target(
            min_quality=float(rng.uniform(0, 0.9)),
            min_confidence=float(rng.uniform(0, 0.9)),
            allow_advisory=bool(rng.uniform() < 0.5),
            policy_bindings=bindings,
            max_synthetic_ratio=float(rng.uniform(0, 0.5)),
        )

        selection = select_records(records, config)

        for record in selection.records:
            assert record.quality.score >= config.min_quality
            assert record.confidence >= config.min_confidence
            assert not config.binds(record.governance_blocked_by)
            if not config.allow_advisory:
                assert record.governance_status != "advisory"
        total = len(selection.records)
        if total:
            assert selection.synthetic / total <= config.max_synthetic_ratio + 1e-12
        assert (
            len(selection.records) + selection.filtered + len(selection.holds) + selection.trimmed
            == len(records)
        )

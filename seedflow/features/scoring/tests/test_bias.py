"""Tests for bias detection."""

import pytest

from seedflow.features.scoring.bias import attribute_bias, detect_bias, risk_tier


def _pairs(groups):
    """Expand {group: (positives, negatives)} into (group, outcome) pairs."""
    pairs = []
    for group, (positives, negatives) in groups.items():
        pairs += [(group, True)] * positives + [(group, False)] * negatives
    return pairs


class TestRiskTier:
    """Tests for tier classification."""

    @pytest.mark.parametrize(
        ("parity", "impact", "significant", "expected"),
        [
            (0.25, 0.5, True, "critical"),
            (0.15, 0.85, True, "high"),
            (0.05, 0.7, True, "high"),
            (0.25, 0.5, False, "medium"),
            (0.05, 0.9, True, "low"),
        ],
    )
    def test_tiers(self, parity, impact, significant, expected):
        """Test tier thresholds."""
        assert risk_tier(parity, impact, significant) == expected


class TestAttributeBias:
    """Tests for per-attribute measurement."""

    def test_strong_disparity_is_critical(self):
        """Test large significant differences are critical with reweighting."""
        result = attribute_bias(
            "segment",
            _pairs({"a": (80, 20), "b": (20, 80)}),
            min_group_size=5,
            significance_level=0.05,
        )

        assert result.group_rates == {"a": 0.8, "b": 0.2}
        assert result.parity_difference == pytest.approx(0.6)
        assert result.disparate_impact == pytest.approx(0.25)
        assert result.significant
        assert result.risk_tier == "critical"
        assert result.reweighting == {"a": pytest.approx(0.625), "b": pytest.approx(2.5)}

    def test_small_sample_disparity_is_medium(self):
        """Test disparity without significance stays medium."""
        result = attribute_bias(
            "segment",
            _pairs({"a": (6, 4), "b": (4, 6)}),
            min_group_size=5,
            significance_level=0.05,
        )

        assert not result.significant
        assert result.risk_tier == "medium"

    def test_small_groups_are_excluded(self):
        """Test groups below the minimum size are excluded and noted."""
        result = attribute_bias(
            "region",
            _pairs({"na": (5, 5), "emea": (5, 5), "apac": (0, 3)}),
            min_group_size=5,
            significance_level=0.05,
        )

        assert result.excluded_groups == ["apac"]
        assert set(result.group_rates) == {"emea", "na"}
        assert result.risk_tier == "low"

    def test_uniform_outcome_has_no_test(self):
        """Test an all-positive outcome yields p=1 and no disparity."""
        result = attribute_bias(
            "region",
            _pairs({"na": (10, 0), "emea": (8, 0)}),
            min_group_size=5,
            significance_level=0.05,
        )

        assert result.p_value == 1.0
        assert result.parity_difference == 0.0
        assert result.risk_tier == "low"

    def test_single_group_is_noted(self):
        """Test fewer than two eligible groups produce a note instead of metrics."""
        result = attribute_bias(
            "region", _pairs({"na": (5, 5)}), min_group_size=5, significance_level=0.05
        )

        assert result.note is not None
        assert result.group_rates == {}


class TestDetectBias:
    """Tests for schema-level bias reports."""

    def test_report_takes_worst_attribute(self, make_record):
        """Test the report tier is the worst attribute tier."""
        records = []
        for i in range(100):
            segment = "young" if i < 50 else "old"
            positive = (i % 50) < (40 if segment == "young" else 10)
            records.append(
                make_record(
                    {
                        "post_id": str(i),
                        "audience_segment": segment,
                        "engagement_rate": 5.0 if positive else 1.0,
                    }
                )
            )

        report = detect_bias(
            records,
            "content_performance",
            ["audience_segment", "region"],
            lambda r: r.fields["engagement_rate"] >= 3.0,
            run_id="run-1",
        )

        assert report.risk_tier == "critical"
        assert report.mitigation == "hold"
        assert report.blocks_sensitive_targets
        assert [a.attribute for a in report.attributes] == ["audience_segment", "region"]
        assert report.attributes[1].note is not None

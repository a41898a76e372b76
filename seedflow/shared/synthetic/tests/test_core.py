"""Tests for synthetic generation core."""

from datetime import timedelta

import pytest

from seedflow.shared.synthetic.config import (
    DistributionRule,
    FormulaRule,
    LookupRule,
    SequenceRule,
    SyntheticTemplate,
    TemplatePreset,
)
from seedflow.shared.synthetic.core import SyntheticGenerator, order_rules


class TestOrderRules:
    """Tests for dependency ordering."""

    def test_formula_runs_after_dependencies(self):
        """Test formulas are placed after the fields they reference."""
        rules = [
            FormulaRule("reach", "impressions * 0.8"),
            DistributionRule("impressions", "uniform", {"low": 1, "high": 2}),
        ]

        ordered = [rule.field for rule in order_rules(rules)]

        assert ordered == ["impressions", "reach"]

    def test_unknown_dependency_raises(self):
        """Test referencing an undefined field is rejected."""
        with pytest.raises(ValueError, match="unknown field"):
            order_rules([FormulaRule("reach", "impressions * 0.8")])

    def test_cycle_raises(self):
        """Test dependency cycles are rejected."""
        rules = [FormulaRule("a", "b + 1"), FormulaRule("b", "a + 1")]

        with pytest.raises(ValueError, match="cycle"):
            order_rules(rules)


class TestSyntheticGenerator:
    """Tests for SyntheticGenerator."""

    def test_generates_requested_count(self, social_template, now):
        """Test generator produces the requested number of rows."""
        result = SyntheticGenerator(social_template, now=now).generate(25)

        assert len(result.rows) == 25
        assert result.template == "social_media_content"

    def test_same_seed_is_reproducible(self, social_template, now):
        """Test identical template, seed and window give identical rows."""
        first = SyntheticGenerator(social_template, now=now).generate(10)
        second = SyntheticGenerator(social_template, now=now).generate(10)

        assert first.rows == second.rows

    def test_different_seed_changes_rows(self, now):
        """Test a different seed changes generated values."""
        a = SyntheticTemplate.from_preset(TemplatePreset.SOCIAL_MEDIA_CONTENT, seed=1)
        b = SyntheticTemplate.from_preset(TemplatePreset.SOCIAL_MEDIA_CONTENT, seed=2)

        rows_a = SyntheticGenerator(a, now=now).generate(10).rows
        rows_b = SyntheticGenerator(b, now=now).generate(10).rows

        assert [r["impressions"] for r in rows_a] != [r["impressions"] for r in rows_b]

    def test_values_respect_bounds(self, social_template, now):
        """Test clipped distributions stay inside their bounds."""
        rows = SyntheticGenerator(social_template, now=now).generate(500).rows

        for row in rows:
            assert 0.0 <= row["engagement_rate"] <= 15.0
            assert 100 <= row["impressions"] <= 50000
            assert isinstance(row["impressions"], int)
            assert row["reach"] <= row["impressions"]

    def test_lookup_values_come_from_table(self, social_template, now):
        """Test lookup fields only emit configured labels."""
        rows = SyntheticGenerator(social_template, now=now).generate(200).rows

        assert {row["content_type"] for row in rows} <= {"image", "video", "carousel", "story"}

    def test_business_hours_weighting(self, social_template, now):
        """Test most timestamps land inside business hours."""
        rows = SyntheticGenerator(social_template, now=now).generate(2000).rows

        in_hours = sum(1 for row in rows if 9 <= row["posted_at"].hour < 17)
        assert in_hours / len(rows) > 0.6
        assert all(now - timedelta(days=31) <= row["posted_at"] <= now for row in rows)

    def test_sequence_keys_are_unique(self, social_template, now):
        """Test key fields are unique and honour the offset."""
        rows = SyntheticGenerator(social_template, now=now).generate(5, offset=10).rows

        keys = [row["post_id"] for row in rows]
        assert keys[0] == "syn-post-000010"
        assert len(set(keys)) == 5

    def test_realism_is_in_unit_interval(self, social_template, now):
        """Test realism estimate is bounded."""
        result = SyntheticGenerator(social_template, now=now).generate(100)

        assert 0.0 <= result.realism_score <= 1.0

    def test_realism_drops_for_dissimilar_observed_data(self, now):
        """Test the KS comparison lowers realism for mismatched distributions."""
        template = SyntheticTemplate(
            name="t",
            kind="campaign",
            key_field="campaign_id",
            rules=[
                SequenceRule("campaign_id"),
                DistributionRule("spend", "uniform", {"low": 0, "high": 1}, clip_min=0, clip_max=1),
            ],
        )
        generator = SyntheticGenerator(template, now=now)
        rows = generator.generate(200).rows

        similar = generator.realism(rows, {"spend": [i / 200 for i in range(200)]})
        dissimilar = generator.realism(rows, {"spend": [100 + i for i in range(200)]})

        assert similar > dissimilar
        assert dissimilar == pytest.approx(0.5)

    def test_empty_rows_have_zero_realism(self, social_template, now):
        """Test realism of nothing is zero."""
        assert SyntheticGenerator(social_template, now=now).realism([]) == 0.0

    @pytest.mark.parametrize("preset", list(TemplatePreset))
    def test_every_preset_generates(self, preset, now):
        """Test each built-in preset produces rows with its key field."""
        template = SyntheticTemplate.from_preset(preset, seed=3)
        rows = SyntheticGenerator(template, now=now).generate(20).rows

        assert len(rows) == 20
        assert all(row[template.key_field] for row in rows)

    def test_lookup_rule_without_choices_yields_none(self, now):
        """Test an empty lookup table produces None."""
        template = SyntheticTemplate(
            name="t", kind="campaign", key_field="k", rules=[SequenceRule("k"), LookupRule("x")]
        )

        rows = SyntheticGenerator(template, now=now).generate(2).rows

        assert rows[0]["x"] is None

"""Tests for restricted formula evaluation."""

import pytest

from seedflow.shared.synthetic.generators import Formula, FormulaError


class TestFormula:
    """Tests for Formula."""

    def test_arithmetic(self):
        """Test basic arithmetic over named fields."""
        formula = Formula("(revenue - spend) / spend")

        assert formula.evaluate({"revenue": 150, "spend": 100}) == 0.5
        assert formula.names == {"revenue", "spend"}

    def test_division_by_zero_returns_none(self):
        """Test undefined arithmetic yields None instead of raising."""
        assert Formula("clicks / impressions").evaluate({"clicks": 5, "impressions": 0}) is None

    def test_missing_field_returns_none(self):
        """Test a missing or None input yields None."""
        formula = Formula("a + b")

        assert formula.evaluate({"a": 1}) is None
        assert formula.evaluate({"a": 1, "b": None}) is None

    def test_comparisons_and_conditionals(self):
        """Test comparisons, boolean operators and if-expressions."""
        assert Formula("reach <= impressions").evaluate({"reach": 5, "impressions": 10}) is True
        assert Formula("1 < x < 3").evaluate({"x": 5}) is False
        assert Formula("'hi' if x > 0 else 'lo'").evaluate({"x": -1}) == "lo"
        assert Formula("x > 0 and y > 0").evaluate({"x": 1, "y": 0}) is False

    def test_whitelisted_functions(self):
        """Test min/max/abs/round are available."""
        assert Formula("max(a, b) - min(a, b)").evaluate({"a": 3, "b": 7}) == 4
        assert Formula("round(abs(x), 1)").evaluate({"x": -2.345}) == 2.3

    def test_random_uses_supplied_stream(self):
        """Test random() draws from the caller's stream."""
        assert Formula("x * random()").evaluate({"x": 10}, random=lambda: 0.5) == 5.0

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('true')",
            "x.__class__",
            "[1, 2, 3]",
            "open('f')",
            "lambda: 1",
        ],
    )
    def test_rejects_unsafe_syntax(self, expression):
        """Test attribute access, calls and containers are rejected."""
        with pytest.raises(FormulaError):
            Formula(expression)

    def test_rejects_invalid_syntax(self):
        """Test syntax errors raise FormulaError."""
        with pytest.raises(FormulaError):
            Formula("a +")

"""Core synthetic generation module."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np
from scipy import stats

from seedflow.core.logging import get_logger
from seedflow.shared.synthetic.config import (
    DistributionRule,
    FormulaRule,
    LookupRule,
    PatternRule,
    SequenceRule,
    SyntheticTemplate,
    TemplateRule,
)
from seedflow.shared.synthetic.generators import (
    DistributionSampler,
    Formula,
    LookupSampler,
    TimestampPatternGenerator,
    clip_and_round,
)
from seedflow.shared.utils import utcnow

logger = get_logger(__name__)


@dataclass
class SyntheticResult:
    """Result of a synthetic generation call.

    Attributes:
        template: Template name.
        rows: Generated rows, one dict per record.
        realism_score: Estimated realism in [0, 1].
        rule_order: Field evaluation order used.
        seed: Seed the generator ran with.
    """

    template: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    realism_score: float = 0.0
    rule_order: list[str] = field(default_factory=list)
    seed: int = 42


def _dependencies(rule: TemplateRule) -> list[str]:
    if isinstance(rule, FormulaRule):
        return sorted(set(rule.dependencies) | Formula(rule.expression).names)
    return rule.dependencies


def order_rules(rules: Sequence[TemplateRule]) -> list[TemplateRule]:
    """Sort rules so each formula runs after the fields it depends on.

    Args:
        rules: Template rules in declaration order.

    Returns:
        Rules in a dependency-respecting order (stable for independent rules).

    Raises:
        ValueError: On unknown dependencies or dependency cycles.
    """
    by_field = {rule.field: rule for rule in rules}
    ordered: list[TemplateRule] = []
    state: dict[str, str] = {}

    def visit(rule: TemplateRule) -> None:
        mark = state.get(rule.field)
        if mark == "done":
            return
        if mark == "visiting":
            raise ValueError(f"Dependency cycle involving field '{rule.field}'")
        state[rule.field] = "visiting"
        for dep in _dependencies(rule):
            if dep not in by_field:
                raise ValueError(f"Field '{rule.field}' depends on unknown field '{dep}'")
            visit(by_field[dep])
        state[rule.field] = "done"
        ordered.append(rule)

    for rule in rules:
        visit(rule)
    return ordered


class SyntheticGenerator:
    """Generates rows from a template with a reproducible random stream.

    The same template, seed and ``now`` always produce the same rows.
    """

    def __init__(self, template: SyntheticTemplate, now: datetime | None = None) -> None:
        """Initialize the generator.

        Args:
            template: Template to generate from.
            now: End of the timestamp window (defaults to current UTC time).
        """
        self.template = template
        self.now = now or utcnow()
        self.rules = order_rules(template.rules)
        self._formulas = {
            rule.field: Formula(rule.expression)
            for rule in self.rules
            if isinstance(rule, FormulaRule)
        }

    def generate(
        self,
        count: int,
        observed: Mapping[str, Sequence[float]] | None = None,
        offset: int = 0,
    ) -> SyntheticResult:
        """Generate ``count`` rows.

        Args:
            count: Number of rows to generate.
            observed: Observed numeric values per field, used to compare
                synthetic distributions against real data.
            offset: Starting index for sequence fields.

        Returns:
            SyntheticResult with rows and realism score.
        """
        rng = np.random.default_rng(self.template.seed)
        numeric = DistributionSampler(rng)
        lookup = LookupSampler(rng)
        timestamps = TimestampPatternGenerator(rng, self.now)

        rows: list[dict[str, Any]] = []
        for index in range(offset, offset + count):
            row: dict[str, Any] = {}
            for rule in self.rules:
                row[rule.field] = self._value(rule, row, index, rng, numeric, lookup, timestamps)
            rows.append(row)

        realism = self.realism(rows, observed)
        logger.info(
            "synthetic.generation_completed",
            template=self.template.name,
            count=len(rows),
            realism_score=round(realism, 4),
            seed=self.template.seed,
        )
        return SyntheticResult(
            template=self.template.name,
            rows=rows,
            realism_score=realism,
            rule_order=[rule.field for rule in self.rules],
            seed=self.template.seed,
        )

    def _value(
        self,
        rule: TemplateRule,
        row: dict[str, Any],
        index: int,
        rng: np.random.Generator,
        numeric: DistributionSampler,
        lookup: LookupSampler,
        timestamps: TimestampPatternGenerator,
    ) -> Any:
        if isinstance(rule, SequenceRule):
            return f"{rule.prefix}{index:0{rule.width}d}"
        if isinstance(rule, DistributionRule):
            return numeric.sample(rule)
        if isinstance(rule, LookupRule):
            return lookup.sample(rule)
        if isinstance(rule, PatternRule):
            return timestamps.sample(rule)
        value = self._formulas[rule.field].evaluate(row, random=lambda: float(rng.random()))
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, int | float):
            return clip_and_round(float(value), rule.clip_min, rule.clip_max, rule.decimals)
        return value

    def realism(
        self,
        rows: Sequence[Mapping[str, Any]],
        observed: Mapping[str, Sequence[float]] | None = None,
    ) -> float:
        """Estimate how realistic the generated rows are.

        The base score is the share of bounded values inside their declared
        ranges. When observed values are supplied, it is averaged with
        ``1 - KS statistic`` per compared field.

        Args:
            rows: Generated rows.
            observed: Observed values per numeric field.

        Returns:
            Realism score in [0, 1].
        """
        if not rows:
            return 0.0

        bounds = self.template.bounds()
        checked = 0
        inside = 0
        for row in rows:
            for name, (low, high) in bounds.items():
                value = row.get(name)
                if not isinstance(value, int | float) or isinstance(value, bool):
                    continue
                checked += 1
                if (low is None or value >= low) and (high is None or value <= high):
                    inside += 1
        range_score = inside / checked if checked else 1.0

        similarities: list[float] = []
        for name, values in (observed or {}).items():
            synthetic = [
                float(row[name])
                for row in rows
                if isinstance(row.get(name), int | float) and not isinstance(row.get(name), bool)
            ]
            if len(values) < 2 or len(synthetic) < 2:
                continue
            result = stats.ks_2samp(synthetic, list(values))
            similarities.append(1.0 - float(result.statistic))

        if not similarities:
            return float(range_score)
        return float((range_score + float(np.mean(similarities))) / 2)

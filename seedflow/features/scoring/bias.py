"""Bias detection over sensitive attributes."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Sequence

import numpy as np
from scipy.stats import chi2_contingency

from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.scoring.schemas import (
    AttributeBias,
    BiasReport,
    Mitigation,
    RiskTier,
    max_tier,
)

MITIGATIONS: dict[RiskTier, Mitigation] = {
    "low": "none",
    "medium": "monitor",
    "high": "reweight",
    "critical": "hold",
}

PARITY_HIGH = 0.1
PARITY_CRITICAL = 0.2
DISPARATE_IMPACT_MIN = 0.8


def risk_tier(parity_difference: float, disparate_impact: float, significant: bool) -> RiskTier:
    """Classify bias risk.

    critical: parity difference above 0.2 and statistically significant.
    high: parity above 0.1 or disparate impact below 0.8, and significant.
    medium: the same disparity without statistical significance.
    """
    disparate = parity_difference > PARITY_HIGH or disparate_impact < DISPARATE_IMPACT_MIN
    if parity_difference > PARITY_CRITICAL and significant:
        return "critical"
    if disparate and significant:
        return "high"
    if disparate:
        return "medium"
    return "low"


def attribute_bias(
    attribute: str,
    pairs: Sequence[tuple[str, bool]],
    *,
    min_group_size: int,
    significance_level: float,
) -> AttributeBias:
    """Measure outcome disparity across the groups of one attribute.

    Args:
        attribute: Attribute name.
        pairs: (group value, positive outcome) per record.
        min_group_size: Groups smaller than this are excluded.
        significance_level: p-value below which the difference is significant.
    """
    counts: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for group, positive in pairs:
        counts[group][0 if positive else 1] += 1

    sizes = {g: pos + neg for g, (pos, neg) in counts.items()}
    kept = sorted(g for g, n in sizes.items() if n >= min_group_size)
    excluded = sorted(g for g in sizes if g not in kept)
    result = AttributeBias(attribute=attribute, group_sizes=sizes, excluded_groups=excluded)

    if len(kept) < 2:
        result.note = "Fewer than two groups meet the minimum size"
        return result

    table = np.array([counts[g] for g in kept], dtype=float)
    rates = table[:, 0] / table.sum(axis=1)
    result.group_rates = {g: round(float(r), 6) for g, r in zip(kept, rates, strict=True)}
    result.parity_difference = round(float(rates.max() - rates.min()), 6)
    result.disparate_impact = (
        round(float(rates.min() / rates.max()), 6) if rates.max() > 0 else 1.0
    )

    if (table.sum(axis=0) == 0).any():
        result.chi2, result.p_value = 0.0, 1.0
    else:
        statistic, p_value, _, _ = chi2_contingency(table)
        result.chi2, result.p_value = round(float(statistic), 6), float(p_value)
    result.significant = result.p_value < significance_level
    result.risk_tier = risk_tier(
        result.parity_difference, result.disparate_impact, result.significant
    )

    overall = table[:, 0].sum() / table.sum()
    result.reweighting = {
        g: round(float(overall / r), 6) for g, r in zip(kept, rates, strict=True) if r > 0
    }
    return result


def detect_bias(
    records: Sequence[CanonicalRecord],
    schema_name: str,
    sensitive_attributes: Sequence[str],
    outcome: Callable[[CanonicalRecord], bool | None],
    *,
    min_group_size: int = 5,
    significance_level: float = 0.05,
    run_id: str | None = None,
    outcome_field: str | None = None,
) -> BiasReport:
    """Bias report for one schema's records.

    Records without an outcome or without a value for an attribute are left
    out of that attribute's measurement.
    """
    attributes: list[AttributeBias] = []
    for attribute in sensitive_attributes:
        pairs: list[tuple[str, bool]] = []
        for record in records:
            group = record.fields.get(attribute)
            positive = outcome(record)
            if group is None or positive is None:
                continue
            pairs.append((str(group), positive))
        attributes.append(
            attribute_bias(
                attribute,
                pairs,
                min_group_size=min_group_size,
                significance_level=significance_level,
            )
        )

    tier = max_tier([a.risk_tier for a in attributes])
    return BiasReport(
        run_id=run_id,
        schema_name=schema_name,
        outcome_field=outcome_field,
        record_count=len(records),
        risk_tier=tier,
        mitigation=MITIGATIONS[tier],
        attributes=attributes,
    )

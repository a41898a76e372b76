"""Numeric and categorical samplers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from seedflow.shared.synthetic.config import DistributionRule, LookupRule


def clip_and_round(
    value: float,
    clip_min: float | None,
    clip_max: float | None,
    decimals: int | None,
) -> float | int:
    """Apply rule bounds and rounding to a drawn value."""
    if clip_min is not None:
        value = max(value, clip_min)
    if clip_max is not None:
        value = min(value, clip_max)
    if decimals is None:
        return float(value)
    if decimals == 0:
        return int(round(value))
    return round(float(value), decimals)


class DistributionSampler:
    """Draws values for distribution rules from a numpy Generator."""

    def __init__(self, rng: np.random.Generator) -> None:
        """Initialize the sampler.

        Args:
            rng: Seeded numpy random generator.
        """
        self.rng = rng

    def sample(self, rule: DistributionRule) -> float | int:
        """Draw a single value for ``rule``.

        Args:
            rule: Distribution rule.

        Returns:
            The clipped and rounded draw.

        Raises:
            ValueError: If the distribution is unknown.
        """
        p = rule.params
        if rule.distribution == "normal":
            value = float(self.rng.normal(p.get("mean", 0.0), p.get("std", 1.0)))
        elif rule.distribution == "uniform":
            value = float(self.rng.uniform(p.get("low", 0.0), p.get("high", 1.0)))
        elif rule.distribution == "exponential":
            value = float(self.rng.exponential(p.get("mean", 1.0)))
        elif rule.distribution == "poisson":
            value = float(self.rng.poisson(p.get("lam", 1.0)))
        else:
            raise ValueError(f"Unknown distribution: {rule.distribution}")
        return clip_and_round(value, rule.clip_min, rule.clip_max, rule.decimals)


class LookupSampler:
    """Weighted categorical choice."""

    def __init__(self, rng: np.random.Generator) -> None:
        self.rng = rng

    def sample(self, rule: LookupRule) -> Any:
        if not rule.choices:
            return None
        labels = list(rule.choices)
        weights = np.asarray([rule.choices[label] for label in labels], dtype=float)
        weights = weights / weights.sum()
        return labels[int(self.rng.choice(len(labels), p=weights))]

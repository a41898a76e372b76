"""Field generators for synthetic templates."""

from seedflow.shared.synthetic.generators.distributions import (
    DistributionSampler,
    LookupSampler,
    clip_and_round,
)
from seedflow.shared.synthetic.generators.formulas import Formula, FormulaError
from seedflow.shared.synthetic.generators.patterns import TimestampPatternGenerator

__all__ = [
    "DistributionSampler",
    "Formula",
    "FormulaError",
    "LookupSampler",
    "TimestampPatternGenerator",
    "clip_and_round",
]

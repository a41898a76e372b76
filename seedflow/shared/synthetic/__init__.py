"""Template-driven synthetic data generation."""

from seedflow.shared.synthetic.config import (
    DistributionRule,
    FormulaRule,
    LookupRule,
    PatternRule,
    SequenceRule,
    SyntheticTemplate,
    TemplatePreset,
)
from seedflow.shared.synthetic.core import SyntheticGenerator, SyntheticResult, order_rules

__all__ = [
    "DistributionRule",
    "FormulaRule",
    "LookupRule",
    "PatternRule",
    "SequenceRule",
    "SyntheticGenerator",
    "SyntheticResult",
    "SyntheticTemplate",
    "TemplatePreset",
    "order_rules",
]

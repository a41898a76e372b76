"""Quality, confidence, governance and bias scoring."""

from seedflow.features.scoring.bias import detect_bias, risk_tier
from seedflow.features.scoring.governance import (
    POLICY_PRESETS,
    GovernancePolicy,
    build_policy,
    default_policies,
    evaluate_governance,
)
from seedflow.features.scoring.quality import (
    DEFAULT_QUALITY_WEIGHTS,
    compute_confidence,
    normalize_weights,
    quality_dimensions,
    score_quality,
)
from seedflow.features.scoring.schemas import (
    BiasReport,
    GovernanceReport,
    GovernanceViolation,
    ScoringReport,
)
from seedflow.features.scoring.service import ScoringOutcome, ScoringService

__all__ = [
    "DEFAULT_QUALITY_WEIGHTS",
    "POLICY_PRESETS",
    "BiasReport",
    "GovernancePolicy",
    "GovernanceReport",
    "GovernanceViolation",
    "ScoringOutcome",
    "ScoringReport",
    "ScoringService",
    "build_policy",
    "compute_confidence",
    "default_policies",
    "detect_bias",
    "evaluate_governance",
    "normalize_weights",
    "quality_dimensions",
    "risk_tier",
    "score_quality",
]

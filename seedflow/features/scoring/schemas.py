"""Pydantic schemas for scoring, governance and bias results."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from seedflow.shared.utils import utcnow

StageStatus = Literal["pending", "passed", "advisory", "blocked"]
RiskTier = Literal["low", "medium", "high", "critical"]
Mitigation = Literal["none", "monitor", "reweight", "hold"]

RISK_ORDER: tuple[RiskTier, ...] = ("low", "medium", "high", "critical")


def max_tier(tiers: list[RiskTier]) -> RiskTier:
    return max(tiers, key=RISK_ORDER.index, default="low")


class GovernanceViolation(BaseModel):
    """A single policy violation."""

    record_id: str
    policy: str
    enforcement: Literal["advisory", "blocking"]
    message: str
    schema_name: str | None = None
    source_id: str | None = None


class GovernanceReport(BaseModel):
    """Outcome of governance evaluation over one batch."""

    status: StageStatus = "pending"
    evaluated: int = 0
    passed: int = 0
    advisory: int = 0
    blocked: int = 0
    violations: list[GovernanceViolation] = Field(default_factory=list)
    policies: list[dict[str, Any]] = Field(
        default_factory=list, description="Snapshot of the policies evaluated"
    )

    def blocked_record_ids(self) -> set[str]:
        return {v.record_id for v in self.violations if v.enforcement == "blocking"}


class AttributeBias(BaseModel):
    """Bias measurements for one sensitive attribute."""

    attribute: str
    group_rates: dict[str, float] = Field(default_factory=dict)
    group_sizes: dict[str, int] = Field(default_factory=dict)
    excluded_groups: list[str] = Field(
        default_factory=list, description="Groups below the minimum size"
    )
    parity_difference: float = 0.0
    disparate_impact: float = 1.0
    chi2: float = 0.0
    p_value: float = 1.0
    significant: bool = False
    risk_tier: RiskTier = "low"
    reweighting: dict[str, float] = Field(default_factory=dict)
    note: str | None = None


class BiasReport(BaseModel):
    """Bias assessment of one schema within a run."""

    report_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    run_id: str | None = None
    schema_name: str
    outcome_field: str | None = None
    record_count: int = 0
    risk_tier: RiskTier = "low"
    mitigation: Mitigation = "none"
    attributes: list[AttributeBias] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def blocks_sensitive_targets(self) -> bool:
        return self.risk_tier in ("high", "critical")


class QualitySummary(BaseModel):
    record_count: int = 0
    mean_quality: float = 0.0
    min_quality: float = 0.0
    mean_confidence: float = 0.0
    per_schema: dict[str, float] = Field(default_factory=dict)


class ScoringReport(BaseModel):
    """Stage statuses and summaries recorded in the run history."""

    stages: dict[str, StageStatus] = Field(
        default_factory=lambda: {"quality": "pending", "governance": "pending", "bias": "pending"}
    )
    quality: QualitySummary = Field(default_factory=QualitySummary)
    governance: GovernanceReport = Field(default_factory=GovernanceReport)
    bias: list[BiasReport] = Field(default_factory=list)

    def bias_for(self, schema_name: str) -> BiasReport | None:
        return next((b for b in self.bias if b.schema_name == schema_name), None)

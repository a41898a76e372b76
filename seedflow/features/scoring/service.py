"""Scoring stage: quality, confidence, governance and bias."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from seedflow.core.config import Settings, get_settings
from seedflow.core.logging import get_logger
from seedflow.features.cleaning.canonical import SchemaRegistry
from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.scoring.bias import detect_bias
from seedflow.features.scoring.governance import (
    GovernancePolicy,
    default_policies,
    evaluate_governance,
)
from seedflow.features.scoring.quality import compute_confidence, score_quality
from seedflow.features.scoring.schemas import (
    BiasReport,
    GovernanceReport,
    QualitySummary,
    ScoringReport,
)
from seedflow.shared.audit import AuditEvent, AuditKind, AuditSink, discard_audit
from seedflow.shared.utils import utcnow

logger = get_logger(__name__)


@dataclass
class ScoringOutcome:
    records: list[CanonicalRecord]
    report: ScoringReport


class ScoringService:
    """Scores batches and evaluates governance and bias."""

    def __init__(
        self,
        settings: Settings | None = None,
        registry: SchemaRegistry | None = None,
        policies: Sequence[GovernancePolicy] | None = None,
        audit: AuditSink = discard_audit,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry or SchemaRegistry()
        self.policies: list[GovernancePolicy] = (
            list(policies) if policies is not None else default_policies()
        )
        self.audit = audit

    def set_policies(self, policies: Sequence[GovernancePolicy]) -> None:
        self.policies = list(policies)
        logger.info("scoring.policies_updated", policies=[p.name for p in self.policies])

    def policy_names(self) -> list[str]:
        return [p.name for p in self.policies]

    # ------------------------------------------------------------------
    # Quality and confidence
    # ------------------------------------------------------------------

    def score_quality(
        self, records: Sequence[CanonicalRecord], now: datetime | None = None
    ) -> list[CanonicalRecord]:
        """Attach quality scores to every record."""
        now = now or utcnow()
        scored = []
        for record in records:
            schema = self.registry.get(record.schema_name)
            scored.append(record.model_copy(update={"quality": score_quality(record, schema, now)}))
        return scored

    def apply_confidence(
        self,
        records: Sequence[CanonicalRecord],
        reliability: Mapping[str, float],
        now: datetime | None = None,
    ) -> list[CanonicalRecord]:
        """Attach confidence; records without a registered source use their raw confidence."""
        now = now or utcnow()
        out = []
        for record in records:
            quality = record.quality.score if record.quality else 0.0
            source_reliability = reliability.get(record.source_id, record.raw_confidence)
            reference = record.observed_at or record.collected_at
            age_hours = max(0.0, (now - reference).total_seconds() / 3600)
            confidence = compute_confidence(
                quality,
                source_reliability,
                age_hours,
                rate=self.settings.confidence_decay_rate,
                interval_hours=self.settings.confidence_decay_interval_hours,
                floor=self.settings.confidence_floor,
            )
            out.append(record.model_copy(update={"confidence": round(confidence, 6)}))
        return out

    # ------------------------------------------------------------------
    # Governance and bias
    # ------------------------------------------------------------------

    def evaluate_governance(
        self, records: Sequence[CanonicalRecord], now: datetime | None = None
    ) -> tuple[list[CanonicalRecord], GovernanceReport]:
        return evaluate_governance(records, self.policies, now or utcnow())

    def detect_bias(
        self, records: Sequence[CanonicalRecord], run_id: str | None = None
    ) -> list[BiasReport]:
        """One bias report per schema that declares sensitive attributes."""
        by_schema: dict[str, list[CanonicalRecord]] = defaultdict(list)
        for record in records:
            by_schema[record.schema_name].append(record)

        reports = []
        for schema_name, group in sorted(by_schema.items()):
            config = self.registry.get(schema_name).bias
            if not config.sensitive_attributes or config.outcome_field is None:
                continue
            reports.append(
                detect_bias(
                    group,
                    schema_name,
                    config.sensitive_attributes,
                    lambda r, c=config: c.outcome(r.fields),
                    min_group_size=self.settings.bias_min_group_size,
                    significance_level=self.settings.bias_significance_level,
                    run_id=run_id,
                    outcome_field=config.outcome_field,
                )
            )
        return reports

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    def _score(
        self,
        records: Sequence[CanonicalRecord],
        run_id: str | None,
        reliability: Mapping[str, float],
        now: datetime,
    ) -> ScoringOutcome:
        report = ScoringReport()

        scored = self.score_quality(records, now)
        scored = self.apply_confidence(scored, reliability, now)
        report.quality = _summarize(scored)
        report.stages["quality"] = "passed"

        scored, report.governance = self.evaluate_governance(scored, now)
        report.stages["governance"] = report.governance.status

        report.bias = self.detect_bias(scored, run_id)
        if any(b.blocks_sensitive_targets for b in report.bias):
            report.stages["bias"] = "blocked"
        elif any(b.risk_tier == "medium" for b in report.bias):
            report.stages["bias"] = "advisory"
        else:
            report.stages["bias"] = "passed"
        return ScoringOutcome(scored, report)

    async def score(
        self,
        records: Sequence[CanonicalRecord],
        *,
        run_id: str | None = None,
        reliability: Mapping[str, float] | None = None,
        now: datetime | None = None,
    ) -> ScoringOutcome:
        """Run the scoring stage off the event loop and audit its findings."""
        outcome = await asyncio.to_thread(
            self._score, records, run_id, reliability or {}, now or utcnow()
        )
        report = outcome.report

        for violation in report.governance.violations:
            await self.audit(
                AuditEvent(
                    kind=AuditKind.GOVERNANCE_VIOLATION,
                    severity="warning" if violation.enforcement == "blocking" else "info",
                    run_id=run_id,
                    source_id=violation.source_id,
                    record_id=violation.record_id,
                    message=f"{violation.policy}: {violation.message}",
                    details=violation.model_dump(),
                )
            )
        for bias in report.bias:
            await self.audit(
                AuditEvent(
                    kind=AuditKind.BIAS_REPORT,
                    severity="warning" if bias.blocks_sensitive_targets else "info",
                    run_id=run_id,
                    message=f"Bias risk {bias.risk_tier} for {bias.schema_name}",
                    details={
                        "report_id": bias.report_id,
                        "schema": bias.schema_name,
                        "risk_tier": bias.risk_tier,
                        "mitigation": bias.mitigation,
                    },
                )
            )

        logger.info(
            "scoring.completed",
            run_id=run_id,
            stages=report.stages,
            mean_quality=report.quality.mean_quality,
            blocked=report.governance.blocked,
            bias_tiers={b.schema_name: b.risk_tier for b in report.bias},
        )
        return outcome


def _summarize(records: Sequence[CanonicalRecord]) -> QualitySummary:
    if not records:
        return QualitySummary()
    scores = np.array([r.quality.score if r.quality else 0.0 for r in records])
    confidences = np.array([r.confidence or 0.0 for r in records])
    per_schema: dict[str, list[float]] = defaultdict(list)
    for record, score in zip(records, scores, strict=True):
        per_schema[record.schema_name].append(float(score))
    return QualitySummary(
        record_count=len(records),
        mean_quality=round(float(scores.mean()), 6),
        min_quality=round(float(scores.min()), 6),
        mean_confidence=round(float(confidences.mean()), 6),
        per_schema={k: round(float(np.mean(v)), 6) for k, v in per_schema.items()},
    )

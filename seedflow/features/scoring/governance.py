"""Governance policies and their evaluation.

A policy is a named predicate over a record (``scope="record"``) or over a
whole batch (``scope="batch"``). Blocking violations hold the record from
every target bound to the policy until an explicit override; advisory
violations are only recorded.
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from seedflow.core.logging import get_logger
from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.scoring.schemas import GovernanceReport, GovernanceViolation

logger = get_logger(__name__)

RecordCheck = Callable[[CanonicalRecord, Mapping[str, Any], datetime], str | None]
BatchCheck = Callable[[Sequence[CanonicalRecord], Mapping[str, Any], datetime], dict[str, str]]

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_PATTERN = re.compile(r"(?:\+\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b")


@dataclass(frozen=True)
class GovernancePolicy:
    """A governance policy.

    Attributes:
        name: Unique policy name, used in target policy bindings.
        description: Human-readable description.
        enforcement: ``blocking`` holds records, ``advisory`` only records.
        check: Record or batch predicate returning violation messages.
        scope: ``record`` or ``batch``.
        schemas: Schemas the policy applies to (None = all).
        params: Parameters passed to the check.
    """

    name: str
    description: str
    enforcement: Literal["advisory", "blocking"]
    check: RecordCheck | BatchCheck
    scope: Literal["record", "batch"] = "record"
    schemas: frozenset[str] | None = None
    params: Mapping[str, Any] = field(default_factory=dict)

    def applies_to(self, schema_name: str) -> bool:
        return self.schemas is None or schema_name in self.schemas

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "enforcement": self.enforcement,
            "scope": self.scope,
            "schemas": sorted(self.schemas) if self.schemas is not None else None,
            "params": dict(self.params),
        }


# =============================================================================
# Checks
# =============================================================================


def _retention_check(record: CanonicalRecord, params: Mapping[str, Any], now: datetime) -> str | None:
    max_age_days = float(params.get("max_age_days", 365))
    reference = record.observed_at or record.collected_at
    age_days = (now - reference).total_seconds() / 86400
    if age_days > max_age_days:
        return f"Observed {age_days:.0f} days ago, beyond the {max_age_days:.0f}-day retention limit"
    return None


def _iter_text(values: Mapping[str, Any]) -> Iterable[tuple[str, str]]:
    for key, value in values.items():
        if isinstance(value, str):
            yield key, value
        elif isinstance(value, Mapping):
            for nested_key, nested in _iter_text(value):
                yield f"{key}.{nested_key}", nested


def _pii_check(record: CanonicalRecord, params: Mapping[str, Any], now: datetime) -> str | None:
    only = set(params.get("fields") or [])
    found: list[str] = []
    for container in (record.fields, record.extra):
        for key, text in _iter_text(container):
            if only and key not in only:
                continue
            if EMAIL_PATTERN.search(text):
                found.append(f"{key}:email")
            elif PHONE_PATTERN.search(text):
                found.append(f"{key}:phone")
    if found:
        return f"Personal data detected in {', '.join(sorted(found))}"
    return None


def _consent_check(record: CanonicalRecord, params: Mapping[str, Any], now: datetime) -> str | None:
    consent_field = params.get("field", "consent")
    if record.fields.get(consent_field) is not True:
        return f"No recorded consent ('{consent_field}' is not true)"
    return None


def _completeness_check(
    record: CanonicalRecord, params: Mapping[str, Any], now: datetime
) -> str | None:
    minimum = float(params.get("min_completeness", 0.6))
    if record.quality is not None:
        completeness = record.quality.dimensions.get("completeness", 0.0)
    else:
        values = list(record.fields.values())
        completeness = sum(v is not None for v in values) / len(values) if values else 1.0
    if completeness < minimum:
        return f"Completeness {completeness:.2f} below {minimum:.2f}"
    return None


def _synthetic_disclosure_check(
    record: CanonicalRecord, params: Mapping[str, Any], now: datetime
) -> str | None:
    generated = record.source_id.startswith("synthetic:") or any(
        step.startswith("synthetic:") for step in record.provenance_chain
    )
    if generated and record.provenance != "synthetic":
        return "Generated record is not tagged as synthetic"
    if record.provenance == "synthetic" and not any(
        step.startswith("synthetic:template:") for step in record.provenance_chain
    ):
        return "Synthetic record does not name its generating template"
    return None


def _synthetic_share_check(
    records: Sequence[CanonicalRecord], params: Mapping[str, Any], now: datetime
) -> dict[str, str]:
    max_ratio = float(params.get("max_ratio", 0.3))
    by_schema: dict[str, list[CanonicalRecord]] = defaultdict(list)
    for record in records:
        by_schema[record.schema_name].append(record)

    violations: dict[str, str] = {}
    for schema_name, group in by_schema.items():
        synthetic = [r for r in group if r.provenance == "synthetic"]
        share = len(synthetic) / len(group)
        if share > max_ratio:
            message = f"Synthetic share {share:.2f} of '{schema_name}' exceeds {max_ratio:.2f}"
            violations.update({r.record_id: message for r in synthetic})
    return violations


# =============================================================================
# Presets
# =============================================================================


def retention_limit(max_age_days: float = 365, **overrides: Any) -> GovernancePolicy:
    return GovernancePolicy(
        name="retention_limit",
        description="Records older than the retention period must not be distributed",
        enforcement=overrides.get("enforcement", "blocking"),
        check=_retention_check,
        schemas=overrides.get("schemas"),
        params={"max_age_days": max_age_days},
    )


def pii_detection(fields: list[str] | None = None, **overrides: Any) -> GovernancePolicy:
    return GovernancePolicy(
        name="pii_detection",
        description="Free text must not contain e-mail addresses or phone numbers",
        enforcement=overrides.get("enforcement", "blocking"),
        check=_pii_check,
        schemas=overrides.get("schemas"),
        params={"fields": fields or []},
    )


def consent_scope(field: str = "consent", **overrides: Any) -> GovernancePolicy:
    return GovernancePolicy(
        name="consent_scope",
        description="Behavioural records require recorded user consent",
        enforcement=overrides.get("enforcement", "blocking"),
        check=_consent_check,
        schemas=overrides.get("schemas", frozenset({"navigation_behavior"})),
        params={"field": field},
    )


def minimum_completeness(min_completeness: float = 0.6, **overrides: Any) -> GovernancePolicy:
    return GovernancePolicy(
        name="minimum_completeness",
        description="Records should populate most schema fields",
        enforcement=overrides.get("enforcement", "advisory"),
        check=_completeness_check,
        schemas=overrides.get("schemas"),
        params={"min_completeness": min_completeness},
    )


def synthetic_disclosure(**overrides: Any) -> GovernancePolicy:
    return GovernancePolicy(
        name="synthetic_disclosure",
        description="Synthetic records must be tagged and name their template",
        enforcement=overrides.get("enforcement", "blocking"),
        check=_synthetic_disclosure_check,
        schemas=overrides.get("schemas"),
    )


def synthetic_share(max_ratio: float = 0.3, **overrides: Any) -> GovernancePolicy:
    return GovernancePolicy(
        name="synthetic_share",
        description="Synthetic records should not dominate a schema's batch",
        enforcement=overrides.get("enforcement", "advisory"),
        check=_synthetic_share_check,
        scope="batch",
        schemas=overrides.get("schemas"),
        params={"max_ratio": max_ratio},
    )


POLICY_PRESETS: dict[str, Callable[..., GovernancePolicy]] = {
    "retention_limit": retention_limit,
    "pii_detection": pii_detection,
    "consent_scope": consent_scope,
    "minimum_completeness": minimum_completeness,
    "synthetic_disclosure": synthetic_disclosure,
    "synthetic_share": synthetic_share,
}


def build_policy(
    preset: str,
    *,
    enforcement: Literal["advisory", "blocking"] | None = None,
    schemas: Iterable[str] | None = None,
    **params: Any,
) -> GovernancePolicy:
    """Instantiate a preset policy with parameter and enforcement overrides.

    Raises:
        ValueError: If the preset is unknown.
    """
    factory = POLICY_PRESETS.get(preset)
    if factory is None:
        raise ValueError(f"Unknown governance policy preset: {preset}")
    overrides: dict[str, Any] = {}
    if enforcement is not None:
        overrides["enforcement"] = enforcement
    if schemas is not None:
        overrides["schemas"] = frozenset(schemas)
    return factory(**params, **overrides)


def default_policies() -> list[GovernancePolicy]:
    return [factory() for factory in POLICY_PRESETS.values()]


# =============================================================================
# Evaluation
# =============================================================================


def evaluate_governance(
    records: Sequence[CanonicalRecord],
    policies: Sequence[GovernancePolicy],
    now: datetime,
) -> tuple[list[CanonicalRecord], GovernanceReport]:
    """Run every policy over a batch.

    A policy whose check raises is treated as a violation with its own
    enforcement level; evaluation of the other policies continues.

    Returns:
        Tuple of (records with governance status set, report).
    """
    violations: list[GovernanceViolation] = []
    by_id = {r.record_id: r for r in records}

    def add(record: CanonicalRecord, policy: GovernancePolicy, message: str) -> None:
        violations.append(
            GovernanceViolation(
                record_id=record.record_id,
                policy=policy.name,
                enforcement=policy.enforcement,
                message=message,
                schema_name=record.schema_name,
                source_id=record.source_id,
            )
        )

    for policy in policies:
        scoped = [r for r in records if policy.applies_to(r.schema_name)]
        if not scoped:
            continue
        if policy.scope == "batch":
            try:
                found = policy.check(scoped, policy.params, now)  # type: ignore[arg-type]
            except Exception as e:
                logger.error("governance.policy_failed", policy=policy.name, error=str(e), exc_info=True)
                found = {r.record_id: f"Policy evaluation failed: {e}" for r in scoped}
            for record_id, message in found.items():
                if record_id in by_id:
                    add(by_id[record_id], policy, message)
            continue
        for record in scoped:
            try:
                message = policy.check(record, policy.params, now)  # type: ignore[arg-type]
            except Exception as e:
                logger.error(
                    "governance.policy_failed",
                    policy=policy.name,
                    record_id=record.record_id,
                    error=str(e),
                    exc_info=True,
                )
                message = f"Policy evaluation failed: {e}"
            if message:
                add(record, policy, message)

    blocking: dict[str, list[str]] = defaultdict(list)
    advisory: dict[str, list[str]] = defaultdict(list)
    for violation in violations:
        target = blocking if violation.enforcement == "blocking" else advisory
        if violation.policy not in target[violation.record_id]:
            target[violation.record_id].append(violation.policy)

    updated: list[CanonicalRecord] = []
    report = GovernanceReport(
        evaluated=len(records),
        violations=violations,
        policies=[p.snapshot() for p in policies],
    )
    for record in records:
        if record.record_id in blocking:
            status = "blocked"
            report.blocked += 1
        elif record.record_id in advisory:
            status = "advisory"
            report.advisory += 1
        else:
            status = "passed"
            report.passed += 1
        updated.append(
            record.model_copy(
                update={
                    "governance_status": status,
                    "governance_blocked_by": blocking.get(record.record_id, []),
                    "governance_advisories": advisory.get(record.record_id, []),
                }
            )
        )

    report.status = "blocked" if report.blocked else "advisory" if report.advisory else "passed"
    logger.info(
        "governance.evaluated",
        evaluated=report.evaluated,
        passed=report.passed,
        advisory=report.advisory,
        blocked=report.blocked,
    )
    return updated, report

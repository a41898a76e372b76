"""Per-target record selection.

A record reaches a target only if the target accepts its schema, no bound
blocking policy or bias finding holds it, it meets the target's quality
and confidence minimums and passes the target's filters. Synthetic records
are then trimmed so they never exceed the target's synthetic ratio.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from seedflow.features.augmentation.synthetic import synthetic_cap
from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.distribution.schemas import HoldEntry, TargetConfig
from seedflow.features.distribution.transform import map_row, passes_filters
from seedflow.features.scoring.schemas import BiasReport


@dataclass
class Selection:
    """Eligible records for one target and the accounting of the rest."""

    records: list[CanonicalRecord] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    holds: list[HoldEntry] = field(default_factory=list)
    excluded: Counter[str] = field(default_factory=Counter)
    trimmed: int = 0
    candidates: int = 0

    @property
    def filtered(self) -> int:
        return sum(self.excluded.values())

    @property
    def synthetic(self) -> int:
        return sum(1 for r in self.records if r.is_synthetic)


def hold_for(
    record: CanonicalRecord,
    config: TargetConfig,
    run_id: str | None,
    bias_reports: Mapping[str, BiasReport],
) -> HoldEntry | None:
    """Hold entry if a bound blocking policy or a bias finding withholds the record."""
    if record.governance_status == "blocked":
        bound = config.binds(record.governance_blocked_by)
        if bound:
            return HoldEntry(
                run_id=run_id,
                target_id=config.target_id,
                record_id=record.record_id,
                schema_name=record.schema_name,
                reason="governance",
                policies=bound,
            )
    if config.bias_sensitive:
        report = bias_reports.get(record.schema_name)
        if report is not None and report.blocks_sensitive_targets:
            return HoldEntry(
                run_id=run_id,
                target_id=config.target_id,
                record_id=record.record_id,
                schema_name=record.schema_name,
                reason="bias",
                bias_report_id=report.report_id,
            )
    return None


def threshold_failure(record: CanonicalRecord, config: TargetConfig) -> str | None:
    """Name of the first minimum the record misses, if any."""
    quality = record.quality.score if record.quality is not None else 0.0
    if quality < config.min_quality:
        return "quality"
    confidence = record.confidence if record.confidence is not None else 0.0
    if confidence < config.min_confidence:
        return "confidence"
    if record.governance_status == "advisory" and not config.allow_advisory:
        return "advisory"
    return None


def trim_synthetic(
    records: Sequence[CanonicalRecord],
    max_ratio: float,
    *,
    observed_base: int = 0,
    synthetic_base: int = 0,
) -> tuple[list[CanonicalRecord], int]:
    """Drop the lowest-quality synthetic records above the ratio cap.

    ``observed_base`` and ``synthetic_base`` count records already delivered
    in the same window (used by the real-time lane).

    Returns:
        Tuple of (kept records in input order, number trimmed).
    """
    observed = sum(1 for r in records if not r.is_synthetic)
    synthetic = [r for r in records if r.is_synthetic]
    allowed = max(0, synthetic_cap(observed + observed_base, max_ratio) - synthetic_base)
    if len(synthetic) <= allowed:
        return list(records), 0

    ranked = sorted(
        synthetic,
        key=lambda r: (-(r.quality.score if r.quality else 0.0), r.record_id),
    )
    keep = {r.record_id for r in ranked[:allowed]}
    kept = [r for r in records if not r.is_synthetic or r.record_id in keep]
    return kept, len(synthetic) - allowed


def select_records(
    records: Sequence[CanonicalRecord],
    config: TargetConfig,
    *,
    run_id: str | None = None,
    bias_reports: Mapping[str, BiasReport] | None = None,
    ignore_holds: bool = False,
    observed_base: int = 0,
    synthetic_base: int = 0,
) -> Selection:
    """Select the records ``config`` may receive.

    Args:
        records: Scored canonical records.
        config: Target configuration snapshot.
        run_id: Run being distributed (recorded on hold entries).
        bias_reports: Bias report per schema for the run.
        ignore_holds: Skip governance and bias holds (authorized override).
        observed_base: Observed records already delivered in the window.
        synthetic_base: Synthetic records already delivered in the window.

    Returns:
        Selection with eligible records, their mapped rows and the counts of
        everything held, filtered or trimmed.
    """
    reports = bias_reports or {}
    selection = Selection()
    passing: list[tuple[CanonicalRecord, dict[str, Any]]] = []

    for record in records:
        if not config.accepts(record.schema_name):
            continue
        selection.candidates += 1

        if not ignore_holds:
            hold = hold_for(record, config, run_id, reports)
            if hold is not None:
                selection.holds.append(hold)
                continue

        failure = threshold_failure(record, config)
        if failure is not None:
            selection.excluded[failure] += 1
            continue

        row = map_row(record.delivery_row(), config.transformation)
        if not passes_filters(row, config.transformation):
            selection.excluded["filter"] += 1
            continue
        passing.append((record, row))

    kept, selection.trimmed = trim_synthetic(
        [record for record, _ in passing],
        config.max_synthetic_ratio,
        observed_base=observed_base,
        synthetic_base=synthetic_base,
    )
    kept_ids = {id(r) for r in kept}
    for record, row in passing:
        if id(record) in kept_ids:
            selection.records.append(record)
            selection.rows.append(row)
    return selection

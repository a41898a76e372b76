"""Cleaning and normalization engine.

Cleaning works on raw records: deduplication, imputation of numeric gaps
and outlier flagging, all computed per payload kind. Normalization maps
cleaned records onto canonical schemas; anything no schema accepts is
quarantined with its reasons. Reconciliation then keeps one record per
(schema, entity key).
"""

from __future__ import annotations

import asyncio
import re
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import numpy as np

from seedflow.core.config import Settings, get_settings
from seedflow.core.logging import get_logger
from seedflow.features.cleaning.canonical import CanonicalSchema, FieldMapping, SchemaRegistry
from seedflow.features.cleaning.coercion import coerce
from seedflow.features.cleaning.schemas import (
    CanonicalRecord,
    CleaningReport,
    QuarantinedRecord,
    RecordFlags,
)
from seedflow.features.collection.schemas import RawRecord
from seedflow.shared.audit import AuditEvent, AuditKind, AuditSink, discard_audit

logger = get_logger(__name__)


@dataclass(frozen=True)
class CleaningConfig:
    """Cleaning parameters.

    Attributes:
        imputation: ``drop`` removes incomplete records, ``default`` fills 0,
            ``statistical`` fills the batch median.
        outlier_method: ``zscore`` or ``iqr``.
        zscore_threshold: |z| above which a value is an outlier.
        iqr_multiplier: k in [Q1 - k*IQR, Q3 + k*IQR].
        min_presence: A numeric field is imputed only when at least this
            share of the kind's records carry it.
        min_samples: Minimum values needed before outliers are computed.
    """

    imputation: Literal["drop", "default", "statistical"] = "statistical"
    outlier_method: Literal["zscore", "iqr"] = "iqr"
    zscore_threshold: float = 3.0
    iqr_multiplier: float = 1.5
    min_presence: float = 0.5
    min_samples: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> CleaningConfig:
        return cls(
            imputation=settings.cleaning_imputation_strategy,
            outlier_method=settings.cleaning_outlier_method,
            zscore_threshold=settings.cleaning_zscore_threshold,
            iqr_multiplier=settings.cleaning_iqr_multiplier,
        )


@dataclass
class CleanedRecord:
    """Raw record after cleaning, with the native fields it touched."""

    record: RawRecord
    imputed_fields: list[str] = field(default_factory=list)
    outlier_fields: list[str] = field(default_factory=list)


@dataclass
class CleaningResult:
    records: list[CleanedRecord] = field(default_factory=list)
    duplicates_removed: int = 0
    dropped: list[RawRecord] = field(default_factory=list)
    imputed: int = 0
    outliers: int = 0
    # record_id -> fields whose absence dropped the record
    missing_fields: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class NormalizationResult:
    records: list[CanonicalRecord] = field(default_factory=list)
    quarantined: list[QuarantinedRecord] = field(default_factory=list)


@dataclass
class CleaningOutcome:
    """Everything the orchestrator needs from the cleaning stage."""

    records: list[CanonicalRecord]
    quarantined: list[QuarantinedRecord]
    report: CleaningReport
    rejections_by_source: dict[str, int] = field(default_factory=dict)
    dropped: list[RawRecord] = field(default_factory=list)
    missing_fields: dict[str, list[str]] = field(default_factory=dict)


# =============================================================================
# Cleaning
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _payload_fields(record: RawRecord) -> dict[str, Any]:
    return record.payload.model_dump(exclude={"kind"})


def deduplicate(batch: Sequence[RawRecord]) -> tuple[list[RawRecord], int]:
    """Drop duplicate observations.

    Records sharing (source_id, source_key) keep the most recently
    collected one; records of the same source with identical content are
    collapsed to the first seen.
    """
    by_key: dict[tuple[str, str], RawRecord] = {}
    for record in batch:
        key = (record.source_id, record.source_key)
        current = by_key.get(key)
        if current is None or record.collected_at > current.collected_at:
            by_key[key] = record

    seen: set[tuple[str, str]] = set()
    unique: list[RawRecord] = []
    for record in by_key.values():
        fingerprint = (record.source_id, record.payload_hash())
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        unique.append(record)
    return unique, len(batch) - len(unique)


def _impute(
    group: list[RawRecord], config: CleaningConfig
) -> tuple[list[CleanedRecord], list[tuple[RawRecord, list[str]]], int]:
    dumps = [_payload_fields(r) for r in group]
    numeric = sorted({k for d in dumps for k, v in d.items() if _is_number(v)})

    fills: dict[str, Any] = {}
    for name in numeric:
        present = [d[name] for d in dumps if d.get(name) is not None]
        share = len(present) / len(dumps)
        if share < config.min_presence or share >= 1.0:
            continue
        if config.imputation == "statistical":
            median = float(np.median(np.asarray(present, dtype=float)))
            fills[name] = round(median) if all(isinstance(v, int) for v in present) else median
        else:
            fills[name] = 0

    kept: list[CleanedRecord] = []
    dropped: list[tuple[RawRecord, list[str]]] = []
    imputed = 0
    for record, dump in zip(group, dumps, strict=True):
        missing = [name for name in fills if dump.get(name) is None]
        if not missing:
            kept.append(CleanedRecord(record))
            continue
        if config.imputation == "drop":
            dropped.append((record, missing))
            continue
        payload = record.payload.model_copy(update={name: fills[name] for name in missing})
        kept.append(CleanedRecord(record.model_copy(update={"payload": payload}), imputed_fields=missing))
        imputed += len(missing)
    return kept, dropped, imputed


def _outlier_mask(values: np.ndarray, config: CleaningConfig) -> np.ndarray:
    if config.outlier_method == "zscore":
        std = values.std()
        if std == 0:
            return np.zeros(values.shape, dtype=bool)
        return np.abs((values - values.mean()) / std) > config.zscore_threshold
    q1, q3 = np.percentile(values, [25, 75])
    iqr = q3 - q1
    low, high = q1 - config.iqr_multiplier * iqr, q3 + config.iqr_multiplier * iqr
    return (values < low) | (values > high)


def _flag_outliers(group: list[CleanedRecord], config: CleaningConfig) -> int:
    dumps = [_payload_fields(c.record) for c in group]
    numeric = sorted({k for d in dumps for k, v in d.items() if _is_number(v)})
    flagged = 0
    for name in numeric:
        indexed = [(i, float(d[name])) for i, d in enumerate(dumps) if _is_number(d.get(name))]
        if len(indexed) < config.min_samples:
            continue
        mask = _outlier_mask(np.asarray([v for _, v in indexed]), config)
        for (index, _), is_outlier in zip(indexed, mask, strict=True):
            if is_outlier:
                group[index].outlier_fields.append(name)
                flagged += 1
    return flagged


def clean(batch: Sequence[RawRecord], config: CleaningConfig | None = None) -> CleaningResult:
    """Deduplicate, impute and flag outliers in a raw batch.

    Args:
        batch: Raw records from the collection stage.
        config: Cleaning parameters.

    Returns:
        CleaningResult; outlier values are kept and only flagged.
    """
    config = config or CleaningConfig()
    unique, duplicates = deduplicate(batch)

    by_kind: dict[str, list[RawRecord]] = defaultdict(list)
    for record in unique:
        by_kind[record.kind].append(record)

    result = CleaningResult(duplicates_removed=duplicates)
    for kind in sorted(by_kind):
        kept, dropped, imputed = _impute(by_kind[kind], config)
        result.outliers += _flag_outliers(kept, config)
        result.records.extend(kept)
        for record, missing in dropped:
            result.dropped.append(record)
            result.missing_fields[record.record_id] = missing
        result.imputed += imputed

    logger.info(
        "cleaning.clean_completed",
        input_count=len(batch),
        duplicates_removed=result.duplicates_removed,
        dropped=len(result.dropped),
        imputed=result.imputed,
        outliers=result.outliers,
    )
    return result


# =============================================================================
# Normalization
# =============================================================================


class _Rejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _lookup(record: RawRecord, payload: Mapping[str, Any], path: str) -> Any:
    if path == "$source_key":
        return record.source_key
    if path == "$source_id":
        return record.source_id
    if path == "$collected_at":
        return record.collected_at

    parts = path.split(".")
    if parts[0] == "payload" and len(parts) > 1:
        containers, parts = [payload], parts[1:]
    elif parts[0] == "extra" and len(parts) > 1:
        containers, parts = [record.extra], parts[1:]
    else:
        containers = [payload, record.extra]

    for container in containers:
        value: Any = container
        for part in parts:
            if not isinstance(value, Mapping) or part not in value:
                value = None
                break
            value = value[part]
        if value is not None:
            return value
    return None


def _is_valid(mapping: FieldMapping, value: Any) -> bool:
    if mapping.minimum is not None and _is_number(value) and value < mapping.minimum:
        return False
    if mapping.maximum is not None and _is_number(value) and value > mapping.maximum:
        return False
    if mapping.choices is not None and value not in mapping.choices:
        return False
    if mapping.pattern is not None and isinstance(value, str):
        return re.fullmatch(mapping.pattern, value) is not None
    return True


def _key_part(value: Any) -> str:
    return value.isoformat() if isinstance(value, datetime) else str(value)


def _quarantine(
    cleaned: CleanedRecord, reasons: list[str], schema_name: str | None = None
) -> QuarantinedRecord:
    raw = cleaned.record
    return QuarantinedRecord(
        record_id=raw.record_id,
        source_id=raw.source_id,
        source_key=raw.source_key,
        kind=raw.kind,
        schema_name=schema_name,
        reasons=reasons,
        raw=raw.model_dump(mode="json"),
    )


def _as_cleaned(items: Iterable[CleanedRecord | RawRecord]) -> list[CleanedRecord]:
    return [i if isinstance(i, CleanedRecord) else CleanedRecord(i) for i in items]


def normalize_record(
    cleaned: CleanedRecord, schema: CanonicalSchema, run_id: str | None = None
) -> CanonicalRecord:
    """Map one cleaned record onto a canonical schema.

    Raises:
        _Rejected: If the schema does not accept the record.
    """
    raw = cleaned.record
    if raw.kind not in schema.accepts:
        raise _Rejected(f"kind '{raw.kind}' not accepted")

    payload = _payload_fields(raw)
    fields: dict[str, Any] = {}
    invalid: list[str] = []
    consumed: set[str] = set()

    for mapping in schema.fields:
        consumed |= mapping.roots
        value = next(
            (v for v in (_lookup(raw, payload, p) for p in mapping.paths) if v is not None),
            None,
        )
        if value is None:
            value = mapping.default
        if value is None:
            if mapping.required:
                raise _Rejected(f"missing required field '{mapping.target}'")
            fields[mapping.target] = None
            continue
        try:
            coerced = coerce(value, mapping.type)
        except (TypeError, ValueError, OverflowError):
            if mapping.required:
                raise _Rejected(
                    f"field '{mapping.target}' not coercible to {mapping.type}: {value!r}"
                ) from None
            invalid.append(mapping.target)
            fields[mapping.target] = None
            continue
        if not _is_valid(mapping, coerced):
            invalid.append(mapping.target)
        fields[mapping.target] = coerced

    for derived in schema.derived:
        if derived.only_if_missing and fields.get(derived.target) is not None:
            continue
        value = derived.formula().evaluate(fields)
        if isinstance(value, float):
            value = round(value, derived.decimals)
        fields[derived.target] = value

    extra = {k: v for k, v in payload.items() if k not in consumed and v is not None}
    extra.update({k: v for k, v in raw.extra.items() if k not in consumed})

    entity_key = "|".join(_key_part(fields[k]) for k in schema.entity_key)
    observed = fields.get(schema.observed_at_field) if schema.observed_at_field else None

    def targets_for(native: list[str]) -> list[str]:
        names = set(native)
        return [m.target for m in schema.fields if m.roots & names]

    return CanonicalRecord(
        record_id=CanonicalRecord.compute_id(schema.name, entity_key, fields, extra, raw.provenance),
        run_id=run_id,
        schema_name=schema.name,
        schema_version=schema.version,
        entity_key=entity_key,
        source_id=raw.source_id,
        source_key=raw.source_key,
        provenance=raw.provenance,
        provenance_chain=[*raw.provenance_chain, f"normalize:{schema.name}"],
        collected_at=raw.collected_at,
        observed_at=observed if isinstance(observed, datetime) else None,
        fields=fields,
        extra=extra,
        flags=RecordFlags(
            outlier_fields=targets_for(cleaned.outlier_fields),
            imputed_fields=targets_for(cleaned.imputed_fields),
            invalid_fields=invalid,
        ),
        raw_confidence=raw.raw_confidence,
    )


def normalize(
    batch: Iterable[CleanedRecord | RawRecord],
    schema: CanonicalSchema,
    run_id: str | None = None,
) -> NormalizationResult:
    """Normalize a batch against a single target schema."""
    result = NormalizationResult()
    for cleaned in _as_cleaned(batch):
        try:
            result.records.append(normalize_record(cleaned, schema, run_id))
        except _Rejected as e:
            result.quarantined.append(_quarantine(cleaned, [e.reason], schema.name))
    return result


def normalize_all(
    batch: Iterable[CleanedRecord | RawRecord],
    schemas: Sequence[CanonicalSchema],
    run_id: str | None = None,
) -> NormalizationResult:
    """Normalize each record against the first schema that accepts it.

    A record no schema accepts is quarantined with a ``SchemaMismatch``
    reason per candidate schema.
    """
    result = NormalizationResult()
    for cleaned in _as_cleaned(batch):
        kind = cleaned.record.kind
        candidates = [s for s in schemas if kind in s.accepts]
        reasons: list[str] = []
        normalized: CanonicalRecord | None = None
        for schema in candidates:
            try:
                normalized = normalize_record(cleaned, schema, run_id)
                break
            except _Rejected as e:
                reasons.append(f"SchemaMismatch: {schema.name}: {e.reason}")
        if normalized is not None:
            result.records.append(normalized)
            continue
        if not candidates:
            reasons.append(f"SchemaMismatch: no schema accepts kind '{kind}'")
        quarantined = _quarantine(cleaned, reasons)
        result.quarantined.append(quarantined)
        logger.warning(
            "cleaning.record_quarantined",
            record_id=quarantined.record_id,
            source_id=quarantined.source_id,
            kind=kind,
            reasons=reasons,
        )
    return result


# =============================================================================
# Reconciliation
# =============================================================================


def reconcile(
    records: Sequence[CanonicalRecord], reliability: Mapping[str, float]
) -> tuple[list[CanonicalRecord], int]:
    """Keep one record per (schema, entity key).

    The winner comes from the most reliable source, then the most recent
    collection, then the lexicographically lowest source id. Sources whose
    record differed from the winner are listed in ``flags.conflicts``.

    Returns:
        Tuple of (reconciled records in first-seen order, groups resolved).
    """
    groups: dict[tuple[str, str], list[CanonicalRecord]] = defaultdict(list)
    for record in records:
        groups[(record.schema_name, record.entity_key)].append(record)

    reconciled: list[CanonicalRecord] = []
    resolved = 0
    for group in groups.values():
        if len(group) == 1:
            reconciled.append(group[0])
            continue
        ranked = sorted(
            group,
            key=lambda r: (
                -reliability.get(r.source_id, 0.0),
                -r.collected_at.timestamp(),
                r.source_id,
            ),
        )
        winner = ranked[0]
        losers = sorted(
            {r.source_id for r in ranked[1:] if r.record_id != winner.record_id}
            - {winner.source_id}
        )
        if losers:
            resolved += 1
            flags = winner.flags.model_copy(
                update={"conflicts": sorted(set(winner.flags.conflicts) | set(losers))}
            )
            winner = winner.model_copy(update={"flags": flags})
        reconciled.append(winner)
    return reconciled, resolved


# =============================================================================
# Engine
# =============================================================================


class CleaningEngine:
    """Cleaning, normalization and reconciliation over a schema registry."""

    def __init__(
        self,
        settings: Settings | None = None,
        registry: SchemaRegistry | None = None,
        audit: AuditSink = discard_audit,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry or SchemaRegistry()
        self.audit = audit

    @property
    def config(self) -> CleaningConfig:
        return CleaningConfig.from_settings(self.settings)

    def clean(
        self, batch: Sequence[RawRecord], config: CleaningConfig | None = None
    ) -> CleaningResult:
        return clean(batch, config or self.config)

    def normalize(
        self,
        batch: Iterable[CleanedRecord | RawRecord],
        schema: str | CanonicalSchema,
        run_id: str | None = None,
    ) -> NormalizationResult:
        target = self.registry.get(schema) if isinstance(schema, str) else schema
        return normalize(batch, target, run_id)

    def normalize_all(
        self,
        batch: Iterable[CleanedRecord | RawRecord],
        schemas: Sequence[str] | None = None,
        run_id: str | None = None,
    ) -> NormalizationResult:
        selected = (
            self.registry.all() if schemas is None else [self.registry.get(s) for s in schemas]
        )
        return normalize_all(batch, selected, run_id)

    def reconcile(
        self, records: Sequence[CanonicalRecord], reliability: Mapping[str, float]
    ) -> tuple[list[CanonicalRecord], int]:
        return reconcile(records, reliability)

    def _process(
        self,
        batch: Sequence[RawRecord],
        run_id: str | None,
        reliability: Mapping[str, float],
        schemas: Sequence[str] | None,
    ) -> CleaningOutcome:
        cleaned = self.clean(batch)
        normalized = self.normalize_all(cleaned.records, schemas, run_id)
        records, resolved = self.reconcile(normalized.records, reliability)

        rejections = Counter(q.source_id for q in normalized.quarantined)
        rejections.update(r.source_id for r in cleaned.dropped)
        report = CleaningReport(
            input_count=len(batch),
            duplicates_removed=cleaned.duplicates_removed,
            dropped_incomplete=len(cleaned.dropped),
            imputed_values=cleaned.imputed,
            outliers_flagged=cleaned.outliers,
            normalized=len(records),
            quarantined=len(normalized.quarantined),
            conflicts_resolved=resolved,
            per_schema=dict(Counter(r.schema_name for r in records)),
        )
        return CleaningOutcome(
            records,
            normalized.quarantined,
            report,
            dict(rejections),
            dropped=cleaned.dropped,
            missing_fields=cleaned.missing_fields,
        )

    async def process(
        self,
        batch: Sequence[RawRecord],
        *,
        run_id: str | None = None,
        reliability: Mapping[str, float] | None = None,
        schemas: Sequence[str] | None = None,
    ) -> CleaningOutcome:
        """Run the full cleaning stage off the event loop and audit quarantines."""
        outcome = await asyncio.to_thread(
            self._process, batch, run_id, reliability or {}, schemas
        )
        for quarantined in outcome.quarantined:
            await self.audit(
                AuditEvent(
                    kind=AuditKind.QUARANTINE,
                    severity="warning",
                    run_id=run_id,
                    source_id=quarantined.source_id,
                    record_id=quarantined.record_id,
                    message="; ".join(quarantined.reasons),
                    details={"kind": quarantined.kind, "source_key": quarantined.source_key},
                )
            )
        for record in outcome.dropped:
            missing = outcome.missing_fields.get(record.record_id, [])
            await self.audit(
                AuditEvent(
                    kind=AuditKind.QUARANTINE,
                    severity="warning",
                    run_id=run_id,
                    source_id=record.source_id,
                    record_id=record.record_id,
                    message=f"Dropped incomplete record: missing {', '.join(missing)}",
                    details={
                        "reason": "incomplete",
                        "kind": record.kind,
                        "source_key": record.source_key,
                        "missing_fields": missing,
                    },
                )
            )
        logger.info("cleaning.process_completed", run_id=run_id, **outcome.report.model_dump())
        return outcome

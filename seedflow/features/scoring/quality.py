"""Quality scoring and confidence decay."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

from seedflow.features.cleaning.canonical import CanonicalSchema
from seedflow.features.cleaning.schemas import CanonicalRecord, QualityScore

DEFAULT_QUALITY_WEIGHTS: dict[str, float] = {
    "completeness": 0.25,
    "accuracy": 0.25,
    "consistency": 0.20,
    "timeliness": 0.15,
    "validity": 0.10,
    "uniqueness": 0.05,
}

QUALITY_DIMENSIONS = tuple(DEFAULT_QUALITY_WEIGHTS)

OUTLIER_PENALTY = 0.25
IMPUTED_PENALTY = 0.10


def normalize_weights(weights: Mapping[str, float] | None) -> dict[str, float]:
    """Return weights over all six dimensions summing to 1.

    Dimensions missing from ``weights`` get weight 0.

    Raises:
        ValueError: On unknown dimensions, negative weights or a zero sum.
    """
    if weights is None:
        weights = DEFAULT_QUALITY_WEIGHTS
    unknown = set(weights) - set(QUALITY_DIMENSIONS)
    if unknown:
        raise ValueError(f"Unknown quality dimensions: {sorted(unknown)}")
    if any(w < 0 for w in weights.values()):
        raise ValueError("Quality weights must be non-negative")
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("Quality weights must not all be zero")
    return {d: weights.get(d, 0.0) / total for d in QUALITY_DIMENSIONS}


def _age_hours(record: CanonicalRecord, now: datetime) -> float:
    reference = record.observed_at or record.collected_at
    return max(0.0, (now - reference).total_seconds() / 3600)


def quality_dimensions(
    record: CanonicalRecord, schema: CanonicalSchema, now: datetime
) -> dict[str, float]:
    """Compute the six quality dimensions of a record, each in [0, 1]."""
    names = schema.field_names
    populated = [n for n in names if record.fields.get(n) is not None]
    completeness = len(populated) / len(names) if names else 1.0

    penalty = (
        OUTLIER_PENALTY * len(record.flags.outlier_fields)
        + IMPUTED_PENALTY * len(record.flags.imputed_fields)
    )
    accuracy = 1.0 - min(1.0, penalty)

    checks = [rule.check(record.fields) for rule in schema.consistency]
    applicable = [c for c in checks if c is not None]
    consistency = sum(applicable) / len(applicable) if applicable else 1.0

    horizon = max(schema.freshness_hours, 1e-6)
    timeliness = 0.5 ** (_age_hours(record, now) / horizon)

    validity = 1.0 - len(record.flags.invalid_fields) / len(populated) if populated else 1.0

    uniqueness = 1.0 / (1 + len(record.flags.conflicts))

    return {
        "completeness": completeness,
        "accuracy": accuracy,
        "consistency": consistency,
        "timeliness": timeliness,
        "validity": max(0.0, validity),
        "uniqueness": uniqueness,
    }


def score_quality(
    record: CanonicalRecord,
    schema: CanonicalSchema,
    now: datetime,
    weights: Mapping[str, float] | None = None,
) -> QualityScore:
    """Weighted quality score of a record.

    Args:
        record: Canonical record.
        schema: Schema the record conforms to.
        now: Reference time for timeliness.
        weights: Dimension weights; defaults to the schema override, then
            the global defaults.

    Returns:
        QualityScore whose score equals the weighted sum of dimensions.
    """
    used = normalize_weights(weights if weights is not None else schema.quality_weights)
    dimensions = quality_dimensions(record, schema, now)
    score = sum(used[d] * dimensions[d] for d in QUALITY_DIMENSIONS)
    return QualityScore(
        score=min(1.0, max(0.0, score)),
        dimensions=dimensions,
        weights=used,
    )


def decay_factor(age_hours: float, rate: float, interval_hours: float, floor: float) -> float:
    """Exponential confidence decay ``rate ** (age / interval)`` bounded below by ``floor``."""
    return max(floor, rate ** (max(0.0, age_hours) / max(interval_hours, 1e-6)))


def compute_confidence(
    quality: float,
    reliability: float,
    age_hours: float,
    *,
    rate: float = 0.95,
    interval_hours: float = 24.0,
    floor: float = 0.1,
) -> float:
    """Confidence = quality x reliability x decay, clamped to [0, 1]."""
    value = quality * reliability * decay_factor(age_hours, rate, interval_hours, floor)
    return min(1.0, max(0.0, value))

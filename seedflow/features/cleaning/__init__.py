"""Cleaning, normalization and conflict reconciliation."""

from seedflow.features.cleaning.canonical import (
    BUILTIN_SCHEMAS,
    BiasConfig,
    CanonicalSchema,
    ConsistencyRule,
    DerivedField,
    FieldMapping,
    SchemaRegistry,
)
from seedflow.features.cleaning.schemas import (
    CanonicalRecord,
    CleaningReport,
    QualityScore,
    QuarantinedRecord,
    RecordFlags,
)
from seedflow.features.cleaning.service import (
    CleanedRecord,
    CleaningConfig,
    CleaningEngine,
    CleaningOutcome,
    CleaningResult,
    NormalizationResult,
    clean,
    normalize,
    normalize_all,
    reconcile,
)

__all__ = [
    "BUILTIN_SCHEMAS",
    "BiasConfig",
    "CanonicalRecord",
    "CanonicalSchema",
    "CleanedRecord",
    "CleaningConfig",
    "CleaningEngine",
    "CleaningOutcome",
    "CleaningReport",
    "CleaningResult",
    "ConsistencyRule",
    "DerivedField",
    "FieldMapping",
    "NormalizationResult",
    "QualityScore",
    "QuarantinedRecord",
    "RecordFlags",
    "SchemaRegistry",
    "clean",
    "normalize",
    "normalize_all",
    "reconcile",
]

"""Pydantic schemas for canonical records and cleaning reports."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from seedflow.features.collection.schemas import Provenance
from seedflow.shared.utils import content_hash

GovernanceStatus = Literal["pending", "passed", "advisory", "blocked"]


class RecordFlags(BaseModel):
    """Cleaning and reconciliation annotations on a canonical record."""

    outlier_fields: list[str] = Field(default_factory=list)
    imputed_fields: list[str] = Field(default_factory=list)
    invalid_fields: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(
        default_factory=list, description="Sources whose conflicting record lost reconciliation"
    )


class QualityScore(BaseModel):
    """Quality score with its dimension breakdown."""

    score: float = Field(..., ge=0.0, le=1.0)
    dimensions: dict[str, float]
    weights: dict[str, float]


class CanonicalRecord(BaseModel):
    """Schema-conforming record produced by normalization.

    ``record_id`` is a content hash over schema, entity key, fields, extra
    and provenance. Source identity and collection time are excluded, so
    re-normalizing the same observation yields the same identifier.
    """

    record_id: str
    run_id: str | None = None
    schema_name: str
    schema_version: int = 1
    entity_key: str
    source_id: str
    source_key: str
    provenance: Provenance = "observed"
    provenance_chain: list[str] = Field(default_factory=list)
    collected_at: datetime
    observed_at: datetime | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)
    derived: dict[str, Any] = Field(
        default_factory=dict, description="Benchmark comparison fields"
    )
    flags: RecordFlags = Field(default_factory=RecordFlags)
    raw_confidence: float = Field(1.0, ge=0.0, le=1.0)
    quality: QualityScore | None = None
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    governance_status: GovernanceStatus = "pending"
    governance_blocked_by: list[str] = Field(default_factory=list)
    governance_advisories: list[str] = Field(default_factory=list)

    @staticmethod
    def compute_id(
        schema_name: str,
        entity_key: str,
        fields: dict[str, Any],
        extra: dict[str, Any],
        provenance: str,
    ) -> str:
        return content_hash(
            {
                "schema": schema_name,
                "entity_key": entity_key,
                "fields": fields,
                "extra": extra,
                "provenance": provenance,
            }
        )

    def content_hash(self) -> str:
        return self.compute_id(
            self.schema_name, self.entity_key, self.fields, self.extra, self.provenance
        )

    @property
    def is_synthetic(self) -> bool:
        return self.provenance == "synthetic"

    def delivery_row(self) -> dict[str, Any]:
        """Flat JSON-ready row handed to consumers."""
        return {
            "record_id": self.record_id,
            "run_id": self.run_id,
            "schema": self.schema_name,
            "entity_key": self.entity_key,
            "provenance": self.provenance,
            **self.fields,
            **self.derived,
            "quality_score": self.quality.score if self.quality else None,
            "confidence": self.confidence,
            "governance_status": self.governance_status,
        }


class QuarantinedRecord(BaseModel):
    """Raw record that no schema accepted, kept with the reasons."""

    record_id: str
    source_id: str
    source_key: str
    kind: str
    schema_name: str | None = None
    reasons: list[str]
    raw: dict[str, Any] = Field(default_factory=dict)


class CleaningReport(BaseModel):
    """Counters from one cleaning and normalization pass."""

    model_config = ConfigDict(from_attributes=True)

    input_count: int = 0
    duplicates_removed: int = 0
    dropped_incomplete: int = 0
    imputed_values: int = 0
    outliers_flagged: int = 0
    normalized: int = 0
    quarantined: int = 0
    conflicts_resolved: int = 0
    per_schema: dict[str, int] = Field(default_factory=dict)

"""Pydantic schemas for synthetic gap filling and benchmarks."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class GapRequirement(BaseModel):
    """Minimum observed volume expected for a schema in each run."""

    schema_name: str
    template: str = Field(..., description="Synthetic template used to fill the gap")
    min_records: int = Field(..., ge=1)


class Gap(BaseModel):
    """An identified shortfall and how much of it may be filled."""

    schema_name: str
    template: str
    observed: int
    required: int
    deficit: int
    allowed: int = Field(..., description="Synthetic records permitted by the ratio cap")

    @property
    def planned(self) -> int:
        return min(self.deficit, self.allowed)


class BenchmarkMetric(BaseModel):
    """Published percentile distribution of one metric."""

    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    sample_size: int | None = None

    @model_validator(mode="after")
    def check_order(self) -> BenchmarkMetric:
        values = [self.p10, self.p25, self.p50, self.p75, self.p90]
        if values != sorted(values):
            raise ValueError("Benchmark percentiles must be non-decreasing")
        return self

    @property
    def percentiles(self) -> list[float]:
        return [self.p10, self.p25, self.p50, self.p75, self.p90]


class BenchmarkSnapshot(BaseModel):
    """Benchmarks for one sector from one provider at a point in time."""

    sector: str
    provider: str
    as_of: datetime
    reliability: float = Field(0.8, ge=0.0, le=1.0)
    metrics: dict[str, BenchmarkMetric] = Field(default_factory=dict)

    def age_hours(self, now: datetime) -> float:
        return max(0.0, (now - self.as_of).total_seconds() / 3600)


class BenchmarkBinding(BaseModel):
    """Which benchmarks are fetched and which records they are compared with."""

    provider: str
    sector: str
    metrics: list[str] = Field(default_factory=list)
    schemas: list[str] = Field(default_factory=list)
    metric_fields: dict[str, str] = Field(
        default_factory=dict, description="Benchmark metric -> record field, when names differ"
    )

    def field_for(self, metric: str) -> str:
        return self.metric_fields.get(metric, metric)


class AugmentationReport(BaseModel):
    """Counters from one augmentation pass."""

    gaps: list[Gap] = Field(default_factory=list)
    synthetic_generated: int = 0
    realism: dict[str, float] = Field(default_factory=dict)
    benchmark_snapshots: list[str] = Field(default_factory=list)
    stale_benchmarks: list[str] = Field(default_factory=list)
    unavailable_benchmarks: list[str] = Field(default_factory=list)
    benchmark_records: int = 0
    compared_records: int = 0

"""Pydantic schemas for distribution targets, transformations and reports."""

from __future__ import annotations

import operator
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from seedflow.shared.utils import utcnow

PriorityClass = Literal["realtime", "batch"]
TargetHealth = Literal["healthy", "degraded"]
Lane = Literal["batch", "realtime", "override"]
FilterOp = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in"]
AggregateFn = Literal["sum", "mean", "count", "min", "max"]
HoldReason = Literal["governance", "bias"]
RealtimeStatus = Literal["queued", "backpressure", "filtered", "held", "trimmed", "stopped"]

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


# =============================================================================
# Transformation rules
# =============================================================================


class FilterRule(BaseModel):
    """Predicate over one field of a delivery row."""

    model_config = ConfigDict(frozen=True)

    field: str
    op: FilterOp = "eq"
    value: Any = None

    def matches(self, row: Mapping[str, Any]) -> bool:
        actual = row.get(self.field)
        if self.op == "in":
            return actual in (self.value or ())
        if actual is None:
            return self.op == "ne" and self.value is not None
        try:
            return bool(_COMPARATORS[self.op](actual, self.value))
        except TypeError:
            return False


class Measure(BaseModel):
    """Aggregated output column."""

    model_config = ConfigDict(frozen=True)

    field: str | None = Field(None, description="Source column (unused for count)")
    fn: AggregateFn = "sum"
    alias: str | None = None

    @model_validator(mode="after")
    def validate_field(self) -> Measure:
        if self.fn != "count" and not self.field:
            raise ValueError(f"Aggregate '{self.fn}' needs a field")
        return self

    @property
    def name(self) -> str:
        if self.alias:
            return self.alias
        return "count" if self.fn == "count" else f"{self.field}_{self.fn}"


class AggregationRule(BaseModel):
    """Group-by aggregation applied after mapping and filtering."""

    model_config = ConfigDict(frozen=True)

    group_by: list[str] = Field(..., min_length=1)
    measures: list[Measure] = Field(default_factory=lambda: [Measure(fn="count")])


class TransformationRule(BaseModel):
    """Per-target reshaping: rename, select, filter, then aggregate."""

    model_config = ConfigDict(frozen=True)

    field_mapping: dict[str, str] = Field(
        default_factory=dict, description="Canonical column -> target column"
    )
    include: list[str] | None = Field(
        None, description="Target columns kept after mapping (None keeps all)"
    )
    filters: list[FilterRule] = Field(default_factory=list)
    aggregation: AggregationRule | None = None


# =============================================================================
# Targets
# =============================================================================


class TargetConfig(BaseModel):
    """Hot-reloadable configuration of one downstream consumer."""

    model_config = ConfigDict(frozen=True)

    target_id: str = Field(..., min_length=1, max_length=100)
    schemas: list[str] = Field(..., min_length=1, description="Accepted canonical schemas")
    method: str = Field("direct", description="Registered delivery method")
    priority: PriorityClass = "batch"
    min_quality: float = Field(0.0, ge=0.0, le=1.0)
    min_confidence: float = Field(0.0, ge=0.0, le=1.0)
    allow_advisory: bool = Field(True, description="Deliver records with advisory violations")
    policy_bindings: list[str] | None = Field(
        None, description="Blocking policies enforced for this target (None = all)"
    )
    bias_sensitive: bool = False
    max_synthetic_ratio: float = Field(0.3, ge=0.0, le=1.0)
    retry_limit: int | None = Field(None, ge=1, le=20, description="Attempts per delivery")
    timeout_seconds: float | None = Field(None, gt=0, description="Per-attempt timeout")
    transformation: TransformationRule = Field(default_factory=TransformationRule)
    url: str | None = Field(None, description="Endpoint for push delivery methods")
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("schemas")
    @classmethod
    def dedupe_schemas(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))

    def accepts(self, schema_name: str) -> bool:
        return schema_name in self.schemas

    def binds(self, policies: list[str]) -> list[str]:
        """Subset of ``policies`` this target enforces."""
        if self.policy_bindings is None:
            return list(policies)
        return [p for p in policies if p in self.policy_bindings]


class HoldEntry(BaseModel):
    """A record withheld from a target pending review or override."""

    hold_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    run_id: str | None
    target_id: str
    record_id: str
    schema_name: str
    reason: HoldReason
    policies: list[str] = Field(default_factory=list)
    bias_report_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TargetDeliveryReport(BaseModel):
    """Outcome of one delivery to one target."""

    target_id: str
    run_id: str | None = None
    lane: Lane = "batch"
    status: Literal["delivered", "queued", "empty", "failed", "stopped", "disabled"] = "empty"
    candidates: int = Field(0, description="Records of an accepted schema")
    delivered: int = 0
    filtered: int = 0
    held: int = 0
    trimmed: int = 0
    queued: int = Field(0, description="Records handed to the real-time queue")
    backpressure: int = 0
    excluded: dict[str, int] = Field(default_factory=dict, description="Filter reason counts")
    synthetic_delivered: int = 0
    rows_sent: int = 0
    attempts: int = 0
    latency_ms: float | None = None
    delivery_id: str | None = None
    record_ids: list[str] = Field(default_factory=list)
    holds: list[HoldEntry] = Field(default_factory=list)
    error: str | None = None


class DistributionReport(BaseModel):
    """Per-target reports for one batch distribution."""

    run_id: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    emergency_stopped: bool = False
    targets: dict[str, TargetDeliveryReport] = Field(default_factory=dict)

    @property
    def delivered_total(self) -> int:
        return sum(r.delivered for r in self.targets.values())

    @property
    def held_total(self) -> int:
        return sum(r.held for r in self.targets.values())

    @property
    def failed_targets(self) -> list[str]:
        return sorted(t for t, r in self.targets.items() if r.status == "failed")

    @property
    def delivered_targets(self) -> list[str]:
        return sorted(t for t, r in self.targets.items() if r.status == "delivered")


class RealtimeResult(BaseModel):
    """Outcome of offering one record to one real-time target."""

    target_id: str
    record_id: str
    status: RealtimeStatus
    queue_depth: int = 0
    reason: str | None = None


class TargetMetrics(BaseModel):
    """Performance counters of one target."""

    delivered_records: int = 0
    deliveries: int = 0
    failures: int = 0
    success_rate: float = 1.0
    average_latency_ms: float = 0.0
    last_delivery_at: datetime | None = None
    last_error: str | None = None
    queue_depth: int = 0


class TargetStatus(BaseModel):
    target_id: str
    method: str
    priority: PriorityClass
    health: TargetHealth
    enabled: bool
    schemas: list[str]
    metrics: TargetMetrics


class EngineMetrics(BaseModel):
    """Engine-wide throughput and queue depth."""

    throughput_per_minute: float = 0.0
    delivered_total: int = 0
    queue_depth: int = 0
    queue_depth_by_target: dict[str, int] = Field(default_factory=dict)
    degraded_targets: list[str] = Field(default_factory=list)
    emergency_stopped: bool = False
    realtime_running: bool = False

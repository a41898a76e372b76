"""Pydantic schemas for seeding runs, the state store and the control surface.

Run state objects are plain models shared by every StateStore
implementation; the ORM rows in ``models.py`` mirror them.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from seedflow.features.augmentation.schemas import AugmentationReport
from seedflow.features.cleaning.schemas import CleaningReport
from seedflow.features.collection.schemas import (
    CollectionQuery,
    SourceCollectionReport,
    SourceInfo,
)
from seedflow.features.distribution.schemas import (
    EngineMetrics,
    TargetDeliveryReport,
    TargetStatus,
)
from seedflow.features.scoring.schemas import QualitySummary
from seedflow.shared.audit import AuditEvent
from seedflow.shared.utils import utcnow


class RunStatus(str, Enum):
    """Seeding run lifecycle states."""

    PENDING = "pending"
    COLLECTING = "collecting"
    CLEANING = "cleaning"
    SCORING = "scoring"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunKind(str, Enum):
    """Why a run was started."""

    SEEDING = "seeding"
    REFRESH = "refresh"
    ROLLBACK = "rollback"


# Failed runs re-enter the stage after their last checkpoint on resume.
# Rollback runs skip straight to distribution. Rolled back is final; a run
# restored again later is reached through the target pointers, not its status.
VALID_RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.COLLECTING, RunStatus.DISTRIBUTING, RunStatus.FAILED},
    RunStatus.COLLECTING: {RunStatus.CLEANING, RunStatus.FAILED},
    RunStatus.CLEANING: {RunStatus.SCORING, RunStatus.FAILED},
    RunStatus.SCORING: {RunStatus.DISTRIBUTING, RunStatus.FAILED},
    RunStatus.DISTRIBUTING: {RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.COMPLETED: {RunStatus.ROLLED_BACK},
    RunStatus.FAILED: {
        RunStatus.COLLECTING,
        RunStatus.CLEANING,
        RunStatus.SCORING,
        RunStatus.DISTRIBUTING,
    },
    RunStatus.ROLLED_BACK: set(),
}

TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ROLLED_BACK})

CheckpointStage = Literal["collected", "cleaned", "augmented", "scored", "distributed"]
CHECKPOINT_STAGES: tuple[CheckpointStage, ...] = (
    "collected",
    "cleaned",
    "augmented",
    "scored",
    "distributed",
)


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Run state
# =============================================================================


class RunSummary(BaseModel):
    """Per-stage outcome accumulated while a run executes."""

    collection: dict[str, SourceCollectionReport] = Field(default_factory=dict)
    degraded_sources: list[str] = Field(default_factory=list)
    collected: int = 0
    cleaning: CleaningReport | None = None
    augmentation: AugmentationReport | None = None
    quality: QualitySummary | None = None
    stages: dict[str, str] = Field(default_factory=dict, description="Scoring stage statuses")
    governance: dict[str, int] = Field(default_factory=dict)
    bias_tiers: dict[str, str] = Field(default_factory=dict)
    distribution: dict[str, TargetDeliveryReport] = Field(default_factory=dict)
    emergency_stopped: bool = False

    def delivered_targets(self) -> list[str]:
        return sorted(t for t, r in self.distribution.items() if r.status == "delivered")


class RunState(BaseModel):
    """A versioned seeding run."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str = Field(default_factory=new_id)
    version: int = Field(..., ge=1)
    kind: RunKind = RunKind.SEEDING
    status: RunStatus = RunStatus.PENDING
    source_filter: list[str] | None = None
    target_ids: list[str] = Field(default_factory=list)
    window: CollectionQuery | None = None
    restores_run_id: str | None = None
    last_checkpoint: CheckpointStage | None = None
    summary: RunSummary = Field(default_factory=RunSummary)
    error_message: str | None = None
    error_type: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RunStatusEvent(BaseModel):
    """Append-only record of one status transition."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    from_status: RunStatus | None
    to_status: RunStatus
    reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Checkpoint(BaseModel):
    """Stage output persisted after a stage completes."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    stage: CheckpointStage
    payload: Any
    checksum: str
    created_at: datetime = Field(default_factory=utcnow)


class TargetPointer(BaseModel):
    """Run whose output is currently active for a target."""

    model_config = ConfigDict(from_attributes=True)

    target_id: str
    run_id: str
    version: int
    updated_at: datetime = Field(default_factory=utcnow)


class PointerEvent(BaseModel):
    """Append-only pointer history entry."""

    model_config = ConfigDict(from_attributes=True)

    target_id: str
    from_run_id: str | None
    to_run_id: str
    from_version: int | None
    to_version: int
    reason: Literal["advance", "rollback", "override"]
    moved_by_run_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class HoldOverride(BaseModel):
    """Authorized release of held records to a target."""

    model_config = ConfigDict(from_attributes=True)

    override_id: str = Field(default_factory=new_id)
    run_id: str
    target_id: str
    actor: str
    reason: str
    record_ids: list[str] = Field(default_factory=list)
    delivered: int = 0
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Control surface
# =============================================================================


class RunCreate(BaseModel):
    """Request to start a seeding run."""

    model_config = ConfigDict(extra="forbid")

    source_filter: list[str] | None = Field(
        None, description="Source ids to collect from (None = all registered)"
    )
    window: CollectionQuery | None = None
    targets: list[str] | None = Field(
        None, description="Targets to distribute to (None = all registered)"
    )


class ActorRequest(BaseModel):
    """Operator action with attribution."""

    model_config = ConfigDict(extra="forbid")

    actor: str = Field(..., min_length=1, max_length=100)
    reason: str | None = Field(None, max_length=2000)


class OverrideRequest(BaseModel):
    """Explicit authorization to release held records."""

    model_config = ConfigDict(extra="forbid")

    actor: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1, max_length=2000)


class OverrideResponse(BaseModel):
    override: HoldOverride
    delivery: TargetDeliveryReport


class RunResponse(BaseModel):
    """Run with its status history."""

    run: RunState
    events: list[RunStatusEvent] = Field(default_factory=list)
    checkpoints: list[CheckpointStage] = Field(default_factory=list)


class RunListResponse(BaseModel):
    """Paginated list of runs."""

    runs: list[RunState]
    total: int
    page: int
    page_size: int


class OrchestratorStatus(BaseModel):
    """Current state of the orchestrator for monitoring."""

    emergency_stopped: bool
    scheduler_running: bool
    batch_schedule_seconds: int
    active_runs: dict[str, list[str]] = Field(
        default_factory=dict, description="In-flight run id -> claimed targets"
    )
    latest_run: RunState | None = None
    sources: list[SourceInfo] = Field(default_factory=list)
    degraded_sources: list[str] = Field(default_factory=list)
    targets: list[TargetStatus] = Field(default_factory=list)
    pointers: list[TargetPointer] = Field(default_factory=list)
    metrics: EngineMetrics


class OutboxPage(BaseModel):
    """Rows appended to a store-and-poll target's outbox."""

    target_id: str
    after: int
    entries: list[dict[str, Any]]
    next_cursor: int


class AuditEventList(BaseModel):
    events: list[AuditEvent]
    total: int


class ConfigReloadResponse(BaseModel):
    """Result of re-reading the distribution configuration file."""

    reloaded: bool
    path: str
    targets: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    policies: list[str] = Field(default_factory=list)

"""Seeding orchestrator: versioned runs, checkpoints, rollback and manual controls."""

from seedflow.features.orchestrator.schemas import (
    VALID_RUN_TRANSITIONS,
    Checkpoint,
    HoldOverride,
    OrchestratorStatus,
    RunKind,
    RunState,
    RunStatus,
    TargetPointer,
)
from seedflow.features.orchestrator.service import SeedingOrchestrator
from seedflow.features.orchestrator.store import MemoryStateStore, SqlStateStore, StateStore

__all__ = [
    "VALID_RUN_TRANSITIONS",
    "Checkpoint",
    "HoldOverride",
    "MemoryStateStore",
    "OrchestratorStatus",
    "RunKind",
    "RunState",
    "RunStatus",
    "SeedingOrchestrator",
    "SqlStateStore",
    "StateStore",
    "TargetPointer",
]

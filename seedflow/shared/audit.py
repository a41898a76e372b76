"""Audit events shared by collection, scoring, distribution and orchestration.

Every quarantine, hold, degradation, override and rollback is both logged
and persisted as an :class:`AuditEvent` through an :data:`AuditSink`.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from seedflow.shared.utils import utcnow


class AuditKind(str, Enum):
    """Kinds of audited occurrences."""

    QUARANTINE = "quarantine"
    GOVERNANCE_VIOLATION = "governance_violation"
    BIAS_REPORT = "bias_report"
    HOLD = "hold"
    OVERRIDE = "override"
    SOURCE_HEALTH = "source_health"
    TARGET_HEALTH = "target_health"
    BACKPRESSURE = "backpressure"
    ROLLBACK = "rollback"
    EMERGENCY_STOP = "emergency_stop"
    CONFIG_CHANGE = "config_change"
    STATE_CORRUPTION = "state_corruption"
    BENCHMARK_STALE = "benchmark_stale"
    POINTER_MOVED = "pointer_moved"


class AuditEvent(BaseModel):
    """Append-only audit entry."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: AuditKind
    severity: Literal["info", "warning", "critical"] = "info"
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)
    run_id: str | None = None
    source_id: str | None = None
    target_id: str | None = None
    record_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


AuditSink = Callable[[AuditEvent], Awaitable[None]]


async def discard_audit(_event: AuditEvent) -> None:
    """Sink used when no persistence is wired (standalone engines, tests)."""
    return None

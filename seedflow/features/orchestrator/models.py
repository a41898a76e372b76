"""State store ORM models.

Every table is append-only except ``target_pointer`` (the active run per
target) and the status projection on ``seeding_run``, which mirrors the
last row of ``run_status_event``.

CRITICAL: Uses PostgreSQL JSONB for stage payloads, summaries and rows.
"""

from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from seedflow.core.database import Base
from seedflow.shared.models import CreatedAtMixin, TimestampMixin

_RUN_STATUSES = (
    "'pending', 'collecting', 'cleaning', 'scoring', 'distributing', "
    "'completed', 'failed', 'rolled_back'"
)


class SeedingRun(TimestampMixin, Base):
    """Versioned seeding run.

    Attributes:
        run_id: Unique external identifier (UUID hex, 32 chars).
        version: Monotonically increasing run version.
        kind: seeding, refresh or rollback.
        status: Projection of the latest status event.
        source_filter: Sources collected from (null = all).
        target_ids: Targets claimed by the run.
        window: Collection window as JSONB.
        restores_run_id: Run whose output a rollback run restores.
        summary: Per-stage outcome as JSONB.
    """

    __tablename__ = "seeding_run"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    version: Mapped[int] = mapped_column(Integer, unique=True)
    kind: Mapped[str] = mapped_column(String(20), index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    source_filter: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    target_ids: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    window: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    restores_run_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_checkpoint: Mapped[str | None] = mapped_column(String(20), nullable=True)
    summary: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_seeding_run_target_ids_gin", "target_ids", postgresql_using="gin"),
        CheckConstraint(f"status IN ({_RUN_STATUSES})", name="ck_seeding_run_valid_status"),
        CheckConstraint(
            "kind IN ('seeding', 'refresh', 'rollback')", name="ck_seeding_run_valid_kind"
        ),
        CheckConstraint("version >= 1", name="ck_seeding_run_positive_version"),
    )


class RunStatusEvent(CreatedAtMixin, Base):
    """Append-only status transition of a run."""

    __tablename__ = "run_status_event"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), index=True)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20))
    reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)


class RunCheckpoint(CreatedAtMixin, Base):
    """Stage output written after each completed stage."""

    __tablename__ = "run_checkpoint"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), index=True)
    stage: Mapped[str] = mapped_column(String(20))
    payload: Mapped[Any] = mapped_column(JSONB, nullable=True)
    checksum: Mapped[str] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("run_id", "stage", name="uq_run_checkpoint_run_stage"),
        CheckConstraint(
            "stage IN ('collected', 'cleaned', 'augmented', 'scored', 'distributed')",
            name="ck_run_checkpoint_valid_stage",
        ),
    )


class CanonicalBatch(CreatedAtMixin, Base):
    """Scored canonical records of a run, one row per schema."""

    __tablename__ = "canonical_batch"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), index=True)
    schema_name: Mapped[str] = mapped_column(String(100), index=True)
    record_count: Mapped[int] = mapped_column(Integer)
    records: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("run_id", "schema_name", name="uq_canonical_batch_run_schema"),
    )


class PolicySnapshot(CreatedAtMixin, Base):
    """Governance policies in force when a run was scored."""

    __tablename__ = "policy_snapshot"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    policies: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)


class BiasReportRecord(CreatedAtMixin, Base):
    """Bias report of one schema within a run."""

    __tablename__ = "bias_report"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    report_id: Mapped[str] = mapped_column(String(32), unique=True)
    run_id: Mapped[str] = mapped_column(String(32), index=True)
    schema_name: Mapped[str] = mapped_column(String(100))
    risk_tier: Mapped[str] = mapped_column(String(20), index=True)
    report: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "risk_tier IN ('low', 'medium', 'high', 'critical')",
            name="ck_bias_report_valid_tier",
        ),
    )


class AuditRecord(Base):
    """Quarantines, violations, holds, health events, overrides and rollbacks."""

    __tablename__ = "audit_event"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(32), unique=True)
    kind: Mapped[str] = mapped_column(String(40), index=True)
    severity: Mapped[str] = mapped_column(String(20))
    message: Mapped[str] = mapped_column(String(2000))
    run_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    source_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    record_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    occurred_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    __table_args__ = (
        Index("ix_audit_event_details_gin", "details", postgresql_using="gin"),
        CheckConstraint(
            "severity IN ('info', 'warning', 'critical')", name="ck_audit_event_valid_severity"
        ),
    )


class HoldRecord(CreatedAtMixin, Base):
    """Record withheld from a target by governance or bias."""

    __tablename__ = "hold_entry"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    hold_id: Mapped[str] = mapped_column(String(32), unique=True)
    run_id: Mapped[str] = mapped_column(String(32), index=True)
    target_id: Mapped[str] = mapped_column(String(100), index=True)
    record_id: Mapped[str] = mapped_column(String(64))
    schema_name: Mapped[str] = mapped_column(String(100))
    reason: Mapped[str] = mapped_column(String(20))
    policies: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    bias_report_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_hold_entry_run_target", "run_id", "target_id"),
        CheckConstraint("reason IN ('governance', 'bias')", name="ck_hold_entry_valid_reason"),
    )


class HoldOverrideRecord(CreatedAtMixin, Base):
    """Authorized release of held records."""

    __tablename__ = "hold_override"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    override_id: Mapped[str] = mapped_column(String(32), unique=True)
    run_id: Mapped[str] = mapped_column(String(32), index=True)
    target_id: Mapped[str] = mapped_column(String(100), index=True)
    actor: Mapped[str] = mapped_column(String(100))
    reason: Mapped[str] = mapped_column(String(2000))
    record_ids: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    delivered: Mapped[int] = mapped_column(Integer, default=0)


class TargetPointerRecord(TimestampMixin, Base):
    """Active run per target; the only mutable row in the store."""

    __tablename__ = "target_pointer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    target_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    run_id: Mapped[str] = mapped_column(String(32))
    version: Mapped[int] = mapped_column(Integer)


class PointerEventRecord(CreatedAtMixin, Base):
    """Append-only history of pointer moves."""

    __tablename__ = "pointer_event"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    target_id: Mapped[str] = mapped_column(String(100), index=True)
    from_run_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_run_id: Mapped[str] = mapped_column(String(32), index=True)
    from_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_version: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(20))
    moved_by_run_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "reason IN ('advance', 'rollback', 'override')", name="ck_pointer_event_valid_reason"
        ),
    )


class OutboxEntry(CreatedAtMixin, Base):
    """Row delivered to a store-and-poll target; consumers read by id cursor."""

    __tablename__ = "delivery_outbox"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    target_id: Mapped[str] = mapped_column(String(100))
    run_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    record_id: Mapped[str] = mapped_column(String(64))
    delivery_id: Mapped[str] = mapped_column(String(32))
    row: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "target_id", "run_id", "record_id", name="uq_delivery_outbox_target_run_record"
        ),
        Index("ix_delivery_outbox_target_id_id", "target_id", "id"),
    )

"""Append-only versioned state store.

The orchestrator persists through the :class:`StateStore` protocol only.
:class:`SqlStateStore` writes the tables in ``models.py``;
:class:`MemoryStateStore` keeps the same layout in process memory for
single-process deployments and tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seedflow.core.exceptions import ConflictError, DatabaseError
from seedflow.core.logging import get_logger
from seedflow.features.distribution.adapters import DeliveryBatch, MemoryOutbox
from seedflow.features.distribution.schemas import HoldEntry
from seedflow.features.orchestrator.models import (
    AuditRecord,
    BiasReportRecord,
    CanonicalBatch,
    HoldOverrideRecord,
    HoldRecord,
    OutboxEntry,
    PointerEventRecord,
    PolicySnapshot,
    RunCheckpoint,
    SeedingRun,
    TargetPointerRecord,
)
from seedflow.features.orchestrator.models import RunStatusEvent as RunStatusEventRecord
from seedflow.features.orchestrator.schemas import (
    Checkpoint,
    HoldOverride,
    PointerEvent,
    RunKind,
    RunState,
    RunStatus,
    RunStatusEvent,
    TargetPointer,
)
from seedflow.features.scoring.schemas import BiasReport
from seedflow.shared.audit import AuditEvent, AuditKind

logger = get_logger(__name__)


@dataclass
class StoredBatch:
    """Canonical records of one schema within a run."""

    run_id: str
    schema_name: str
    records: list[dict[str, Any]]
    checksum: str


class StateStore(Protocol):
    """Persistence contract of the orchestrator."""

    async def next_version(self) -> int: ...

    async def create_run(self, run: RunState) -> None: ...

    async def save_run(self, run: RunState) -> None: ...

    async def get_run(self, run_id: str) -> RunState | None: ...

    async def latest_run(self) -> RunState | None: ...

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        kind: RunKind | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[RunState], int]: ...

    async def append_status_event(self, event: RunStatusEvent) -> None: ...

    async def status_events(self, run_id: str) -> list[RunStatusEvent]: ...

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None: ...

    async def checkpoints(self, run_id: str) -> list[Checkpoint]: ...

    async def save_batches(self, batches: list[StoredBatch]) -> None: ...

    async def load_batches(self, run_id: str) -> list[StoredBatch]: ...

    async def save_policy_snapshot(self, run_id: str, policies: list[dict[str, Any]]) -> None: ...

    async def policy_snapshot(self, run_id: str) -> list[dict[str, Any]] | None: ...

    async def save_bias_reports(self, reports: list[BiasReport]) -> None: ...

    async def bias_reports(self, run_id: str) -> list[BiasReport]: ...

    async def append_audit(self, event: AuditEvent) -> None: ...

    async def audit_events(
        self,
        *,
        run_id: str | None = None,
        target_id: str | None = None,
        kind: AuditKind | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[list[AuditEvent], int]: ...

    async def save_holds(self, holds: list[HoldEntry]) -> None: ...

    async def holds(self, run_id: str, target_id: str | None = None) -> list[HoldEntry]: ...

    async def save_override(self, override: HoldOverride) -> None: ...

    async def overrides(self, run_id: str, target_id: str | None = None) -> list[HoldOverride]: ...

    async def get_pointer(self, target_id: str) -> TargetPointer | None: ...

    async def pointers(self) -> list[TargetPointer]: ...

    async def move_pointer(self, event: PointerEvent) -> TargetPointer: ...

    async def pointer_history(self, target_id: str | None = None) -> list[PointerEvent]: ...

    async def append_outbox(self, batch: DeliveryBatch) -> int: ...

    async def read_outbox(
        self, target_id: str, after: int = 0, limit: int = 100
    ) -> list[dict[str, Any]]: ...

    async def aclose(self) -> None: ...


# =============================================================================
# In-memory store
# =============================================================================


class MemoryStateStore:
    """Process-local state store.

    Stored objects are deep-copied on the way in and out so callers never
    share mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._runs: dict[str, RunState] = {}
        self._events: list[RunStatusEvent] = []
        self._checkpoints: dict[tuple[str, str], Checkpoint] = {}
        self._batches: dict[tuple[str, str], StoredBatch] = {}
        self._policies: dict[str, list[dict[str, Any]]] = {}
        self._bias: list[BiasReport] = []
        self._audit: list[AuditEvent] = []
        self._holds: list[HoldEntry] = []
        self._overrides: list[HoldOverride] = []
        self._pointers: dict[str, TargetPointer] = {}
        self._pointer_events: list[PointerEvent] = []
        self.outbox = MemoryOutbox()

    async def next_version(self) -> int:
        return max((r.version for r in self._runs.values()), default=0) + 1

    async def create_run(self, run: RunState) -> None:
        async with self._lock:
            if run.run_id in self._runs:
                raise ConflictError(f"Run '{run.run_id}' already exists")
            if any(r.version == run.version for r in self._runs.values()):
                raise ConflictError(f"Run version {run.version} already exists")
            self._runs[run.run_id] = run.model_copy(deep=True)

    async def save_run(self, run: RunState) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunState | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def latest_run(self) -> RunState | None:
        if not self._runs:
            return None
        return max(self._runs.values(), key=lambda r: r.version).model_copy(deep=True)

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        kind: RunKind | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[RunState], int]:
        runs = sorted(self._runs.values(), key=lambda r: r.version, reverse=True)
        if status is not None:
            runs = [r for r in runs if r.status == status]
        if kind is not None:
            runs = [r for r in runs if r.kind == kind]
        return [r.model_copy(deep=True) for r in runs[offset : offset + limit]], len(runs)

    async def append_status_event(self, event: RunStatusEvent) -> None:
        self._events.append(event)

    async def status_events(self, run_id: str) -> list[RunStatusEvent]:
        return [e for e in self._events if e.run_id == run_id]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        key = (checkpoint.run_id, checkpoint.stage)
        if key in self._checkpoints:
            raise ConflictError(
                f"Checkpoint '{checkpoint.stage}' of run '{checkpoint.run_id}' already exists"
            )
        self._checkpoints[key] = checkpoint.model_copy(deep=True)

    async def checkpoints(self, run_id: str) -> list[Checkpoint]:
        return [
            c.model_copy(deep=True) for (rid, _), c in self._checkpoints.items() if rid == run_id
        ]

    async def save_batches(self, batches: list[StoredBatch]) -> None:
        for batch in batches:
            self._batches[(batch.run_id, batch.schema_name)] = batch

    async def load_batches(self, run_id: str) -> list[StoredBatch]:
        return [b for (rid, _), b in self._batches.items() if rid == run_id]

    async def save_policy_snapshot(self, run_id: str, policies: list[dict[str, Any]]) -> None:
        self._policies.setdefault(run_id, policies)

    async def policy_snapshot(self, run_id: str) -> list[dict[str, Any]] | None:
        return self._policies.get(run_id)

    async def save_bias_reports(self, reports: list[BiasReport]) -> None:
        self._bias.extend(reports)

    async def bias_reports(self, run_id: str) -> list[BiasReport]:
        latest = {b.schema_name: b for b in self._bias if b.run_id == run_id}
        return list(latest.values())

    async def append_audit(self, event: AuditEvent) -> None:
        self._audit.append(event)

    async def audit_events(
        self,
        *,
        run_id: str | None = None,
        target_id: str | None = None,
        kind: AuditKind | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[list[AuditEvent], int]:
        events = [
            e
            for e in self._audit
            if (run_id is None or e.run_id == run_id)
            and (target_id is None or e.target_id == target_id)
            and (kind is None or e.kind == kind)
        ]
        return events[offset : offset + limit], len(events)

    async def save_holds(self, holds: list[HoldEntry]) -> None:
        self._holds.extend(holds)

    async def holds(self, run_id: str, target_id: str | None = None) -> list[HoldEntry]:
        return [
            h
            for h in self._holds
            if h.run_id == run_id and (target_id is None or h.target_id == target_id)
        ]

    async def save_override(self, override: HoldOverride) -> None:
        self._overrides.append(override)

    async def overrides(self, run_id: str, target_id: str | None = None) -> list[HoldOverride]:
        return [
            o
            for o in self._overrides
            if o.run_id == run_id and (target_id is None or o.target_id == target_id)
        ]

    async def get_pointer(self, target_id: str) -> TargetPointer | None:
        return self._pointers.get(target_id)

    async def pointers(self) -> list[TargetPointer]:
        return [self._pointers[t] for t in sorted(self._pointers)]

    async def move_pointer(self, event: PointerEvent) -> TargetPointer:
        async with self._lock:
            pointer = TargetPointer(
                target_id=event.target_id,
                run_id=event.to_run_id,
                version=event.to_version,
                updated_at=event.created_at,
            )
            self._pointers[event.target_id] = pointer
            self._pointer_events.append(event)
        return pointer

    async def pointer_history(self, target_id: str | None = None) -> list[PointerEvent]:
        return [e for e in self._pointer_events if target_id is None or e.target_id == target_id]

    async def append_outbox(self, batch: DeliveryBatch) -> int:
        return await self.outbox.append(batch)

    async def read_outbox(
        self, target_id: str, after: int = 0, limit: int = 100
    ) -> list[dict[str, Any]]:
        return self.outbox.read(target_id, after, limit)

    async def aclose(self) -> None:
        return None


# =============================================================================
# SQL store
# =============================================================================


def _run_from_row(row: SeedingRun) -> RunState:
    return RunState.model_validate(
        {
            "run_id": row.run_id,
            "version": row.version,
            "kind": row.kind,
            "status": row.status,
            "source_filter": row.source_filter,
            "target_ids": row.target_ids,
            "window": row.window,
            "restores_run_id": row.restores_run_id,
            "last_checkpoint": row.last_checkpoint,
            "summary": row.summary,
            "error_message": row.error_message,
            "error_type": row.error_type,
            "created_at": row.created_at,
            "started_at": row.started_at,
            "completed_at": row.completed_at,
        }
    )


def _run_columns(run: RunState) -> dict[str, Any]:
    data = run.model_dump(mode="json")
    return {
        "kind": run.kind.value,
        "status": run.status.value,
        "source_filter": run.source_filter,
        "target_ids": run.target_ids,
        "window": data["window"],
        "restores_run_id": run.restores_run_id,
        "last_checkpoint": run.last_checkpoint,
        "summary": data["summary"],
        "error_message": run.error_message[:2000] if run.error_message else None,
        "error_type": run.error_type,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
    }


def _audit_from_row(row: AuditRecord) -> AuditEvent:
    return AuditEvent(
        event_id=row.event_id,
        kind=AuditKind(row.kind),
        severity=row.severity,  # type: ignore[arg-type]
        message=row.message,
        occurred_at=row.occurred_at,
        run_id=row.run_id,
        source_id=row.source_id,
        target_id=row.target_id,
        record_id=row.record_id,
        details=row.details,
    )


class SqlStateStore:
    """PostgreSQL state store over an async session factory."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("orchestrator.store_error", error=str(e), error_type=type(e).__name__)
            raise DatabaseError(
                "State store operation failed", details={"error_type": type(e).__name__}
            ) from e

    async def next_version(self) -> int:
        async with self._session() as session:
            result = await session.execute(select(func.max(SeedingRun.version)))
            return (result.scalar_one_or_none() or 0) + 1

    async def create_run(self, run: RunState) -> None:
        async with self._session() as session:
            session.add(SeedingRun(run_id=run.run_id, version=run.version, **_run_columns(run)))

    async def save_run(self, run: RunState) -> None:
        async with self._session() as session:
            stmt = select(SeedingRun).where(SeedingRun.run_id == run.run_id)
            row = (await session.execute(stmt)).scalar_one()
            for key, value in _run_columns(run).items():
                setattr(row, key, value)

    async def get_run(self, run_id: str) -> RunState | None:
        async with self._session() as session:
            result = await session.execute(select(SeedingRun).where(SeedingRun.run_id == run_id))
            row = result.scalar_one_or_none()
            return _run_from_row(row) if row else None

    async def latest_run(self) -> RunState | None:
        async with self._session() as session:
            stmt = select(SeedingRun).order_by(SeedingRun.version.desc()).limit(1)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _run_from_row(row) if row else None

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        kind: RunKind | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[RunState], int]:
        stmt = select(SeedingRun)
        if status is not None:
            stmt = stmt.where(SeedingRun.status == status.value)
        if kind is not None:
            stmt = stmt.where(SeedingRun.kind == kind.value)
        async with self._session() as session:
            count_stmt = select(func.count()).select_from(stmt.subquery())
            total = (await session.execute(count_stmt)).scalar_one()
            stmt = stmt.order_by(SeedingRun.version.desc()).offset(offset).limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [_run_from_row(r) for r in rows], total

    async def append_status_event(self, event: RunStatusEvent) -> None:
        async with self._session() as session:
            session.add(
                RunStatusEventRecord(
                    run_id=event.run_id,
                    from_status=event.from_status.value if event.from_status else None,
                    to_status=event.to_status.value,
                    reason=event.reason[:2000] if event.reason else None,
                    created_at=event.created_at,
                )
            )

    async def status_events(self, run_id: str) -> list[RunStatusEvent]:
        async with self._session() as session:
            stmt = (
                select(RunStatusEventRecord)
                .where(RunStatusEventRecord.run_id == run_id)
                .order_by(RunStatusEventRecord.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [RunStatusEvent.model_validate(r) for r in rows]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        async with self._session() as session:
            session.add(
                RunCheckpoint(
                    run_id=checkpoint.run_id,
                    stage=checkpoint.stage,
                    payload=checkpoint.payload,
                    checksum=checkpoint.checksum,
                    created_at=checkpoint.created_at,
                )
            )

    async def checkpoints(self, run_id: str) -> list[Checkpoint]:
        async with self._session() as session:
            stmt = (
                select(RunCheckpoint)
                .where(RunCheckpoint.run_id == run_id)
                .order_by(RunCheckpoint.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [Checkpoint.model_validate(r) for r in rows]

    async def save_batches(self, batches: list[StoredBatch]) -> None:
        """Store a run's scored batches; re-scoring the same run replaces them."""
        if not batches:
            return
        async with self._session() as session:
            stmt = insert(CanonicalBatch).values(
                [
                    {
                        "run_id": b.run_id,
                        "schema_name": b.schema_name,
                        "record_count": len(b.records),
                        "records": b.records,
                        "checksum": b.checksum,
                    }
                    for b in batches
                ]
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_canonical_batch_run_schema",
                set_={
                    "record_count": stmt.excluded.record_count,
                    "records": stmt.excluded.records,
                    "checksum": stmt.excluded.checksum,
                },
            )
            await session.execute(stmt)

    async def load_batches(self, run_id: str) -> list[StoredBatch]:
        async with self._session() as session:
            stmt = (
                select(CanonicalBatch)
                .where(CanonicalBatch.run_id == run_id)
                .order_by(CanonicalBatch.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [StoredBatch(r.run_id, r.schema_name, r.records, r.checksum) for r in rows]

    async def save_policy_snapshot(self, run_id: str, policies: list[dict[str, Any]]) -> None:
        async with self._session() as session:
            stmt = (
                insert(PolicySnapshot)
                .values(run_id=run_id, policies=policies)
                .on_conflict_do_nothing(index_elements=["run_id"])
            )
            await session.execute(stmt)

    async def policy_snapshot(self, run_id: str) -> list[dict[str, Any]] | None:
        async with self._session() as session:
            stmt = select(PolicySnapshot.policies).where(PolicySnapshot.run_id == run_id)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def save_bias_reports(self, reports: list[BiasReport]) -> None:
        async with self._session() as session:
            session.add_all(
                BiasReportRecord(
                    report_id=r.report_id,
                    run_id=r.run_id,
                    schema_name=r.schema_name,
                    risk_tier=r.risk_tier,
                    report=r.model_dump(mode="json"),
                )
                for r in reports
            )

    async def bias_reports(self, run_id: str) -> list[BiasReport]:
        async with self._session() as session:
            stmt = (
                select(BiasReportRecord.report)
                .where(BiasReportRecord.run_id == run_id)
                .order_by(BiasReportRecord.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            latest = {r["schema_name"]: r for r in rows}
            return [BiasReport.model_validate(r) for r in latest.values()]

    async def append_audit(self, event: AuditEvent) -> None:
        data = event.model_dump(mode="json")
        async with self._session() as session:
            session.add(
                AuditRecord(
                    event_id=event.event_id,
                    kind=event.kind.value,
                    severity=event.severity,
                    message=event.message[:2000],
                    run_id=event.run_id,
                    source_id=event.source_id,
                    target_id=event.target_id,
                    record_id=event.record_id,
                    details=data["details"],
                    occurred_at=event.occurred_at,
                )
            )

    async def audit_events(
        self,
        *,
        run_id: str | None = None,
        target_id: str | None = None,
        kind: AuditKind | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[list[AuditEvent], int]:
        stmt = select(AuditRecord)
        if run_id is not None:
            stmt = stmt.where(AuditRecord.run_id == run_id)
        if target_id is not None:
            stmt = stmt.where(AuditRecord.target_id == target_id)
        if kind is not None:
            stmt = stmt.where(AuditRecord.kind == kind.value)
        async with self._session() as session:
            count_stmt = select(func.count()).select_from(stmt.subquery())
            total = (await session.execute(count_stmt)).scalar_one()
            stmt = stmt.order_by(AuditRecord.id).offset(offset).limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [_audit_from_row(r) for r in rows], total

    async def save_holds(self, holds: list[HoldEntry]) -> None:
        if not holds:
            return
        async with self._session() as session:
            session.add_all(
                HoldRecord(
                    hold_id=h.hold_id,
                    run_id=h.run_id,
                    target_id=h.target_id,
                    record_id=h.record_id,
                    schema_name=h.schema_name,
                    reason=h.reason,
                    policies=h.policies,
                    bias_report_id=h.bias_report_id,
                    created_at=h.created_at,
                )
                for h in holds
            )

    async def holds(self, run_id: str, target_id: str | None = None) -> list[HoldEntry]:
        stmt = select(HoldRecord).where(HoldRecord.run_id == run_id)
        if target_id is not None:
            stmt = stmt.where(HoldRecord.target_id == target_id)
        async with self._session() as session:
            rows = (await session.execute(stmt.order_by(HoldRecord.id))).scalars().all()
            return [HoldEntry.model_validate(r, from_attributes=True) for r in rows]

    async def save_override(self, override: HoldOverride) -> None:
        async with self._session() as session:
            session.add(HoldOverrideRecord(**override.model_dump()))

    async def overrides(self, run_id: str, target_id: str | None = None) -> list[HoldOverride]:
        stmt = select(HoldOverrideRecord).where(HoldOverrideRecord.run_id == run_id)
        if target_id is not None:
            stmt = stmt.where(HoldOverrideRecord.target_id == target_id)
        async with self._session() as session:
            rows = (await session.execute(stmt.order_by(HoldOverrideRecord.id))).scalars().all()
            return [HoldOverride.model_validate(r) for r in rows]

    async def get_pointer(self, target_id: str) -> TargetPointer | None:
        async with self._session() as session:
            stmt = select(TargetPointerRecord).where(TargetPointerRecord.target_id == target_id)
            row = (await session.execute(stmt)).scalar_one_or_none()
            return TargetPointer.model_validate(row) if row else None

    async def pointers(self) -> list[TargetPointer]:
        async with self._session() as session:
            stmt = select(TargetPointerRecord).order_by(TargetPointerRecord.target_id)
            rows = (await session.execute(stmt)).scalars().all()
            return [TargetPointer.model_validate(r) for r in rows]

    async def move_pointer(self, event: PointerEvent) -> TargetPointer:
        async with self._session() as session:
            stmt = (
                select(TargetPointerRecord)
                .where(TargetPointerRecord.target_id == event.target_id)
                .with_for_update()
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = TargetPointerRecord(target_id=event.target_id)
                session.add(row)
            row.run_id = event.to_run_id
            row.version = event.to_version
            session.add(PointerEventRecord(**event.model_dump()))
            await session.flush()
            await session.refresh(row)
            return TargetPointer.model_validate(row)

    async def pointer_history(self, target_id: str | None = None) -> list[PointerEvent]:
        stmt = select(PointerEventRecord)
        if target_id is not None:
            stmt = stmt.where(PointerEventRecord.target_id == target_id)
        async with self._session() as session:
            rows = (await session.execute(stmt.order_by(PointerEventRecord.id))).scalars().all()
            return [PointerEvent.model_validate(r) for r in rows]

    async def append_outbox(self, batch: DeliveryBatch) -> int:
        rows = batch.model_dump(mode="json")["rows"]
        if not rows:
            return 0
        values = [
            {
                "target_id": batch.target_id,
                "run_id": batch.run_id,
                "record_id": str(row.get("record_id")),
                "delivery_id": batch.delivery_id,
                "row": row,
            }
            for row in rows
        ]
        stmt = (
            insert(OutboxEntry)
            .values(values)
            .on_conflict_do_nothing(constraint="uq_delivery_outbox_target_run_record")
            .returning(OutboxEntry.id)
        )
        async with self._session() as session:
            inserted = (await session.execute(stmt)).scalars().all()
            return len(inserted)

    async def read_outbox(
        self, target_id: str, after: int = 0, limit: int = 100
    ) -> list[dict[str, Any]]:
        stmt = (
            select(OutboxEntry)
            .where(OutboxEntry.target_id == target_id, OutboxEntry.id > after)
            .order_by(OutboxEntry.id)
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [{"sequence": r.id, "run_id": r.run_id, "row": r.row} for r in rows]

    async def aclose(self) -> None:
        return None

"""Seeding orchestrator.

Runs the pipeline stages in strict order (collect, clean, augment, score,
distribute) as versioned seeding runs. A checkpoint is written after every
stage so a failed run resumes where it stopped; a checkpoint that cannot be
read back fails that run for good and a fresh run is started instead.

Targets follow the newest completed run that delivered to them. Only a
rollback moves a target's pointer backwards, and a rollback never touches
the restored run's data: it is a new run that re-delivers the stored batch.

CRITICAL: a run is rejected while another in-flight run holds any of its
targets, so each target has a single writer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncEngine

from seedflow.core.config import Settings, get_settings
from seedflow.core.database import get_engine, get_session_maker
from seedflow.core.exceptions import (
    BadRequestError,
    ConflictError,
    DeliveryFailureError,
    EmergencyStopError,
    InvalidTransitionError,
    NotFoundError,
    SchemaMismatchError,
    SeedFlowError,
    StateCorruptionError,
    ValidationError,
)
from seedflow.core.logging import get_logger, run_context
from seedflow.features.augmentation.benchmarks import (
    BenchmarkProvider,
    HttpBenchmarkProvider,
    StaticBenchmarkProvider,
)
from seedflow.features.augmentation.service import AugmentationService
from seedflow.features.cleaning.canonical import SchemaRegistry
from seedflow.features.cleaning.schemas import CanonicalRecord, QuarantinedRecord
from seedflow.features.cleaning.service import CleaningEngine
from seedflow.features.collection.connectors import SourceConnector, build_connector
from seedflow.features.collection.schemas import CollectionQuery, RawRecord
from seedflow.features.collection.service import CollectionPipeline
from seedflow.features.distribution.adapters import DeliveryAdapter, DeliveryHandler
from seedflow.features.distribution.config import (
    BenchmarkProviderSpec,
    ConfigWatcher,
    DistributionConfigFile,
)
from seedflow.features.distribution.schemas import (
    DistributionReport,
    TargetConfig,
    TargetStatus,
)
from seedflow.features.distribution.service import DistributionEngine
from seedflow.features.orchestrator.schemas import (
    CHECKPOINT_STAGES,
    VALID_RUN_TRANSITIONS,
    AuditEventList,
    Checkpoint,
    CheckpointStage,
    ConfigReloadResponse,
    HoldOverride,
    OrchestratorStatus,
    OutboxPage,
    OverrideResponse,
    PointerEvent,
    RunKind,
    RunListResponse,
    RunResponse,
    RunState,
    RunStatus,
    RunStatusEvent,
    TargetPointer,
)
from seedflow.features.orchestrator.store import (
    MemoryStateStore,
    SqlStateStore,
    StateStore,
    StoredBatch,
)
from seedflow.features.scoring.governance import build_policy
from seedflow.features.scoring.schemas import BiasReport
from seedflow.features.scoring.service import ScoringService
from seedflow.shared.audit import AuditEvent, AuditKind
from seedflow.shared.schemas import PaginationParams
from seedflow.shared.utils import content_hash, utcnow

logger = get_logger(__name__)

# Status a run is in while producing each checkpoint.
STAGE_STATUS: dict[CheckpointStage, RunStatus] = {
    "collected": RunStatus.COLLECTING,
    "cleaned": RunStatus.CLEANING,
    "augmented": RunStatus.CLEANING,
    "scored": RunStatus.SCORING,
    "distributed": RunStatus.DISTRIBUTING,
}


@dataclass
class _RunData:
    """Stage outputs carried between stages of one run."""

    raw: list[RawRecord] = field(default_factory=list)
    records: list[CanonicalRecord] = field(default_factory=list)
    bias: list[BiasReport] = field(default_factory=list)


def _dump(records: list[RawRecord] | list[CanonicalRecord]) -> list[dict[str, Any]]:
    return [r.model_dump(mode="json") for r in records]


class SeedingOrchestrator:
    """Supervises seeding runs over the pipeline services and the state store."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: StateStore | None = None,
        *,
        collection: CollectionPipeline | None = None,
        cleaning: CleaningEngine | None = None,
        augmentation: AugmentationService | None = None,
        scoring: ScoringService | None = None,
        distribution: DistributionEngine | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Services that are not passed in are built from settings and report
        their audit events to the state store.

        Args:
            settings: Application settings (defaults to cached settings).
            store: State store (defaults to an in-memory store).
            collection: Collection pipeline.
            cleaning: Cleaning engine; its schema registry is shared with scoring.
            augmentation: Augmentation service.
            scoring: Scoring service.
            distribution: Distribution engine; store-and-poll targets write
                to the state store outbox.
            engine: Database engine for historical table connectors.
        """
        self.settings = settings or get_settings()
        self.store: StateStore = store or MemoryStateStore()
        self.collection = collection or CollectionPipeline(self.settings, self.record_audit)
        self.cleaning = cleaning or CleaningEngine(
            self.settings, SchemaRegistry(), self.record_audit
        )
        self.augmentation = augmentation or AugmentationService(self.settings, self.record_audit)
        self.scoring = scoring or ScoringService(
            self.settings, self.cleaning.registry, audit=self.record_audit
        )
        self.distribution = distribution or DistributionEngine(
            self.settings, self.record_audit, outbox=self.store.append_outbox
        )
        self.db_engine = engine
        self.watcher = ConfigWatcher(self.settings.distribution_config_path)
        self.schedule_seconds = self.settings.batch_schedule_seconds

        self._lock = asyncio.Lock()
        self._claims: dict[str, str] = {}
        self._active: dict[str, list[str]] = {}
        self._scheduler: asyncio.Task[None] | None = None
        self._file_targets: set[str] = set()
        self._file_sources: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SeedingOrchestrator:
        """Build the orchestrator for the configured state store backend."""
        settings = settings or get_settings()
        if settings.state_store_backend == "memory":
            return cls(settings, MemoryStateStore())
        return cls(settings, SqlStateStore(get_session_maker()), engine=get_engine())

    async def record_audit(self, event: AuditEvent) -> None:
        await self.store.append_audit(event)

    @property
    def emergency_stopped(self) -> bool:
        return self.distribution.is_stopped

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_source(self, connector: SourceConnector) -> None:
        self.collection.register_source(connector)

    def _check_schemas(self, config: TargetConfig) -> None:
        known = set(self.cleaning.registry.names())
        unknown = [s for s in config.schemas if s not in known]
        if unknown:
            raise SchemaMismatchError(
                f"Target '{config.target_id}' accepts unknown schemas",
                details={"target_id": config.target_id, "schemas": unknown},
            )

    def register_target(
        self,
        config: TargetConfig,
        adapter: DeliveryAdapter | DeliveryHandler | None = None,
    ) -> None:
        """Register a distribution target after checking its schemas exist.

        Raises:
            SchemaMismatchError: If the target accepts a schema the registry
                does not know.
            ConflictError: If the target is already registered.
        """
        self._check_schemas(config)
        self.distribution.register_target(config, adapter)

    async def update_target_config(
        self,
        config: TargetConfig,
        adapter: DeliveryAdapter | DeliveryHandler | None = None,
    ) -> TargetStatus:
        """Register or hot-reload a target; in-flight deliveries keep their snapshot."""
        self._check_schemas(config)
        if self.distribution.has_target(config.target_id):
            await self.distribution.update_target_config(config, adapter)
        else:
            self.distribution.register_target(config, adapter)
        return self.distribution.target_status(config.target_id)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _ensure_running(self) -> None:
        if self.distribution.is_stopped:
            raise EmergencyStopError()

    def _resolve_targets(self, targets: list[str] | None) -> list[str]:
        if targets is None:
            return self.distribution.target_ids()
        for target_id in targets:
            self.distribution.get_config(target_id)
        return list(dict.fromkeys(targets))

    def _claim(self, claim_id: str, target_ids: list[str]) -> None:
        busy = sorted(t for t in target_ids if t in self._claims)
        if busy:
            raise ConflictError(
                "Targets are held by an in-flight run",
                details={"targets": busy, "runs": sorted({self._claims[t] for t in busy})},
            )
        for target_id in target_ids:
            self._claims[target_id] = claim_id
        self._active[claim_id] = list(target_ids)

    def _release(self, claim_id: str) -> None:
        for target_id in self._active.pop(claim_id, []):
            if self._claims.get(target_id) == claim_id:
                del self._claims[target_id]

    async def _create_run(self, run_fields: dict[str, Any], reason: str | None = None) -> RunState:
        """Allocate a version, claim the run's targets and persist it as pending."""
        async with self._lock:
            run = RunState(version=await self.store.next_version(), **run_fields)
            self._claim(run.run_id, run.target_ids)
            try:
                await self.store.create_run(run)
                await self.store.append_status_event(
                    RunStatusEvent(
                        run_id=run.run_id,
                        from_status=None,
                        to_status=RunStatus.PENDING,
                        reason=reason or run.kind.value,
                        created_at=run.created_at,
                    )
                )
            except Exception:
                self._release(run.run_id)
                raise
        logger.info(
            "orchestrator.run_created",
            run_id=run.run_id,
            version=run.version,
            kind=run.kind.value,
            targets=run.target_ids,
            sources=run.source_filter,
        )
        return run

    async def _get_run(self, run_id: str) -> RunState:
        run = await self.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run '{run_id}' not found", details={"run_id": run_id})
        return run

    async def start_run(
        self,
        source_filter: list[str] | None = None,
        window: CollectionQuery | None = None,
        targets: list[str] | None = None,
        *,
        kind: RunKind = RunKind.SEEDING,
    ) -> RunState:
        """Start a seeding run and execute it to completion or failure.

        Args:
            source_filter: Sources to collect from (None = all registered).
            window: Collection window.
            targets: Targets to distribute to (None = all registered).
            kind: ``seeding`` or ``refresh``.

        Returns:
            The run in its final state; stage failures mark it ``failed``
            instead of raising.

        Raises:
            EmergencyStopError: If operations are halted.
            NotFoundError: If a named source or target is not registered.
            ConflictError: If an in-flight run holds one of the targets.
        """
        self._ensure_running()
        target_ids = self._resolve_targets(targets)
        if source_filter is not None:
            for source_id in source_filter:
                self.collection.get_source(source_id)

        run = await self._create_run(
            {
                "kind": kind,
                "source_filter": list(source_filter) if source_filter is not None else None,
                "target_ids": target_ids,
                "window": window,
            }
        )
        try:
            return await self._execute(run, _RunData(), None)
        finally:
            self._release(run.run_id)

    async def force_refresh(
        self,
        source_id: str,
        window: CollectionQuery | None = None,
        targets: list[str] | None = None,
    ) -> RunState:
        """Clear a source's degraded flag and run the pipeline for that source only."""
        self.collection.reset_source(source_id)
        logger.info("orchestrator.refresh_requested", source_id=source_id)
        return await self.start_run([source_id], window, targets, kind=RunKind.REFRESH)

    async def resume_run(self, run_id: str) -> RunState:
        """Continue a failed run from its last checkpoint.

        If the last checkpoint cannot be read back, the run stays failed, a
        state corruption event is recorded and a fresh run with the same
        sources, window and targets is started instead.

        Raises:
            NotFoundError: If the run does not exist.
            InvalidTransitionError: If the run is not failed.
            EmergencyStopError: If operations are halted.
        """
        run = await self._get_run(run_id)
        if run.status != RunStatus.FAILED:
            raise InvalidTransitionError(
                f"Run '{run_id}' is {run.status.value}; only failed runs can be resumed",
                details={"run_id": run_id, "status": run.status.value},
            )
        self._ensure_running()

        restored: RunState | None = None
        stage: CheckpointStage | None = None
        data = _RunData()
        if run.kind == RunKind.ROLLBACK:
            restored = await self._get_run(run.restores_run_id or "")
        else:
            try:
                stage, data = await self._restore(run)
            except StateCorruptionError as e:
                await self._record_corruption(run, e)
                targets = [t for t in run.target_ids if self.distribution.has_target(t)]
                return await self.start_run(run.source_filter, run.window, targets, kind=run.kind)

        async with self._lock:
            self._claim(run.run_id, run.target_ids)
        logger.info("orchestrator.run_resumed", run_id=run_id, from_checkpoint=stage)
        try:
            if restored is not None:
                return await self._run_rollback(run, restored)
            return await self._execute(run, data, stage)
        finally:
            self._release(run.run_id)

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _transition(self, run: RunState, to: RunStatus, reason: str | None = None) -> None:
        current = run.status
        if to not in VALID_RUN_TRANSITIONS[current]:
            valid = sorted(s.value for s in VALID_RUN_TRANSITIONS[current])
            raise InvalidTransitionError(
                f"Invalid transition from {current.value} to {to.value}. "
                f"Valid transitions: {valid}",
                details={"run_id": run.run_id, "from": current.value, "to": to.value},
            )
        now = utcnow()
        run.status = to
        if to in (RunStatus.COMPLETED, RunStatus.FAILED):
            run.completed_at = now
        await self.store.append_status_event(
            RunStatusEvent(
                run_id=run.run_id, from_status=current, to_status=to, reason=reason, created_at=now
            )
        )
        await self.store.save_run(run)
        logger.info(
            "orchestrator.run_transition",
            run_id=run.run_id,
            from_status=current.value,
            to_status=to.value,
        )

    async def _execute(
        self, run: RunState, data: _RunData, after: CheckpointStage | None
    ) -> RunState:
        steps = {
            "collected": self._collect,
            "cleaned": self._clean,
            "augmented": self._augment,
            "scored": self._score,
            "distributed": self._distribute,
        }
        start = 0 if after is None else CHECKPOINT_STAGES.index(after) + 1
        run.started_at = run.started_at or utcnow()
        with run_context(run.run_id):
            try:
                for stage in CHECKPOINT_STAGES[start:]:
                    status = STAGE_STATUS[stage]
                    if run.status != status:
                        await self._transition(run, status)
                    payload = await steps[stage](run, data)
                    await self._checkpoint(run, stage, payload)
                    logger.info("orchestrator.stage_completed", stage=stage)
                await self._finalize(run)
            except Exception as e:
                await self._fail(run, e)
        return run

    async def _checkpoint(self, run: RunState, stage: CheckpointStage, payload: Any) -> None:
        await self.store.save_checkpoint(
            Checkpoint(
                run_id=run.run_id, stage=stage, payload=payload, checksum=content_hash(payload)
            )
        )
        run.last_checkpoint = stage
        await self.store.save_run(run)

    async def _collect(self, run: RunState, data: _RunData) -> dict[str, Any]:
        result = await self.collection.collect(run.source_filter, run.window)
        data.raw = result.records
        run.summary.collection = result.reports
        run.summary.degraded_sources = result.degraded_sources
        run.summary.collected = len(result.records)
        return {"records": _dump(data.raw)}

    async def _clean(self, run: RunState, data: _RunData) -> dict[str, Any]:
        outcome = await self.cleaning.process(
            data.raw, run_id=run.run_id, reliability=self.collection.reliability_map()
        )
        for source_id, count in outcome.rejections_by_source.items():
            self.collection.record_rejections(source_id, count)
        data.records = outcome.records
        run.summary.cleaning = outcome.report
        return {"records": _dump(data.records)}

    async def _augment(self, run: RunState, data: _RunData) -> dict[str, Any]:
        def normalize(
            raw: list[RawRecord],
        ) -> tuple[list[CanonicalRecord], list[QuarantinedRecord]]:
            result = self.cleaning.normalize_all(raw, run_id=run.run_id)
            return result.records, result.quarantined

        outcome = await self.augmentation.augment(data.records, normalize, run_id=run.run_id)
        for quarantined in outcome.quarantined:
            await self.record_audit(
                AuditEvent(
                    kind=AuditKind.QUARANTINE,
                    severity="warning",
                    run_id=run.run_id,
                    source_id=quarantined.source_id,
                    record_id=quarantined.record_id,
                    message="; ".join(quarantined.reasons),
                    details={"kind": quarantined.kind, "stage": "augmentation"},
                )
            )
        data.records = outcome.records
        run.summary.augmentation = outcome.report
        return {"records": _dump(data.records)}

    async def _score(self, run: RunState, data: _RunData) -> dict[str, Any]:
        outcome = await self.scoring.score(
            data.records, run_id=run.run_id, reliability=self.collection.reliability_map()
        )
        report = outcome.report
        data.records = outcome.records
        data.bias = report.bias

        run.summary.quality = report.quality
        run.summary.stages = dict(report.stages)
        run.summary.governance = {
            "evaluated": report.governance.evaluated,
            "passed": report.governance.passed,
            "advisory": report.governance.advisory,
            "blocked": report.governance.blocked,
        }
        run.summary.bias_tiers = {b.schema_name: b.risk_tier for b in report.bias}

        await self.store.save_policy_snapshot(run.run_id, report.governance.policies)
        await self.store.save_bias_reports(report.bias)
        await self.store.save_batches(self._batches(run.run_id, data.records))
        return {
            "records": _dump(data.records),
            "bias": [b.model_dump(mode="json") for b in data.bias],
        }

    @staticmethod
    def _batches(run_id: str, records: list[CanonicalRecord]) -> list[StoredBatch]:
        by_schema: dict[str, list[dict[str, Any]]] = {}
        for record in records:
            by_schema.setdefault(record.schema_name, []).append(record.model_dump(mode="json"))
        return [
            StoredBatch(run_id, schema, rows, content_hash(rows))
            for schema, rows in by_schema.items()
        ]

    async def _deliver(
        self,
        run: RunState,
        records: list[CanonicalRecord],
        bias: list[BiasReport],
    ) -> DistributionReport:
        """Deliver to the run's targets on both lanes and persist the resulting holds.

        Batch targets get the whole batch; real-time targets are fed record
        by record through their queues at the same time, so a slow batch
        target never delays them. Queued records do not move pointers.
        """
        self._ensure_running()
        targets = [t for t in run.target_ids if self.distribution.has_target(t)]
        bias_reports = {b.schema_name: b for b in bias}
        report, streamed = await asyncio.gather(
            self.distribution.distribute(
                records, run_id=run.run_id, bias_reports=bias_reports, targets=targets
            ),
            self.distribution.stream(
                records, run_id=run.run_id, bias_reports=bias_reports, targets=targets
            ),
        )
        report.targets.update(streamed)
        await self.store.save_holds([h for r in report.targets.values() for h in r.holds])
        run.summary.distribution = report.targets
        run.summary.emergency_stopped = report.emergency_stopped

        stopped = sorted(t for t, r in report.targets.items() if r.status == "stopped")
        if stopped:
            raise EmergencyStopError(
                "Distribution halted by emergency stop",
                details={"run_id": run.run_id, "targets": stopped},
            )
        return report

    async def _distribute(self, run: RunState, data: _RunData) -> dict[str, Any]:
        report = await self._deliver(run, data.records, data.bias)
        return {"report": report.model_dump(mode="json")}

    async def _finalize(self, run: RunState) -> None:
        if run.status != RunStatus.DISTRIBUTING:
            await self._transition(run, RunStatus.DISTRIBUTING)
        for target_id in run.summary.delivered_targets():
            await self._move_pointer(target_id, run, run, "advance")
        await self._transition(run, RunStatus.COMPLETED)
        logger.info(
            "orchestrator.run_completed",
            run_id=run.run_id,
            version=run.version,
            delivered_targets=run.summary.delivered_targets(),
            degraded_sources=run.summary.degraded_sources,
        )

    async def _fail(self, run: RunState, error: Exception) -> None:
        message = error.message if isinstance(error, SeedFlowError) else str(error)
        run.error_message = (message or type(error).__name__)[:2000]
        run.error_type = type(error).__name__
        logger.error(
            "orchestrator.run_failed",
            run_id=run.run_id,
            status=run.status.value,
            error=run.error_message,
            error_type=run.error_type,
            exc_info=not isinstance(error, SeedFlowError),
        )
        if RunStatus.FAILED in VALID_RUN_TRANSITIONS[run.status]:
            await self._transition(run, RunStatus.FAILED, reason=run.error_message)
        else:
            await self.store.save_run(run)

    # ------------------------------------------------------------------
    # Checkpoint restore
    # ------------------------------------------------------------------

    async def _restore(self, run: RunState) -> tuple[CheckpointStage | None, _RunData]:
        """Rebuild stage outputs from the last checkpoint.

        Raises:
            StateCorruptionError: If the checkpoint fails its checksum or
                does not parse.
        """
        checkpoints = {c.stage: c for c in await self.store.checkpoints(run.run_id)}
        done = [s for s in CHECKPOINT_STAGES if s in checkpoints]
        if not done:
            return None, _RunData()

        stage = done[-1]
        checkpoint = checkpoints[stage]
        if content_hash(checkpoint.payload) != checkpoint.checksum:
            raise StateCorruptionError(
                run.run_id, f"Checkpoint '{stage}' failed its checksum", details={"stage": stage}
            )
        data = _RunData()
        try:
            payload = checkpoint.payload
            if stage == "collected":
                data.raw = [RawRecord.model_validate(r) for r in payload["records"]]
            elif stage == "distributed":
                report = DistributionReport.model_validate(payload["report"])
                run.summary.distribution = report.targets
            else:
                data.records = [CanonicalRecord.model_validate(r) for r in payload["records"]]
                if stage == "scored":
                    data.bias = [BiasReport.model_validate(b) for b in payload["bias"]]
        except (PydanticValidationError, KeyError, TypeError) as e:
            raise StateCorruptionError(
                run.run_id,
                f"Checkpoint '{stage}' is unreadable",
                details={"stage": stage, "error": str(e)[:500]},
            ) from e
        return stage, data

    async def _load_batch(self, run: RunState) -> list[CanonicalRecord]:
        records: list[CanonicalRecord] = []
        for batch in await self.store.load_batches(run.run_id):
            if content_hash(batch.records) != batch.checksum:
                raise StateCorruptionError(
                    run.run_id,
                    f"Canonical batch '{batch.schema_name}' failed its checksum",
                    details={"schema": batch.schema_name},
                )
            try:
                records.extend(CanonicalRecord.model_validate(r) for r in batch.records)
            except PydanticValidationError as e:
                raise StateCorruptionError(
                    run.run_id,
                    f"Canonical batch '{batch.schema_name}' is unreadable",
                    details={"schema": batch.schema_name, "error": str(e)[:500]},
                ) from e
        return records

    async def _record_corruption(self, run: RunState, error: StateCorruptionError) -> None:
        logger.error(
            "orchestrator.state_corruption",
            run_id=run.run_id,
            error=error.message,
            details=error.details,
        )
        await self.record_audit(
            AuditEvent(
                kind=AuditKind.STATE_CORRUPTION,
                severity="critical",
                run_id=run.run_id,
                message=error.message,
                details=error.details,
            )
        )
        run.error_message = error.message
        run.error_type = type(error).__name__
        await self.store.save_run(run)

    # ------------------------------------------------------------------
    # Pointers and rollback
    # ------------------------------------------------------------------

    async def _move_pointer(
        self, target_id: str, data_run: RunState, moved_by: RunState, reason: str
    ) -> TargetPointer | None:
        """Point a target at ``data_run``; returns the previous pointer.

        ``advance`` and ``override`` moves only go forward in version.
        """
        current = await self.store.get_pointer(target_id)
        if current is not None:
            if current.run_id == data_run.run_id:
                return current
            if reason != "rollback" and current.version >= data_run.version:
                return current
        event = PointerEvent(
            target_id=target_id,
            from_run_id=current.run_id if current else None,
            to_run_id=data_run.run_id,
            from_version=current.version if current else None,
            to_version=data_run.version,
            reason=reason,  # type: ignore[arg-type]
            moved_by_run_id=moved_by.run_id,
        )
        await self.store.move_pointer(event)
        await self.record_audit(
            AuditEvent(
                kind=AuditKind.POINTER_MOVED,
                severity="warning" if reason == "rollback" else "info",
                run_id=moved_by.run_id,
                target_id=target_id,
                message=f"Target '{target_id}' now follows run {data_run.run_id}",
                details=event.model_dump(mode="json"),
            )
        )
        return current

    async def rollback(
        self, run_id: str, actor: str | None = None, reason: str | None = None
    ) -> RunState:
        """Restore the output of a prior run on every target it delivered to.

        A new rollback run re-delivers the stored batch of the restored run
        and moves the targets' pointers to it. Runs displaced by the move
        that are newer than the restored run become ``rolled_back``. Rolling
        forward again is a rollback to the newer run; its status stays
        ``rolled_back`` and the pointers show it is active again.

        Args:
            run_id: Run to restore (a rollback run resolves to the run it restored).
            actor: Operator requesting the rollback.
            reason: Free-text justification.

        Returns:
            The rollback run in its final state.

        Raises:
            NotFoundError: If the run does not exist.
            InvalidTransitionError: If the run never completed.
            BadRequestError: If no registered target received the run.
            ConflictError: If an in-flight run holds one of the targets.
            EmergencyStopError: If operations are halted.
            StateCorruptionError: If the stored batch cannot be read back.
        """
        self._ensure_running()
        restored = await self._get_run(run_id)
        if restored.kind == RunKind.ROLLBACK and restored.restores_run_id:
            restored = await self._get_run(restored.restores_run_id)
        if restored.status not in (RunStatus.COMPLETED, RunStatus.ROLLED_BACK):
            raise InvalidTransitionError(
                f"Run '{restored.run_id}' is {restored.status.value}; only completed runs "
                "can be restored",
                details={"run_id": restored.run_id, "status": restored.status.value},
            )
        targets = [
            t for t in restored.summary.delivered_targets() if self.distribution.has_target(t)
        ]
        if not targets:
            raise BadRequestError(
                f"Run '{restored.run_id}' has no registered targets to restore",
                details={"run_id": restored.run_id},
            )

        run = await self._create_run(
            {
                "kind": RunKind.ROLLBACK,
                "source_filter": restored.source_filter,
                "target_ids": targets,
                "window": restored.window,
                "restores_run_id": restored.run_id,
            },
            reason=reason or f"rollback to {restored.run_id}",
        )
        logger.warning(
            "orchestrator.rollback_started",
            run_id=run.run_id,
            restores_run_id=restored.run_id,
            actor=actor,
            targets=targets,
        )
        try:
            return await self._run_rollback(run, restored, actor=actor, reason=reason)
        finally:
            self._release(run.run_id)

    async def _run_rollback(
        self,
        run: RunState,
        restored: RunState,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> RunState:
        run.started_at = run.started_at or utcnow()
        try:
            await self._transition(
                run, RunStatus.DISTRIBUTING, reason=f"restore {restored.run_id}"
            )
            stage, _ = await self._restore(run)
            if stage == "distributed":
                report = DistributionReport(
                    run_id=run.run_id, targets=dict(run.summary.distribution)
                )
            else:
                records = await self._load_batch(restored)
                bias = await self.store.bias_reports(restored.run_id)
                report = await self._deliver(run, records, bias)
                await self._checkpoint(
                    run, "distributed", {"report": report.model_dump(mode="json")}
                )

            displaced: set[str] = set()
            moved: list[str] = []
            for target_id, target_report in sorted(report.targets.items()):
                if target_report.status not in ("delivered", "empty"):
                    continue
                previous = await self._move_pointer(target_id, restored, run, "rollback")
                moved.append(target_id)
                if previous is not None and previous.run_id != restored.run_id:
                    displaced.add(previous.run_id)

            retired = await self._retire(displaced, restored, run)
            await self._transition(run, RunStatus.COMPLETED)
        except Exception as e:
            await self._fail(run, e)
            return run

        await self.record_audit(
            AuditEvent(
                kind=AuditKind.ROLLBACK,
                severity="warning",
                run_id=run.run_id,
                message=f"Restored run {restored.run_id} on {len(moved)} target(s)",
                details={
                    "restores_run_id": restored.run_id,
                    "targets": moved,
                    "rolled_back_runs": retired,
                    "actor": actor,
                    "reason": reason,
                },
            )
        )
        logger.warning(
            "orchestrator.rollback_completed",
            run_id=run.run_id,
            restores_run_id=restored.run_id,
            targets=moved,
            rolled_back_runs=retired,
        )
        return run

    async def _retire(
        self, displaced: set[str], restored: RunState, rollback_run: RunState
    ) -> list[str]:
        """Mark displaced runs newer than the restored run as rolled back."""
        active = {p.run_id for p in await self.store.pointers()}
        retired: list[str] = []
        for run_id in sorted(displaced - active):
            run = await self.store.get_run(run_id)
            if (
                run is not None
                and run.status == RunStatus.COMPLETED
                and run.version > restored.version
            ):
                await self._transition(
                    run, RunStatus.ROLLED_BACK, reason=f"displaced by {rollback_run.run_id}"
                )
                retired.append(run_id)
        return retired

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def override_hold(
        self, run_id: str, target_id: str, actor: str, reason: str
    ) -> OverrideResponse:
        """Release a run's held records to one target after explicit authorization.

        Governance and bias holds are skipped for the released records; the
        target's minimums still apply.

        Raises:
            NotFoundError: If the run, the target or pending holds are missing.
            EmergencyStopError: If operations are halted.
            DeliveryFailureError: If the target could not be reached.
        """
        self._ensure_running()
        run = await self._get_run(run_id)
        self.distribution.get_config(target_id)

        released = {
            record_id
            for override in await self.store.overrides(run_id, target_id)
            for record_id in override.record_ids
        }
        holds = await self.store.holds(run_id, target_id)
        pending = [h for h in holds if h.record_id not in released]
        if not pending:
            raise NotFoundError(
                f"No pending holds for target '{target_id}' in run '{run_id}'",
                details={"run_id": run_id, "target_id": target_id},
            )

        data_run = run
        if run.kind == RunKind.ROLLBACK and run.restores_run_id:
            data_run = await self._get_run(run.restores_run_id)
        wanted = {h.record_id for h in pending}
        records = [r for r in await self._load_batch(data_run) if r.record_id in wanted]
        bias = await self.store.bias_reports(data_run.run_id)

        claim_id = f"override:{run_id}:{target_id}"
        async with self._lock:
            self._claim(claim_id, [target_id])
        try:
            delivery = await self.distribution.deliver_override(
                target_id,
                records,
                run_id=run_id,
                bias_reports={b.schema_name: b for b in bias},
            )
        finally:
            self._release(claim_id)
        if delivery.status == "failed":
            raise DeliveryFailureError(
                target_id,
                "Released records could not be delivered",
                details={"run_id": run_id, "error": delivery.error},
            )

        override = HoldOverride(
            run_id=run_id,
            target_id=target_id,
            actor=actor,
            reason=reason,
            record_ids=sorted(wanted),
            delivered=delivery.delivered,
        )
        await self.store.save_override(override)
        await self.record_audit(
            AuditEvent(
                kind=AuditKind.OVERRIDE,
                severity="warning",
                run_id=run_id,
                target_id=target_id,
                message=f"{actor} released {len(wanted)} held record(s): {reason}",
                details={
                    "override_id": override.override_id,
                    "actor": actor,
                    "reason": reason,
                    "record_ids": override.record_ids,
                    "delivered": delivery.delivered,
                },
            )
        )
        logger.warning(
            "orchestrator.hold_overridden",
            run_id=run_id,
            target_id=target_id,
            actor=actor,
            released=len(wanted),
            delivered=delivery.delivered,
        )
        if delivery.delivered and data_run.status == RunStatus.COMPLETED:
            await self._move_pointer(target_id, data_run, run, "override")
        return OverrideResponse(override=override, delivery=delivery)

    # ------------------------------------------------------------------
    # Manual controls
    # ------------------------------------------------------------------

    async def emergency_stop(self, reason: str | None = None, actor: str | None = None) -> None:
        """Stop scheduling deliveries; deliveries already issued complete."""
        await self.distribution.emergency_stop(reason, actor)

    async def resume_operations(self, actor: str | None = None) -> None:
        await self.distribution.resume(actor)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _build_provider(self, spec: BenchmarkProviderSpec) -> BenchmarkProvider:
        if spec.type == "static":
            return StaticBenchmarkProvider(spec.name, spec.snapshots, spec.reliability)
        if not spec.base_url:
            raise ValueError(f"Benchmark provider '{spec.name}' needs a base_url")
        return HttpBenchmarkProvider(
            spec.name,
            spec.base_url,
            path=spec.path,
            reliability=spec.reliability,
            timeout_seconds=self.settings.collection_timeout_seconds,
            headers=spec.headers,
        )

    async def apply_config(self, config: DistributionConfigFile) -> None:
        """Apply a distribution configuration to future runs and deliveries.

        Targets and sources defined by an earlier version of the file and
        missing from this one are unregistered.

        Raises:
            ValidationError: If a source, policy or provider cannot be built.
            SchemaMismatchError: If a target accepts an unknown schema.
        """
        try:
            connectors = [
                build_connector(
                    spec,
                    engine=self.db_engine,
                    default_rate_per_second=self.settings.collection_default_rate_per_second,
                    default_burst=self.settings.collection_default_burst,
                )
                for spec in config.sources
            ]
            policies = (
                [
                    build_policy(p.preset, enforcement=p.enforcement, schemas=p.schemas, **p.params)
                    for p in config.policies
                ]
                if config.policies is not None
                else None
            )
            providers = [self._build_provider(p) for p in config.benchmark_providers]
        except (ValueError, TypeError) as e:
            raise ValidationError(
                "Invalid distribution configuration", details={"error": str(e)}
            ) from e
        for target in config.targets:
            self._check_schemas(target)

        target_ids = {t.target_id for t in config.targets}
        for target_id in sorted(self._file_targets - target_ids):
            if self.distribution.has_target(target_id):
                await self.distribution.unregister_target(target_id)
        for target in config.targets:
            await self.update_target_config(target)
        self._file_targets = target_ids

        source_ids = {c.source_id for c in connectors}
        registered = set(self.collection.source_ids)
        for source_id in sorted((self._file_sources - source_ids) & registered):
            await self.collection.unregister_source(source_id)
        for connector in connectors:
            if connector.source_id in registered and connector.source_id in self._file_sources:
                await self.collection.unregister_source(connector.source_id)
            elif connector.source_id in registered:
                logger.warning(
                    "orchestrator.config_source_skipped",
                    source_id=connector.source_id,
                    reason="registered outside the configuration file",
                )
                await connector.aclose()
                continue
            self.collection.register_source(connector)
        self._file_sources = source_ids & set(self.collection.source_ids)

        if policies is not None:
            self.scoring.set_policies(policies)
        self.augmentation.set_gap_requirements(config.gaps)
        for provider in providers:
            self.augmentation.register_provider(provider)
        self.augmentation.set_benchmark_bindings(config.benchmarks)
        if config.batch_schedule_seconds:
            self.schedule_seconds = config.batch_schedule_seconds

        await self.record_audit(
            AuditEvent(
                kind=AuditKind.CONFIG_CHANGE,
                message="Distribution configuration applied",
                details={
                    "path": str(self.watcher.path),
                    "targets": sorted(target_ids),
                    "sources": sorted(source_ids),
                    "policies": self.scoring.policy_names(),
                    "batch_schedule_seconds": self.schedule_seconds,
                },
            )
        )
        logger.info(
            "orchestrator.config_applied",
            targets=sorted(target_ids),
            sources=sorted(source_ids),
            policies=self.scoring.policy_names(),
        )

    async def reload_config(self, force: bool = False) -> ConfigReloadResponse:
        """Re-read the configuration file if it changed (or always, with ``force``).

        Raises:
            NotFoundError: If ``force`` is set and the file does not exist.
            ValidationError: If ``force`` is set and the file is invalid.
        """
        try:
            config = self.watcher.poll(force=force)
        except FileNotFoundError as e:
            raise NotFoundError(str(e), details={"path": str(self.watcher.path)}) from e
        if config is not None:
            await self.apply_config(config)
        return ConfigReloadResponse(
            reloaded=config is not None,
            path=str(self.watcher.path),
            targets=self.distribution.target_ids(),
            sources=self.collection.source_ids,
            policies=self.scoring.policy_names(),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_run(self, run_id: str) -> RunResponse:
        run = await self._get_run(run_id)
        stages = {c.stage for c in await self.store.checkpoints(run_id)}
        return RunResponse(
            run=run,
            events=await self.store.status_events(run_id),
            checkpoints=[s for s in CHECKPOINT_STAGES if s in stages],
        )

    async def list_runs(
        self,
        page: int = 1,
        page_size: int = 20,
        status: RunStatus | None = None,
        kind: RunKind | None = None,
    ) -> RunListResponse:
        pagination = PaginationParams(page=page, page_size=page_size)
        runs, total = await self.store.list_runs(
            status=status, kind=kind, offset=pagination.offset, limit=pagination.limit
        )
        return RunListResponse(runs=runs, total=total, page=page, page_size=page_size)

    async def read_outbox(self, target_id: str, after: int = 0, limit: int = 100) -> OutboxPage:
        entries = await self.store.read_outbox(target_id, after, limit)
        return OutboxPage(
            target_id=target_id,
            after=after,
            entries=entries,
            next_cursor=entries[-1]["sequence"] if entries else after,
        )

    async def audit_events(
        self,
        *,
        run_id: str | None = None,
        target_id: str | None = None,
        kind: AuditKind | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> AuditEventList:
        pagination = PaginationParams(page=page, page_size=page_size)
        events, total = await self.store.audit_events(
            run_id=run_id,
            target_id=target_id,
            kind=kind,
            offset=pagination.offset,
            limit=pagination.limit,
        )
        return AuditEventList(events=events, total=total)

    async def status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            emergency_stopped=self.distribution.is_stopped,
            scheduler_running=self._scheduler is not None and not self._scheduler.done(),
            batch_schedule_seconds=self.schedule_seconds,
            active_runs={k: list(v) for k, v in self._active.items()},
            latest_run=await self.store.latest_run(),
            sources=self.collection.list_sources(),
            degraded_sources=self.collection.degraded_sources(),
            targets=self.distribution.statuses(),
            pointers=await self.store.pointers(),
            metrics=self.distribution.metrics(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def tick(self) -> RunState | None:
        """One scheduler iteration: pick up config changes, then run a batch."""
        try:
            await self.reload_config()
            if self.distribution.is_stopped:
                logger.info("orchestrator.scheduled_run_skipped", reason="emergency_stop")
                return None
            run = await self.start_run()
        except SeedFlowError as e:
            logger.warning("orchestrator.scheduled_run_skipped", reason=e.code, error=e.message)
            return None
        logger.info(
            "orchestrator.scheduled_run_finished", run_id=run.run_id, status=run.status.value
        )
        return run

    async def _schedule_loop(self) -> None:
        while True:
            await asyncio.sleep(self.schedule_seconds)
            try:
                await self.tick()
            except Exception:
                logger.exception("orchestrator.scheduled_run_crashed")

    async def start(self) -> None:
        """Load the configuration file, start the real-time lane and the scheduler."""
        if self.watcher.path.exists():
            await self.reload_config(force=True)
        await self.distribution.start()
        if self.settings.orchestrator_auto_schedule and self._scheduler is None:
            self._scheduler = asyncio.create_task(
                self._schedule_loop(), name="orchestrator:scheduler"
            )
        logger.info(
            "orchestrator.started",
            targets=self.distribution.target_ids(),
            sources=self.collection.source_ids,
            auto_schedule=self.settings.orchestrator_auto_schedule,
            schedule_seconds=self.schedule_seconds,
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel()
            await asyncio.gather(self._scheduler, return_exceptions=True)
            self._scheduler = None
        await self.distribution.stop()
        logger.info("orchestrator.stopped")

    async def aclose(self) -> None:
        await self.stop()
        await self.distribution.aclose()
        await self.collection.aclose()
        await self.augmentation.aclose()
        await self.store.aclose()

"""Distribution engine: target registry plus batch and real-time lanes.

Batch deliveries fan out across targets, bounded by
``distribution_batch_workers``. Real-time records wait in a bounded queue
per target and are drained in FIFO order by a separate worker pool
(``distribution_realtime_workers``), so a slow batch window never starves
the real-time lane. Every delivery to one target is serialized by that
target's lock.

A delivery that exhausts its retries marks only that target degraded;
other targets are unaffected. The next successful delivery restores it.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter, deque
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

import httpx

from seedflow.core.config import Settings, get_settings
from seedflow.core.exceptions import (
    BiasRiskError,
    ConflictError,
    EmergencyStopError,
    GovernanceViolationError,
    NotFoundError,
    SeedFlowError,
)
from seedflow.core.logging import get_logger
from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.distribution.adapters import (
    AdapterContext,
    CallableAdapter,
    DeliveryAdapter,
    DeliveryBatch,
    DeliveryHandler,
    MemoryOutbox,
    OutboxWriter,
    build_adapter,
    delivery_id_for,
)
from seedflow.features.distribution.eligibility import select_records
from seedflow.features.distribution.schemas import (
    DistributionReport,
    EngineMetrics,
    HoldEntry,
    Lane,
    RealtimeResult,
    RealtimeStatus,
    TargetConfig,
    TargetDeliveryReport,
    TargetHealth,
    TargetMetrics,
    TargetStatus,
)
from seedflow.features.distribution.transform import aggregate
from seedflow.features.scoring.schemas import BiasReport, max_tier
from seedflow.shared.audit import AuditEvent, AuditKind, AuditSink, discard_audit
from seedflow.shared.retry import RetryExhaustedError, retry_with_backoff
from seedflow.shared.utils import utcnow

logger = get_logger(__name__)

# Upper bound on queued records merged into one real-time delivery.
REALTIME_MAX_BATCH = 100
THROUGHPUT_WINDOW_SECONDS = 60.0


@dataclass
class _Pending:
    record: CanonicalRecord
    row: dict
    run_id: str | None
    enqueued_at: float


class _TargetState:
    """Mutable runtime state of one registered target."""

    def __init__(self, config: TargetConfig, adapter: DeliveryAdapter, queue_size: int) -> None:
        self.config = config
        self.adapter = adapter
        self.health: TargetHealth = "healthy"
        self.lock = asyncio.Lock()
        self.queue_size = queue_size
        self.queue: asyncio.Queue[_Pending] | None = None
        self.worker: asyncio.Task[None] | None = None
        self.delivered_records = 0
        self.deliveries = 0
        self.failures = 0
        self.latency_total_ms = 0.0
        self.last_delivery_at: datetime | None = None
        self.last_error: str | None = None
        self.realtime_observed = 0
        self.realtime_synthetic = 0
        if config.priority == "realtime":
            self.ensure_queue()

    def ensure_queue(self) -> asyncio.Queue[_Pending]:
        if self.queue is None:
            self.queue = asyncio.Queue(maxsize=self.queue_size)
        return self.queue

    @property
    def queue_depth(self) -> int:
        return self.queue.qsize() if self.queue is not None else 0

    def metrics(self) -> TargetMetrics:
        attempts = self.deliveries + self.failures
        return TargetMetrics(
            delivered_records=self.delivered_records,
            deliveries=self.deliveries,
            failures=self.failures,
            success_rate=round(self.deliveries / attempts, 4) if attempts else 1.0,
            average_latency_ms=(
                round(self.latency_total_ms / self.deliveries, 3) if self.deliveries else 0.0
            ),
            last_delivery_at=self.last_delivery_at,
            last_error=self.last_error,
            queue_depth=self.queue_depth,
        )


class DistributionEngine:
    """Registry of distribution targets and the two delivery lanes."""

    def __init__(
        self,
        settings: Settings | None = None,
        audit: AuditSink = discard_audit,
        outbox: OutboxWriter | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Application settings (defaults to cached settings).
            audit: Sink receiving hold, health, backpressure and stop events.
            outbox: Writer backing ``store_and_poll`` targets (defaults to a
                process-local outbox).
            client: Shared HTTP client for push targets.
        """
        self.settings = settings or get_settings()
        self.audit = audit
        self.memory_outbox: MemoryOutbox | None = None
        if outbox is None:
            self.memory_outbox = MemoryOutbox()
            outbox = self.memory_outbox.append
        self._outbox = outbox
        self._client = client
        self._targets: dict[str, _TargetState] = {}
        self._batch_slots = asyncio.Semaphore(self.settings.distribution_batch_workers)
        self._realtime_slots = asyncio.Semaphore(self.settings.distribution_realtime_workers)
        self._stopped = False
        self._running = False
        self._delivered: deque[tuple[float, int]] = deque()
        self._delivered_total = 0

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _adapter_for(
        self, config: TargetConfig, adapter: DeliveryAdapter | DeliveryHandler | None
    ) -> DeliveryAdapter:
        if isinstance(adapter, DeliveryAdapter):
            return adapter
        if adapter is not None:
            return CallableAdapter(config.target_id, adapter)
        return build_adapter(config, AdapterContext(outbox=self._outbox, client=self._client))

    def register_target(
        self,
        config: TargetConfig,
        adapter: DeliveryAdapter | DeliveryHandler | None = None,
    ) -> None:
        """Register a target.

        Args:
            config: Target configuration.
            adapter: Adapter or async handler; built from ``config.method``
                when omitted.

        Raises:
            ConflictError: If the target id is already registered.
            BadRequestError: If the delivery method is unknown or misconfigured.
        """
        if config.target_id in self._targets:
            raise ConflictError(
                f"Target '{config.target_id}' is already registered",
                details={"target_id": config.target_id},
            )
        state = _TargetState(
            config, self._adapter_for(config, adapter), self.settings.realtime_queue_size
        )
        self._targets[config.target_id] = state
        if self._running and state.queue is not None:
            self._start_worker(state)
        logger.info(
            "distribution.target_registered",
            target_id=config.target_id,
            method=config.method,
            priority=config.priority,
            schemas=config.schemas,
        )

    async def unregister_target(self, target_id: str) -> None:
        state = self._state(target_id)
        del self._targets[target_id]
        await self._stop_worker(state)
        await state.adapter.aclose()
        logger.info("distribution.target_unregistered", target_id=target_id)

    async def update_target_config(
        self,
        config: TargetConfig,
        adapter: DeliveryAdapter | DeliveryHandler | None = None,
    ) -> TargetConfig:
        """Replace a target's configuration for future deliveries.

        Deliveries already in progress keep the configuration they started
        with. The adapter is rebuilt only when the delivery method, url or
        headers change, or when a new adapter is given.

        Returns:
            The previous configuration.

        Raises:
            NotFoundError: If the target is not registered.
        """
        state = self._state(config.target_id)
        previous = state.config
        transport_changed = (previous.method, previous.url, previous.headers) != (
            config.method,
            config.url,
            config.headers,
        )
        keep_direct = config.method == previous.method == "direct"
        if adapter is not None or (transport_changed and not keep_direct):
            old = state.adapter
            state.adapter = self._adapter_for(config, adapter)
            await old.aclose()
        state.config = config
        if config.priority == "realtime":
            state.ensure_queue()
            if self._running and state.worker is None:
                self._start_worker(state)

        before = previous.model_dump(mode="json")
        changes = {
            key: value
            for key, value in config.model_dump(mode="json").items()
            if before.get(key) != value
        }
        logger.info(
            "distribution.target_config_updated",
            target_id=config.target_id,
            changes=sorted(changes),
        )
        await self.audit(
            AuditEvent(
                kind=AuditKind.CONFIG_CHANGE,
                target_id=config.target_id,
                message=f"Configuration of target '{config.target_id}' updated",
                details={"changes": changes},
            )
        )
        return previous

    def _state(self, target_id: str) -> _TargetState:
        state = self._targets.get(target_id)
        if state is None:
            raise NotFoundError(
                f"Target '{target_id}' is not registered", details={"target_id": target_id}
            )
        return state

    def get_config(self, target_id: str) -> TargetConfig:
        return self._state(target_id).config

    def target_ids(self) -> list[str]:
        return sorted(self._targets)

    def has_target(self, target_id: str) -> bool:
        return target_id in self._targets

    def degraded_targets(self) -> list[str]:
        return sorted(t for t, s in self._targets.items() if s.health == "degraded")

    def target_status(self, target_id: str) -> TargetStatus:
        state = self._state(target_id)
        return TargetStatus(
            target_id=target_id,
            method=state.config.method,
            priority=state.config.priority,
            health=state.health,
            enabled=state.config.enabled,
            schemas=state.config.schemas,
            metrics=state.metrics(),
        )

    def statuses(self) -> list[TargetStatus]:
        return [self.target_status(t) for t in self.target_ids()]

    def _snapshot(self, targets: Iterable[str] | None) -> dict[str, TargetConfig]:
        selected = list(self._targets) if targets is None else list(dict.fromkeys(targets))
        return {tid: self._state(tid).config for tid in selected}

    # ------------------------------------------------------------------
    # Emergency stop
    # ------------------------------------------------------------------

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def emergency_stop(self, reason: str | None = None, actor: str | None = None) -> None:
        """Stop scheduling deliveries; deliveries already issued complete."""
        if self._stopped:
            return
        self._stopped = True
        logger.warning("distribution.emergency_stop", reason=reason, actor=actor)
        await self.audit(
            AuditEvent(
                kind=AuditKind.EMERGENCY_STOP,
                severity="critical",
                message="Distribution halted",
                details={"reason": reason, "actor": actor, "stopped": True},
            )
        )

    async def resume(self, actor: str | None = None) -> None:
        if not self._stopped:
            return
        self._stopped = False
        logger.info("distribution.resumed", actor=actor)
        await self.audit(
            AuditEvent(
                kind=AuditKind.EMERGENCY_STOP,
                message="Distribution resumed",
                details={"actor": actor, "stopped": False},
            )
        )

    # ------------------------------------------------------------------
    # Batch lane
    # ------------------------------------------------------------------

    async def distribute(
        self,
        records: Sequence[CanonicalRecord],
        *,
        run_id: str | None = None,
        bias_reports: Mapping[str, BiasReport] | None = None,
        targets: Iterable[str] | None = None,
    ) -> DistributionReport:
        """Deliver a scored batch to every matching batch-class target concurrently.

        Target configurations are snapshotted when the call starts.
        Real-time targets are skipped; they are fed through :meth:`stream`.

        Args:
            records: Scored canonical records.
            run_id: Run being distributed.
            bias_reports: Bias report per schema for the run.
            targets: Target ids to deliver to (None = all registered).

        Returns:
            DistributionReport with one TargetDeliveryReport per batch target.

        Raises:
            NotFoundError: If ``targets`` names an unregistered target.
        """
        snapshot = {
            tid: config
            for tid, config in self._snapshot(targets).items()
            if config.priority != "realtime"
        }
        report = DistributionReport(run_id=run_id)

        if self._stopped:
            report.emergency_stopped = True
            report.targets = {
                tid: TargetDeliveryReport(target_id=tid, run_id=run_id, status="stopped")
                for tid in snapshot
            }
            report.completed_at = utcnow()
            logger.warning("distribution.skipped_emergency_stop", run_id=run_id)
            return report

        logger.info(
            "distribution.started",
            run_id=run_id,
            record_count=len(records),
            targets=sorted(snapshot),
        )
        results = await asyncio.gather(
            *(
                self._distribute_target(
                    self._targets[tid], config, records, run_id, bias_reports or {}
                )
                for tid, config in snapshot.items()
            )
        )
        report.targets = {r.target_id: r for r in results}
        report.emergency_stopped = self._stopped
        report.completed_at = utcnow()
        logger.info(
            "distribution.completed",
            run_id=run_id,
            delivered=report.delivered_total,
            held=report.held_total,
            failed_targets=report.failed_targets,
        )
        return report

    async def deliver_override(
        self,
        target_id: str,
        records: Sequence[CanonicalRecord],
        *,
        run_id: str | None = None,
        bias_reports: Mapping[str, BiasReport] | None = None,
    ) -> TargetDeliveryReport:
        """Deliver records released by an authorized override.

        Governance and bias holds are skipped; thresholds, filters and the
        synthetic ratio still apply.

        Raises:
            NotFoundError: If the target is not registered.
            EmergencyStopError: If distribution is halted.
        """
        state = self._state(target_id)
        if self._stopped:
            raise EmergencyStopError(details={"target_id": target_id})
        return await self._distribute_target(
            state, state.config, records, run_id, bias_reports or {}, lane="override"
        )

    async def _distribute_target(
        self,
        state: _TargetState,
        config: TargetConfig,
        records: Sequence[CanonicalRecord],
        run_id: str | None,
        bias_reports: Mapping[str, BiasReport],
        lane: Lane = "batch",
    ) -> TargetDeliveryReport:
        report = TargetDeliveryReport(target_id=config.target_id, run_id=run_id, lane=lane)
        if not config.enabled:
            report.status = "disabled"
            return report

        selection = await asyncio.to_thread(
            select_records,
            records,
            config,
            run_id=run_id,
            bias_reports=bias_reports,
            ignore_holds=lane == "override",
        )
        report.candidates = selection.candidates
        report.filtered = selection.filtered
        report.excluded = dict(selection.excluded)
        report.trimmed = selection.trimmed
        report.held = len(selection.holds)
        report.holds = selection.holds
        if selection.holds:
            await self._record_holds(config, run_id, selection.holds, bias_reports)
        if not selection.records:
            return report

        rows = selection.rows
        if config.transformation.aggregation is not None:
            rows = aggregate(rows, config.transformation.aggregation, run_id)

        async with state.lock, self._batch_slots:
            if self._stopped:
                report.status = "stopped"
                return report
            delivered = await self._send(state, config, rows, run_id, lane, report)
        if delivered:
            report.delivered = len(selection.records)
            report.synthetic_delivered = selection.synthetic
            report.record_ids = [r.record_id for r in selection.records]
            state.delivered_records += report.delivered
            self._count_throughput(report.delivered)
        return report

    async def _send(
        self,
        state: _TargetState,
        config: TargetConfig,
        rows: list[dict],
        run_id: str | None,
        lane: Lane,
        report: TargetDeliveryReport,
    ) -> bool:
        """One delivery under retry; the caller holds the target lock."""
        batch = DeliveryBatch(
            target_id=config.target_id,
            run_id=run_id,
            delivery_id=delivery_id_for(config.target_id, run_id, rows),
            lane=lane,
            rows=rows,
        )
        report.delivery_id = batch.delivery_id
        report.rows_sent = len(rows)
        started = time.perf_counter()
        try:
            result = await retry_with_backoff(
                lambda: state.adapter.accept(batch),
                max_attempts=config.retry_limit or self.settings.distribution_retry_attempts,
                base_delay=self.settings.distribution_retry_base_delay_seconds,
                timeout=config.timeout_seconds or self.settings.distribution_timeout_seconds,
                event="distribution.delivery_attempt_failed",
                target_id=config.target_id,
                run_id=run_id,
            )
        except RetryExhaustedError as e:
            error = str(e.last_error) or type(e.last_error).__name__
            report.status = "failed"
            report.attempts = e.attempts
            report.error = error
            state.failures += 1
            state.last_error = error
            await self._mark_degraded(state, run_id, error, e.attempts, batch.record_ids)
            return False

        latency_ms = (time.perf_counter() - started) * 1000
        report.status = "delivered"
        report.attempts = result.attempts
        report.latency_ms = round(latency_ms, 3)
        state.deliveries += 1
        state.latency_total_ms += latency_ms
        state.last_delivery_at = utcnow()
        logger.info(
            "distribution.target_delivered",
            target_id=config.target_id,
            run_id=run_id,
            lane=lane,
            rows=len(rows),
            accepted=result.value.accepted,
            duplicates=result.value.duplicates,
            attempts=result.attempts,
            latency_ms=report.latency_ms,
        )
        if state.health == "degraded":
            await self._mark_healthy(state, run_id)
        return True

    def _count_throughput(self, count: int) -> None:
        self._delivered_total += count
        now = time.monotonic()
        self._delivered.append((now, count))
        while self._delivered and now - self._delivered[0][0] > THROUGHPUT_WINDOW_SECONDS:
            self._delivered.popleft()

    # ------------------------------------------------------------------
    # Health and holds
    # ------------------------------------------------------------------

    async def _mark_degraded(
        self,
        state: _TargetState,
        run_id: str | None,
        error: str,
        attempts: int,
        record_ids: list[str],
    ) -> None:
        became_degraded = state.health != "degraded"
        state.health = "degraded"
        logger.error(
            "distribution.target_degraded",
            target_id=state.config.target_id,
            run_id=run_id,
            attempts=attempts,
            error=error,
            undelivered=len(record_ids),
        )
        await self.audit(
            AuditEvent(
                kind=AuditKind.TARGET_HEALTH,
                severity="critical" if became_degraded else "warning",
                run_id=run_id,
                target_id=state.config.target_id,
                message=f"Delivery failed after {attempts} attempt(s): {error}",
                details={"health": "degraded", "attempts": attempts, "record_ids": record_ids},
            )
        )

    async def _mark_healthy(self, state: _TargetState, run_id: str | None) -> None:
        state.health = "healthy"
        logger.info(
            "distribution.target_recovered", target_id=state.config.target_id, run_id=run_id
        )
        await self.audit(
            AuditEvent(
                kind=AuditKind.TARGET_HEALTH,
                run_id=run_id,
                target_id=state.config.target_id,
                message="Target recovered",
                details={"health": "healthy"},
            )
        )

    async def _record_holds(
        self,
        config: TargetConfig,
        run_id: str | None,
        holds: list[HoldEntry],
        bias_reports: Mapping[str, BiasReport],
    ) -> None:
        by_reason: dict[str, list[HoldEntry]] = {}
        for hold in holds:
            by_reason.setdefault(hold.reason, []).append(hold)

        for reason, entries in by_reason.items():
            error: SeedFlowError
            if reason == "governance":
                policies = Counter(p for h in entries for p in h.policies)
                error = GovernanceViolationError(
                    ",".join(sorted(policies)),
                    f"{len(entries)} record(s) held from '{config.target_id}' by blocking policies",
                    details={"policy_counts": dict(policies)},
                )
            else:
                tiers = {
                    s: r.risk_tier
                    for s, r in bias_reports.items()
                    if any(h.schema_name == s for h in entries)
                }
                error = BiasRiskError(
                    max_tier(list(tiers.values())) if tiers else "high",
                    f"{len(entries)} record(s) held from bias-sensitive '{config.target_id}'",
                    details={"schemas": tiers},
                )
            logger.warning(
                "distribution.records_held",
                target_id=config.target_id,
                run_id=run_id,
                reason=reason,
                count=len(entries),
                code=error.code,
            )
            await self.audit(
                AuditEvent(
                    kind=AuditKind.HOLD,
                    severity="warning",
                    run_id=run_id,
                    target_id=config.target_id,
                    message=error.message,
                    details={
                        "code": error.code,
                        "reason": reason,
                        **error.details,
                        "record_ids": [h.record_id for h in entries],
                    },
                )
            )

    # ------------------------------------------------------------------
    # Real-time lane
    # ------------------------------------------------------------------

    async def trigger_realtime(
        self,
        record: CanonicalRecord,
        *,
        run_id: str | None = None,
        bias_reports: Mapping[str, BiasReport] | None = None,
        targets: Collection[str] | None = None,
    ) -> list[RealtimeResult]:
        """Offer a record to every real-time target accepting its schema.

        Eligible records are queued; a full queue answers ``backpressure``
        and is audited. The synthetic ratio is enforced over everything
        queued for the target since the lane started.

        Args:
            record: Scored canonical record.
            run_id: Run the record belongs to.
            bias_reports: Bias report per schema for the run.
            targets: Restrict the offer to these target ids (None = all).
        """
        offers = await self._trigger(record, run_id, bias_reports or {}, targets)
        return [result for result, _ in offers]

    async def _trigger(
        self,
        record: CanonicalRecord,
        run_id: str | None,
        bias_reports: Mapping[str, BiasReport],
        targets: Collection[str] | None,
    ) -> list[tuple[RealtimeResult, list[HoldEntry]]]:
        offers: list[tuple[RealtimeResult, list[HoldEntry]]] = []
        for state in list(self._targets.values()):
            config = state.config
            if targets is not None and config.target_id not in targets:
                continue
            if (
                config.priority == "realtime"
                and config.enabled
                and config.accepts(record.schema_name)
            ):
                status, reason, holds = await self._offer(state, record, run_id, bias_reports)
                result = RealtimeResult(
                    target_id=config.target_id,
                    record_id=record.record_id,
                    status=status,
                    queue_depth=state.queue_depth,
                    reason=reason,
                )
                offers.append((result, holds))
        return offers

    async def stream(
        self,
        records: Sequence[CanonicalRecord],
        *,
        run_id: str | None = None,
        bias_reports: Mapping[str, BiasReport] | None = None,
        targets: Iterable[str] | None = None,
    ) -> dict[str, TargetDeliveryReport]:
        """Feed a run's records to its real-time targets in order.

        Records are only queued here; the real-time workers deliver them.
        Batch-class targets are skipped.

        Returns:
            One ``realtime`` lane report per real-time target, counting
            queued, held, filtered, trimmed and backpressured records.

        Raises:
            NotFoundError: If ``targets`` names an unregistered target.
        """
        live = [
            tid for tid, config in self._snapshot(targets).items() if config.priority == "realtime"
        ]
        reports = {
            tid: TargetDeliveryReport(target_id=tid, run_id=run_id, lane="realtime") for tid in live
        }
        if not live:
            return reports
        for tid in live:
            if not self._targets[tid].config.enabled:
                reports[tid].status = "disabled"

        for record in records:
            for result, holds in await self._trigger(record, run_id, bias_reports or {}, live):
                report = reports[result.target_id]
                report.candidates += 1
                if result.status == "queued":
                    report.queued += 1
                    report.record_ids.append(result.record_id)
                elif result.status == "held":
                    report.held += 1
                    report.holds.extend(holds)
                elif result.status == "filtered":
                    report.filtered += 1
                    reason = result.reason or "filtered"
                    report.excluded[reason] = report.excluded.get(reason, 0) + 1
                elif result.status == "trimmed":
                    report.trimmed += 1
                elif result.status == "backpressure":
                    report.backpressure += 1
                else:
                    report.status = "stopped"

        for report in reports.values():
            if report.status == "empty" and report.queued:
                report.status = "queued"
        logger.info(
            "distribution.streamed",
            run_id=run_id,
            record_count=len(records),
            queued={tid: r.queued for tid, r in reports.items()},
            backpressure={tid: r.backpressure for tid, r in reports.items() if r.backpressure},
        )
        return reports

    async def _offer(
        self,
        state: _TargetState,
        record: CanonicalRecord,
        run_id: str | None,
        bias_reports: Mapping[str, BiasReport],
    ) -> tuple[RealtimeStatus, str | None, list[HoldEntry]]:
        config = state.config
        if self._stopped:
            return "stopped", None, []

        selection = select_records(
            [record],
            config,
            run_id=run_id,
            bias_reports=bias_reports,
            observed_base=state.realtime_observed,
            synthetic_base=state.realtime_synthetic,
        )
        if selection.holds:
            await self._record_holds(config, run_id, selection.holds, bias_reports)
            return "held", selection.holds[0].reason, selection.holds
        if selection.excluded:
            return "filtered", next(iter(selection.excluded)), []
        if selection.trimmed:
            return "trimmed", "synthetic_ratio", []

        queue = state.ensure_queue()
        try:
            queue.put_nowait(_Pending(record, selection.rows[0], run_id, time.monotonic()))
        except asyncio.QueueFull:
            logger.warning(
                "distribution.backpressure",
                target_id=config.target_id,
                record_id=record.record_id,
                queue_size=queue.maxsize,
            )
            await self.audit(
                AuditEvent(
                    kind=AuditKind.BACKPRESSURE,
                    severity="warning",
                    run_id=run_id,
                    target_id=config.target_id,
                    record_id=record.record_id,
                    message=f"Real-time queue of '{config.target_id}' is full",
                    details={"queue_size": queue.maxsize},
                )
            )
            return "backpressure", None, []

        if record.is_synthetic:
            state.realtime_synthetic += 1
        else:
            state.realtime_observed += 1
        return "queued", None, []

    def _start_worker(self, state: _TargetState) -> None:
        state.worker = asyncio.create_task(
            self._realtime_worker(state), name=f"realtime:{state.config.target_id}"
        )

    async def _stop_worker(self, state: _TargetState) -> None:
        if state.worker is None:
            return
        state.worker.cancel()
        await asyncio.gather(state.worker, return_exceptions=True)
        state.worker = None

    async def _realtime_worker(self, state: _TargetState) -> None:
        queue = state.ensure_queue()
        poll = self.settings.realtime_poll_interval_seconds
        while True:
            if self._stopped:
                await asyncio.sleep(poll)
                continue
            try:
                first = await asyncio.wait_for(queue.get(), timeout=poll)
            except TimeoutError:
                continue

            items = [first]
            while len(items) < REALTIME_MAX_BATCH and not queue.empty():
                items.append(queue.get_nowait())
            try:
                await self._deliver_realtime(state, items)
            except Exception:
                logger.exception(
                    "distribution.realtime_worker_error", target_id=state.config.target_id
                )
            finally:
                for _ in items:
                    queue.task_done()

    async def _deliver_realtime(self, state: _TargetState, items: list[_Pending]) -> None:
        # Consecutive records of the same run go out together; order is kept.
        chunks: list[list[_Pending]] = []
        for item in items:
            if chunks and chunks[-1][0].run_id == item.run_id:
                chunks[-1].append(item)
            else:
                chunks.append([item])

        for chunk in chunks:
            config = state.config
            run_id = chunk[0].run_id
            report = TargetDeliveryReport(
                target_id=config.target_id, run_id=run_id, lane="realtime"
            )
            async with state.lock, self._realtime_slots:
                delivered = await self._send(
                    state, config, [p.row for p in chunk], run_id, "realtime", report
                )
            if not delivered:
                continue
            state.delivered_records += len(chunk)
            self._count_throughput(len(chunk))
            waited = time.monotonic() - chunk[0].enqueued_at
            if waited > self.settings.realtime_sla_seconds:
                logger.warning(
                    "distribution.realtime_sla_missed",
                    target_id=config.target_id,
                    waited_seconds=round(waited, 3),
                    sla_seconds=self.settings.realtime_sla_seconds,
                )

    async def start(self) -> None:
        """Start the real-time workers."""
        if self._running:
            return
        self._running = True
        for state in self._targets.values():
            if state.queue is not None and state.worker is None:
                self._start_worker(state)
        logger.info(
            "distribution.realtime_started",
            workers=self.settings.distribution_realtime_workers,
        )

    async def drain(self) -> None:
        """Wait until every real-time queue is empty."""
        await asyncio.gather(
            *(s.queue.join() for s in self._targets.values() if s.queue is not None)
        )

    async def stop(self) -> None:
        """Stop the real-time workers; queued records stay queued."""
        self._running = False
        for state in self._targets.values():
            await self._stop_worker(state)
        logger.info("distribution.realtime_stopped")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> EngineMetrics:
        now = time.monotonic()
        recent = sum(c for t, c in self._delivered if now - t <= THROUGHPUT_WINDOW_SECONDS)
        depths = {t: s.queue_depth for t, s in self._targets.items() if s.queue is not None}
        return EngineMetrics(
            throughput_per_minute=float(recent) * 60.0 / THROUGHPUT_WINDOW_SECONDS,
            delivered_total=self._delivered_total,
            queue_depth=sum(depths.values()),
            queue_depth_by_target=depths,
            degraded_targets=self.degraded_targets(),
            emergency_stopped=self._stopped,
            realtime_running=self._running,
        )

    async def aclose(self) -> None:
        await self.stop()
        for state in self._targets.values():
            await state.adapter.aclose()

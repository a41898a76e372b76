"""Unified collection pipeline.

Runs every registered connector concurrently on a bounded worker pool,
wraps each call in a timeout plus retry-with-backoff and isolates
failures: a failing source contributes zero records, is marked degraded
and produces a health event, while the rest of the run continues.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from seedflow.core.config import Settings, get_settings
from seedflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    RateLimitedError,
    SourceUnavailableError,
)
from seedflow.core.logging import get_logger
from seedflow.features.collection.connectors import SourceConnector
from seedflow.features.collection.reliability import SourceStats, compute_reliability
from seedflow.features.collection.schemas import (
    CollectionQuery,
    RawRecord,
    SourceCollectionReport,
    SourceInfo,
)
from seedflow.shared.audit import AuditEvent, AuditKind, AuditSink, discard_audit
from seedflow.shared.retry import RetryExhaustedError, retry_with_backoff
from seedflow.shared.utils import utcnow

logger = get_logger(__name__)


@dataclass
class CollectionResult:
    """Records and per-source reports from one collection call."""

    records: list[RawRecord] = field(default_factory=list)
    reports: dict[str, SourceCollectionReport] = field(default_factory=dict)

    @property
    def degraded_sources(self) -> list[str]:
        return sorted(sid for sid, r in self.reports.items() if r.status == "degraded")

    @property
    def partial_sources(self) -> list[str]:
        return sorted(sid for sid, r in self.reports.items() if r.status == "partial")


class CollectionPipeline:
    """Registry of source connectors plus the concurrent collection loop."""

    def __init__(
        self,
        settings: Settings | None = None,
        audit: AuditSink = discard_audit,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings (defaults to cached settings).
            audit: Sink receiving source health events.
        """
        self.settings = settings or get_settings()
        self.audit = audit
        self._sources: dict[str, SourceConnector] = {}
        self._stats: dict[str, SourceStats] = {}
        self._degraded: set[str] = set()
        self._semaphore = asyncio.Semaphore(self.settings.collection_max_workers)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_source(self, connector: SourceConnector) -> None:
        """Register a connector.

        Raises:
            ConflictError: If a source with the same id is already registered.
        """
        if connector.source_id in self._sources:
            raise ConflictError(
                f"Source '{connector.source_id}' is already registered",
                details={"source_id": connector.source_id},
            )
        self._sources[connector.source_id] = connector
        self._stats[connector.source_id] = SourceStats()
        logger.info("collection.source_registered", **connector.describe())

    async def unregister_source(self, source_id: str) -> None:
        connector = self.get_source(source_id)
        await connector.aclose()
        del self._sources[source_id]
        self._stats.pop(source_id, None)
        self._degraded.discard(source_id)
        logger.info("collection.source_unregistered", source_id=source_id)

    def get_source(self, source_id: str) -> SourceConnector:
        try:
            return self._sources[source_id]
        except KeyError:
            raise NotFoundError(
                f"Source '{source_id}' is not registered", details={"source_id": source_id}
            ) from None

    @property
    def source_ids(self) -> list[str]:
        return sorted(self._sources)

    def list_sources(self) -> list[SourceInfo]:
        return [
            SourceInfo(
                source_id=sid,
                connector=connector.connector_type,
                payload_kind=connector.payload_kind,
                reliability=round(self.reliability(sid), 4),
                degraded=sid in self._degraded,
                error_count=connector.error_count,
                rate_limit=connector.rate_limit_state(),
            )
            for sid, connector in sorted(self._sources.items())
        ]

    def degraded_sources(self) -> list[str]:
        return sorted(self._degraded)

    def reset_source(self, source_id: str) -> None:
        """Clear the degraded flag so the next collection retries the source."""
        self.get_source(source_id)
        self._degraded.discard(source_id)

    # ------------------------------------------------------------------
    # Reliability
    # ------------------------------------------------------------------

    def reliability(self, source_id: str) -> float:
        connector = self._sources.get(source_id)
        if connector is None:
            return 0.0
        return compute_reliability(connector.reliability, self._stats[source_id], utcnow())

    def reliability_map(self) -> dict[str, float]:
        return {sid: self.reliability(sid) for sid in self._sources}

    def record_rejections(self, source_id: str, count: int) -> None:
        """Feed normalization rejections back into the source's history."""
        stats = self._stats.get(source_id)
        if stats is not None and count > 0:
            stats.records_rejected += count

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect(
        self,
        source_filter: Iterable[str] | None = None,
        window: CollectionQuery | None = None,
    ) -> CollectionResult:
        """Collect from every matching source concurrently.

        Args:
            source_filter: Source ids to include (None = all registered).
            window: Collection window and parameters.

        Returns:
            CollectionResult with all records and a report per source.

        Raises:
            NotFoundError: If the filter names an unregistered source.
        """
        query = window or CollectionQuery()
        if source_filter is None:
            connectors = list(self._sources.values())
        else:
            connectors = [self.get_source(sid) for sid in dict.fromkeys(source_filter)]

        logger.info(
            "collection.collect_started",
            sources=[c.source_id for c in connectors],
            window_start=query.start.isoformat() if query.start else None,
            window_end=query.end.isoformat() if query.end else None,
        )

        outcomes = await asyncio.gather(*(self._collect_source(c, query) for c in connectors))

        result = CollectionResult()
        for records, report in outcomes:
            result.records.extend(records)
            result.reports[report.source_id] = report

        logger.info(
            "collection.collect_completed",
            record_count=len(result.records),
            degraded=result.degraded_sources,
            partial=result.partial_sources,
        )
        return result

    async def _collect_source(
        self,
        connector: SourceConnector,
        query: CollectionQuery,
    ) -> tuple[list[RawRecord], SourceCollectionReport]:
        source_id = connector.source_id
        stats = self._stats.setdefault(source_id, SourceStats())

        async with self._semaphore:
            started = time.perf_counter()
            records: list[RawRecord] = []
            attempts = 0
            status = "ok"
            error: str | None = None

            try:
                health = await asyncio.wait_for(
                    connector.test_connection(),
                    timeout=self.settings.collection_timeout_seconds,
                )
                if not health.healthy:
                    raise SourceUnavailableError(
                        source_id, health.message or "Health check failed"
                    )

                outcome = await retry_with_backoff(
                    lambda: connector.collect(query),
                    max_attempts=self.settings.collection_retry_attempts,
                    base_delay=self.settings.collection_retry_base_delay_seconds,
                    max_delay=self.settings.collection_retry_max_delay_seconds,
                    timeout=self.settings.collection_timeout_seconds,
                    retry_on=(SourceUnavailableError, OSError),
                    give_up_on=(RateLimitedError,),
                    event="collection.attempt_failed",
                    source_id=source_id,
                )
                records = outcome.value
                attempts = outcome.attempts
            except RateLimitedError as e:
                records = list(e.partial)
                attempts = max(attempts, 1)
                status, error = "partial", e.message
            except RetryExhaustedError as e:
                attempts = e.attempts
                status, error = "degraded", str(e.last_error) or type(e.last_error).__name__
            except TimeoutError:
                attempts = max(attempts, 1)
                status, error = "degraded", "Health check timed out"
            except SourceUnavailableError as e:
                attempts = max(attempts, 1)
                status, error = "degraded", e.message
            except Exception as e:
                # Connector bugs must not take the run down with them.
                logger.error(
                    "collection.connector_crashed",
                    source_id=source_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                connector.record_error()
                attempts = max(attempts, 1)
                status, error = "degraded", f"{type(e).__name__}: {e}"

            latency_ms = round((time.perf_counter() - started) * 1000, 2)

        failed_attempts = attempts - 1 if status == "ok" else attempts
        stats.attempts += attempts
        stats.failures += failed_attempts
        if status != "degraded":
            stats.successes += 1
            stats.records_collected += len(records)
            stats.recent_counts.append(len(records))
            stats.last_success_at = utcnow()

        await self._update_health(source_id, status, error)

        report = SourceCollectionReport(
            source_id=source_id,
            status=status,  # type: ignore[arg-type]
            record_count=len(records),
            latency_ms=latency_ms,
            attempts=attempts,
            error_rate=round(failed_attempts / attempts, 4) if attempts else 0.0,
            error=error,
            reliability=round(self.reliability(source_id), 4),
        )
        logger.info(
            "collection.source_completed",
            source_id=source_id,
            status=status,
            record_count=len(records),
            latency_ms=latency_ms,
            attempts=attempts,
        )
        return records, report

    async def _update_health(self, source_id: str, status: str, error: str | None) -> None:
        if status == "degraded":
            was_degraded = source_id in self._degraded
            self._degraded.add(source_id)
            logger.warning("collection.source_degraded", source_id=source_id, error=error)
            await self.audit(
                AuditEvent(
                    kind=AuditKind.SOURCE_HEALTH,
                    severity="warning",
                    source_id=source_id,
                    message=f"SourceUnavailable: {error}",
                    details={"status": "degraded", "previously_degraded": was_degraded},
                )
            )
        elif source_id in self._degraded:
            self._degraded.discard(source_id)
            logger.info("collection.source_recovered", source_id=source_id)
            await self.audit(
                AuditEvent(
                    kind=AuditKind.SOURCE_HEALTH,
                    source_id=source_id,
                    message="Source recovered",
                    details={"status": status},
                )
            )

    async def aclose(self) -> None:
        for connector in self._sources.values():
            await connector.aclose()

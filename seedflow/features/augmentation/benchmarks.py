"""Sector benchmark providers and benchmark comparison."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

import httpx
import numpy as np
from pydantic import ValidationError

from seedflow.core.exceptions import NotFoundError, SourceUnavailableError
from seedflow.core.logging import get_logger
from seedflow.features.augmentation.schemas import (
    BenchmarkBinding,
    BenchmarkMetric,
    BenchmarkSnapshot,
)
from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.collection.schemas import BenchmarkMetricPayload, RawRecord

logger = get_logger(__name__)

PERCENTILE_POINTS = [10.0, 25.0, 50.0, 75.0, 90.0]


class BenchmarkProvider(ABC):
    """Source of sector benchmark snapshots."""

    def __init__(self, name: str, reliability: float = 0.8) -> None:
        self.name = name
        self.reliability = reliability

    @abstractmethod
    async def fetch(self, sector: str, metrics: Sequence[str]) -> BenchmarkSnapshot:
        """Fetch the latest snapshot for a sector.

        Raises:
            SourceUnavailableError: If the provider cannot be reached.
            NotFoundError: If the provider has no data for the sector.
        """

    async def aclose(self) -> None:
        return None


class StaticBenchmarkProvider(BenchmarkProvider):
    """Provider serving fixed snapshots, keyed by sector."""

    def __init__(
        self, name: str, snapshots: Iterable[BenchmarkSnapshot], reliability: float = 0.8
    ) -> None:
        super().__init__(name, reliability)
        self._snapshots = {s.sector: s for s in snapshots}

    async def fetch(self, sector: str, metrics: Sequence[str]) -> BenchmarkSnapshot:
        snapshot = self._snapshots.get(sector)
        if snapshot is None:
            raise NotFoundError(
                f"No benchmarks for sector '{sector}'",
                details={"provider": self.name, "sector": sector},
            )
        wanted = set(metrics) or set(snapshot.metrics)
        return snapshot.model_copy(
            update={"metrics": {m: v for m, v in snapshot.metrics.items() if m in wanted}}
        )


class HttpBenchmarkProvider(BenchmarkProvider):
    """Provider reading benchmarks from a JSON API.

    Expects ``GET {base_url}/benchmarks/{sector}?metrics=a,b`` to return
    ``{"as_of": ..., "metrics": {"a": {"p10": ..., ..., "p90": ...}}}``.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        path: str = "/benchmarks/{sector}",
        reliability: float = 0.8,
        timeout_seconds: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name, reliability)
        self.path = path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout_seconds, headers=headers
        )

    async def fetch(self, sector: str, metrics: Sequence[str]) -> BenchmarkSnapshot:
        source = f"benchmark:{self.name}"
        params = {"metrics": ",".join(metrics)} if metrics else None
        try:
            response = await self._client.get(self.path.format(sector=sector), params=params)
        except httpx.HTTPError as e:
            raise SourceUnavailableError(source, f"Benchmark request failed: {e}") from e
        if response.status_code == 404:
            raise NotFoundError(
                f"No benchmarks for sector '{sector}'",
                details={"provider": self.name, "sector": sector},
            )
        if response.status_code >= 400:
            raise SourceUnavailableError(
                source, f"Benchmark provider returned HTTP {response.status_code}"
            )
        try:
            body: dict[str, Any] = response.json()
            return BenchmarkSnapshot(
                sector=sector,
                provider=self.name,
                as_of=body["as_of"],
                reliability=self.reliability,
                metrics={
                    name: BenchmarkMetric.model_validate(values)
                    for name, values in body.get("metrics", {}).items()
                },
            )
        except (ValueError, KeyError, ValidationError) as e:
            raise SourceUnavailableError(source, f"Malformed benchmark response: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# =============================================================================
# Comparison
# =============================================================================


def percentile_position(value: float, metric: BenchmarkMetric) -> float:
    """Percentile rank of ``value`` within a benchmark distribution.

    Interpolates linearly between the published percentiles and extrapolates
    with the outer segment slopes, clipped to [0, 100].
    """
    xs = metric.percentiles
    if xs[0] <= value <= xs[-1]:
        if xs[-1] == xs[0]:
            return 50.0
        return float(np.interp(value, xs, PERCENTILE_POINTS))
    if value < xs[0]:
        span = xs[1] - xs[0]
        position = 0.0 if span == 0 else 10.0 - (xs[0] - value) * (15.0 / span)
    else:
        span = xs[-1] - xs[-2]
        position = 100.0 if span == 0 else 90.0 + (value - xs[-1]) * (15.0 / span)
    return float(min(100.0, max(0.0, position)))


def performance_category(percentile: float) -> str:
    if percentile >= 75:
        return "top_quartile"
    if percentile >= 50:
        return "above_median"
    if percentile >= 25:
        return "below_median"
    return "bottom_quartile"


def compare(value: float, metric: BenchmarkMetric) -> dict[str, Any]:
    percentile = percentile_position(value, metric)
    delta = value - metric.p50
    return {
        "percentile": round(percentile, 2),
        "delta": round(delta, 6),
        "delta_pct": round(delta / metric.p50 * 100, 4) if metric.p50 else None,
        "category": performance_category(percentile),
    }


def apply_benchmarks(
    records: Sequence[CanonicalRecord],
    snapshot: BenchmarkSnapshot,
    binding: BenchmarkBinding | None = None,
) -> tuple[list[CanonicalRecord], int]:
    """Attach benchmark comparison fields to matching records.

    Derived fields are ``benchmark.<metric>.percentile``, ``.delta``,
    ``.delta_pct`` and ``.category`` plus ``benchmark.sector``.

    Returns:
        Tuple of (records, number of records compared).
    """
    schemas = set(binding.schemas) if binding and binding.schemas else None
    updated: list[CanonicalRecord] = []
    compared = 0
    for record in records:
        if record.schema_name == "sector_benchmark" or (
            schemas is not None and record.schema_name not in schemas
        ):
            updated.append(record)
            continue
        derived: dict[str, Any] = {}
        for name, metric in snapshot.metrics.items():
            field = binding.field_for(name) if binding else name
            value = record.fields.get(field)
            if not isinstance(value, int | float) or isinstance(value, bool):
                continue
            for key, result in compare(float(value), metric).items():
                derived[f"benchmark.{name}.{key}"] = result
        if not derived:
            updated.append(record)
            continue
        derived["benchmark.sector"] = snapshot.sector
        derived["benchmark.provider"] = snapshot.provider
        compared += 1
        updated.append(record.model_copy(update={"derived": {**record.derived, **derived}}))
    return updated, compared


def benchmark_records(snapshot: BenchmarkSnapshot, collected_at: datetime) -> list[RawRecord]:
    """Raw ``benchmark_metric`` records for the sector_benchmark schema."""
    records = []
    for name, metric in sorted(snapshot.metrics.items()):
        payload = BenchmarkMetricPayload(
            sector=snapshot.sector,
            metric=name,
            p10=metric.p10,
            p25=metric.p25,
            p50=metric.p50,
            p75=metric.p75,
            p90=metric.p90,
            sample_size=metric.sample_size,
            as_of=snapshot.as_of,
            provider=snapshot.provider,
        )
        records.append(
            RawRecord(
                source_id=f"benchmark:{snapshot.provider}",
                source_key=f"{snapshot.sector}:{name}",
                collected_at=collected_at,
                payload=payload,
                provenance="benchmark",
                provenance_chain=(
                    f"benchmark:{snapshot.provider}",
                    f"as_of:{snapshot.as_of.isoformat()}",
                ),
                raw_confidence=snapshot.reliability,
            )
        )
    return records

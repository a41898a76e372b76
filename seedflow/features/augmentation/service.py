"""Augmentation stage: synthetic gap filling and benchmark comparison."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from seedflow.core.config import Settings, get_settings
from seedflow.core.exceptions import NotFoundError, SeedFlowError
from seedflow.core.logging import get_logger
from seedflow.features.augmentation.benchmarks import (
    BenchmarkProvider,
    apply_benchmarks,
    benchmark_records,
)
from seedflow.features.augmentation.schemas import (
    AugmentationReport,
    BenchmarkBinding,
    BenchmarkSnapshot,
    GapRequirement,
)
from seedflow.features.augmentation.synthetic import (
    fill_gaps,
    generate_synthetic,
    identify_gaps,
    observed_values,
)
from seedflow.features.cleaning.schemas import CanonicalRecord, QuarantinedRecord
from seedflow.features.collection.schemas import RawRecord
from seedflow.shared.audit import AuditEvent, AuditKind, AuditSink, discard_audit
from seedflow.shared.synthetic import DistributionRule, SyntheticTemplate, TemplatePreset
from seedflow.shared.utils import utcnow

logger = get_logger(__name__)

Normalizer = Callable[[list[RawRecord]], tuple[list[CanonicalRecord], list[QuarantinedRecord]]]


@dataclass
class AugmentationOutcome:
    records: list[CanonicalRecord]
    quarantined: list[QuarantinedRecord] = field(default_factory=list)
    snapshots: list[BenchmarkSnapshot] = field(default_factory=list)
    report: AugmentationReport = field(default_factory=AugmentationReport)


class AugmentationService:
    """Synthetic templates, gap requirements and benchmark providers."""

    def __init__(self, settings: Settings | None = None, audit: AuditSink = discard_audit) -> None:
        self.settings = settings or get_settings()
        self.audit = audit
        self._templates: dict[str, SyntheticTemplate] = {
            preset.value: SyntheticTemplate.from_preset(preset, seed=self.settings.synthetic_seed)
            for preset in TemplatePreset
        }
        self._providers: dict[str, BenchmarkProvider] = {}
        self.requirements: list[GapRequirement] = []
        self.bindings: list[BenchmarkBinding] = []

    # ------------------------------------------------------------------
    # Registries
    # ------------------------------------------------------------------

    def register_template(self, template: SyntheticTemplate) -> None:
        self._templates[template.name] = template

    def get_template(self, name: str) -> SyntheticTemplate:
        try:
            return self._templates[name]
        except KeyError:
            raise NotFoundError(f"Unknown synthetic template '{name}'", details={"template": name}) from None

    def template_names(self) -> list[str]:
        return sorted(self._templates)

    def register_provider(self, provider: BenchmarkProvider) -> None:
        self._providers[provider.name] = provider

    def set_gap_requirements(self, requirements: Sequence[GapRequirement]) -> None:
        for requirement in requirements:
            self.get_template(requirement.template)
        self.requirements = list(requirements)

    def set_benchmark_bindings(self, bindings: Sequence[BenchmarkBinding]) -> None:
        self.bindings = list(bindings)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def generate_synthetic(
        self, template: str, count: int, now: datetime | None = None
    ) -> list[RawRecord]:
        return generate_synthetic(self.get_template(template), count, now=now)

    async def fetch_benchmark(
        self, provider: str, sector: str, metrics: Sequence[str], now: datetime | None = None
    ) -> BenchmarkSnapshot | None:
        """Fetch a snapshot; stale snapshots are reported and excluded (None).

        Raises:
            NotFoundError: If the provider is not registered.
            SourceUnavailableError: If the provider cannot be reached.
        """
        source = self._providers.get(provider)
        if source is None:
            raise NotFoundError(
                f"Unknown benchmark provider '{provider}'", details={"provider": provider}
            )
        snapshot = await asyncio.wait_for(
            source.fetch(sector, metrics), timeout=self.settings.collection_timeout_seconds
        )
        age = snapshot.age_hours(now or utcnow())
        if age > self.settings.benchmark_max_age_hours:
            logger.warning(
                "augmentation.benchmark_stale",
                provider=provider,
                sector=sector,
                age_hours=round(age, 1),
                max_age_hours=self.settings.benchmark_max_age_hours,
            )
            await self.audit(
                AuditEvent(
                    kind=AuditKind.BENCHMARK_STALE,
                    severity="warning",
                    source_id=f"benchmark:{provider}",
                    message=f"Benchmark for '{sector}' is {age:.0f}h old and was excluded",
                    details={"as_of": snapshot.as_of.isoformat(), "sector": sector},
                )
            )
            return None
        return snapshot

    def _template_fields(self, template: SyntheticTemplate) -> list[str]:
        return [r.field for r in template.rules if isinstance(r, DistributionRule)]

    async def augment(
        self,
        records: Sequence[CanonicalRecord],
        normalizer: Normalizer,
        *,
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> AugmentationOutcome:
        """Fill gaps with synthetic records and attach benchmark comparisons.

        Args:
            records: Cleaned canonical records of the run.
            normalizer: Maps raw synthetic and benchmark records to canonical
                records and quarantined records.
            run_id: Run being augmented.
            now: Reference time.

        Returns:
            AugmentationOutcome whose records are the observed records plus
            the new synthetic and benchmark records.
        """
        now = now or utcnow()
        report = AugmentationReport()
        new_raw: list[RawRecord] = []

        gaps = identify_gaps(records, self.requirements, self.settings.synthetic_max_ratio)
        report.gaps = gaps
        if gaps:
            observed = {
                gap.schema_name: observed_values(
                    records, gap.schema_name, self._template_fields(self.get_template(gap.template))
                )
                for gap in gaps
            }
            synthetic = await asyncio.to_thread(
                fill_gaps, gaps, self._templates, observed=observed, now=now
            )
            report.synthetic_generated = len(synthetic)
            for gap in gaps:
                realism = next(
                    (r.raw_confidence for r in synthetic if r.source_id == f"synthetic:{gap.template}"),
                    None,
                )
                if realism is not None:
                    report.realism[gap.template] = realism
            new_raw.extend(synthetic)

        snapshots: list[tuple[BenchmarkBinding, BenchmarkSnapshot]] = []
        for binding in self.bindings:
            label = f"{binding.provider}:{binding.sector}"
            try:
                snapshot = await self.fetch_benchmark(
                    binding.provider, binding.sector, binding.metrics, now
                )
            except (SeedFlowError, TimeoutError) as e:
                logger.warning("augmentation.benchmark_unavailable", binding=label, error=str(e))
                report.unavailable_benchmarks.append(label)
                continue
            if snapshot is None:
                report.stale_benchmarks.append(label)
                continue
            report.benchmark_snapshots.append(label)
            snapshots.append((binding, snapshot))
            bench = benchmark_records(snapshot, now)
            report.benchmark_records += len(bench)
            new_raw.extend(bench)

        normalized, quarantined = normalizer(new_raw) if new_raw else ([], [])
        augmented = [*records, *normalized]
        for binding, snapshot in snapshots:
            augmented, compared = apply_benchmarks(augmented, snapshot, binding)
            report.compared_records += compared

        logger.info(
            "augmentation.completed",
            run_id=run_id,
            gaps=[g.schema_name for g in gaps],
            synthetic_generated=report.synthetic_generated,
            benchmark_records=report.benchmark_records,
            compared_records=report.compared_records,
            stale=report.stale_benchmarks,
        )
        return AugmentationOutcome(
            records=augmented,
            quarantined=quarantined,
            snapshots=[s for _, s in snapshots],
            report=report,
        )

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

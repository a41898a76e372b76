"""Synthetic gap filling and sector benchmark augmentation."""

from seedflow.features.augmentation.benchmarks import (
    BenchmarkProvider,
    HttpBenchmarkProvider,
    StaticBenchmarkProvider,
    apply_benchmarks,
    benchmark_records,
    percentile_position,
)
from seedflow.features.augmentation.schemas import (
    AugmentationReport,
    BenchmarkBinding,
    BenchmarkMetric,
    BenchmarkSnapshot,
    Gap,
    GapRequirement,
)
from seedflow.features.augmentation.service import AugmentationOutcome, AugmentationService
from seedflow.features.augmentation.synthetic import (
    fill_gaps,
    generate_synthetic,
    identify_gaps,
    synthetic_cap,
)

__all__ = [
    "AugmentationOutcome",
    "AugmentationReport",
    "AugmentationService",
    "BenchmarkBinding",
    "BenchmarkMetric",
    "BenchmarkProvider",
    "BenchmarkSnapshot",
    "Gap",
    "GapRequirement",
    "HttpBenchmarkProvider",
    "StaticBenchmarkProvider",
    "apply_benchmarks",
    "benchmark_records",
    "fill_gaps",
    "generate_synthetic",
    "identify_gaps",
    "percentile_position",
    "synthetic_cap",
]

"""Hot-reloadable distribution configuration file.

The YAML file at ``distribution_config_path`` holds the target registry
(thresholds, priority class, policy bindings, bias sensitivity), the batch
schedule and the pipeline wiring around it: sources, governance policies,
synthetic gap requirements and benchmark bindings. It is re-read when its
modification time changes; the new configuration applies to deliveries
started afterwards.

Example:
    batch_schedule_seconds: 900
    targets:
      - target_id: content_engine
        schemas: [content_performance]
        method: store_and_poll
        min_quality: 0.7
        policy_bindings: [pii_detection, consent_scope]
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from seedflow.core.exceptions import ValidationError
from seedflow.core.logging import get_logger
from seedflow.features.augmentation.schemas import (
    BenchmarkBinding,
    BenchmarkSnapshot,
    GapRequirement,
)
from seedflow.features.distribution.schemas import TargetConfig

logger = get_logger(__name__)


class PolicySpec(BaseModel):
    """Governance policy built from a preset."""

    preset: str
    enforcement: Literal["advisory", "blocking"] | None = None
    schemas: list[str] | None = None
    params: dict[str, Any] = Field(default_factory=dict)


class BenchmarkProviderSpec(BaseModel):
    """Benchmark provider definition."""

    name: str
    type: Literal["http", "static"] = "http"
    base_url: str | None = None
    path: str = "/benchmarks/{sector}"
    reliability: float = Field(0.8, ge=0.0, le=1.0)
    headers: dict[str, str] = Field(default_factory=dict)
    snapshots: list[BenchmarkSnapshot] = Field(default_factory=list)


class DistributionConfigFile(BaseModel):
    """Parsed contents of the distribution configuration file."""

    batch_schedule_seconds: int | None = Field(None, ge=1)
    targets: list[TargetConfig] = Field(default_factory=list)
    sources: list[dict[str, Any]] = Field(
        default_factory=list, description="Connector definitions (see build_connector)"
    )
    policies: list[PolicySpec] | None = Field(
        None, description="Governance policies (None keeps the current set)"
    )
    gaps: list[GapRequirement] = Field(default_factory=list)
    benchmark_providers: list[BenchmarkProviderSpec] = Field(default_factory=list)
    benchmarks: list[BenchmarkBinding] = Field(default_factory=list)


def parse_distribution_config(data: Any, source: str = "<memory>") -> DistributionConfigFile:
    """Validate a parsed YAML document.

    Raises:
        ValidationError: If the document does not describe a valid configuration.
    """
    if data is None:
        return DistributionConfigFile()
    if not isinstance(data, dict):
        raise ValidationError(
            "Distribution configuration must be a mapping",
            details={"path": source, "type": type(data).__name__},
        )
    try:
        return DistributionConfigFile.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid distribution configuration",
            details={"path": source, "errors": e.errors(include_url=False, include_context=False)},
        ) from e


def load_distribution_config(path: str | Path) -> DistributionConfigFile:
    """Load and validate the configuration file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValidationError: If the YAML is malformed or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(
            "Distribution configuration is not valid YAML",
            details={"path": str(path), "error": str(e)},
        ) from e
    return parse_distribution_config(data, str(path))


class ConfigWatcher:
    """Reloads the configuration file when its modification time changes."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.current: DistributionConfigFile | None = None
        self._mtime: float | None = None

    def _stat(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def changed(self) -> bool:
        mtime = self._stat()
        return mtime is not None and mtime != self._mtime

    def poll(self, force: bool = False) -> DistributionConfigFile | None:
        """Return the new configuration if the file changed since the last load.

        A file that fails validation is logged and skipped; the previous
        configuration stays active until a valid version is written.

        Args:
            force: Reload even if the modification time is unchanged.

        Raises:
            ValidationError: If ``force`` is set and the file is invalid.
        """
        mtime = self._stat()
        if mtime is None:
            if force:
                raise FileNotFoundError(f"Config file not found: {self.path}")
            return None
        if not force and mtime == self._mtime:
            return None

        try:
            config = load_distribution_config(self.path)
        except ValidationError as e:
            # Remember the broken version so it is reported once.
            self._mtime = mtime
            logger.error("distribution.config_invalid", path=str(self.path), error=e.message)
            if force:
                raise
            return None

        self._mtime = mtime
        self.current = config
        logger.info(
            "distribution.config_loaded",
            path=str(self.path),
            targets=[t.target_id for t in config.targets],
            sources=len(config.sources),
        )
        return config

"""Synthetic records and gap filling."""

from __future__ import annotations

import math
import sys
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime

from seedflow.features.augmentation.schemas import Gap, GapRequirement
from seedflow.features.cleaning.schemas import CanonicalRecord
from seedflow.features.collection.schemas import RawRecord, build_payload
from seedflow.shared.synthetic import SyntheticGenerator, SyntheticTemplate
from seedflow.shared.utils import utcnow


def synthetic_source_id(template: SyntheticTemplate) -> str:
    return f"synthetic:{template.name}"


def generate_synthetic(
    template: SyntheticTemplate,
    count: int,
    *,
    observed: Mapping[str, Sequence[float]] | None = None,
    offset: int = 0,
    now: datetime | None = None,
) -> list[RawRecord]:
    """Generate ``count`` synthetic raw records from a template.

    Every record is tagged ``provenance="synthetic"``, names its template and
    seed in the provenance chain and carries the realism estimate as its raw
    confidence.
    """
    if count <= 0:
        return []
    now = now or utcnow()
    result = SyntheticGenerator(template, now).generate(count, observed, offset)
    realism = round(min(1.0, max(0.0, result.realism_score)), 6)

    records = []
    for row in result.rows:
        payload, extra = build_payload(template.kind, row)
        records.append(
            RawRecord(
                source_id=synthetic_source_id(template),
                source_key=str(row[template.key_field]),
                collected_at=now,
                payload=payload,  # type: ignore[arg-type]
                extra=extra,
                provenance="synthetic",
                provenance_chain=(f"synthetic:template:{template.name}", f"seed:{template.seed}"),
                raw_confidence=realism,
            )
        )
    return records


def synthetic_cap(observed: int, max_ratio: float) -> int:
    """Largest synthetic count keeping synthetic / (observed + synthetic) <= max_ratio."""
    if max_ratio <= 0 or observed <= 0:
        return 0
    if max_ratio >= 1:
        return sys.maxsize
    # Epsilon for float error at exact ratios, e.g. 0.3 * 70 / 0.7.
    return math.floor(max_ratio * observed / (1 - max_ratio) + 1e-9)


def identify_gaps(
    records: Sequence[CanonicalRecord],
    requirements: Sequence[GapRequirement],
    max_ratio: float,
) -> list[Gap]:
    """Schemas whose observed volume falls below their requirement."""
    observed = Counter(r.schema_name for r in records if r.provenance == "observed")
    gaps = []
    for requirement in requirements:
        count = observed.get(requirement.schema_name, 0)
        deficit = requirement.min_records - count
        if deficit <= 0:
            continue
        allowed = synthetic_cap(count, max_ratio)
        gaps.append(
            Gap(
                schema_name=requirement.schema_name,
                template=requirement.template,
                observed=count,
                required=requirement.min_records,
                deficit=deficit,
                allowed=min(allowed, deficit),
            )
        )
    return gaps


def observed_values(
    records: Sequence[CanonicalRecord], schema_name: str, fields: Sequence[str]
) -> dict[str, list[float]]:
    """Observed numeric values per field, for realism comparison."""
    values: dict[str, list[float]] = {name: [] for name in fields}
    for record in records:
        if record.schema_name != schema_name or record.provenance != "observed":
            continue
        for name in fields:
            value = record.fields.get(name)
            if isinstance(value, int | float) and not isinstance(value, bool):
                values[name].append(float(value))
    return {k: v for k, v in values.items() if v}


def fill_gaps(
    gaps: Sequence[Gap],
    templates: Mapping[str, SyntheticTemplate],
    *,
    observed: Mapping[str, Mapping[str, Sequence[float]]] | None = None,
    now: datetime | None = None,
) -> list[RawRecord]:
    """Generate synthetic records for identified gaps only.

    Raises:
        KeyError: If a gap names an unknown template.
    """
    records: list[RawRecord] = []
    for gap in gaps:
        if gap.planned <= 0:
            continue
        template = templates[gap.template]
        records.extend(
            generate_synthetic(
                template,
                gap.planned,
                observed=(observed or {}).get(gap.schema_name),
                now=now,
            )
        )
    return records

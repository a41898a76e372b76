"""Per-target transformation of delivery rows."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np

from seedflow.features.distribution.schemas import AggregationRule, TransformationRule
from seedflow.shared.utils import content_hash

# Identity columns that survive any mapping or column selection.
ALWAYS_KEPT = ("record_id", "run_id")


def map_row(row: Mapping[str, Any], rule: TransformationRule) -> dict[str, Any]:
    """Rename columns and apply the column selection."""
    mapped = {rule.field_mapping.get(key, key): value for key, value in row.items()}
    if rule.include is None:
        return mapped
    keep = set(rule.include) | set(ALWAYS_KEPT)
    return {key: value for key, value in mapped.items() if key in keep}


def passes_filters(row: Mapping[str, Any], rule: TransformationRule) -> bool:
    return all(f.matches(row) for f in rule.filters)


def _numeric(values: list[Any]) -> np.ndarray:
    return np.array(
        [float(v) for v in values if isinstance(v, int | float) and not isinstance(v, bool)],
        dtype=float,
    )


def aggregate(
    rows: Sequence[Mapping[str, Any]], rule: AggregationRule, run_id: str | None = None
) -> list[dict[str, Any]]:
    """Group rows and compute the configured measures.

    Each output row carries a deterministic ``record_id`` derived from the
    run and the group key, so a redelivered aggregate is recognisable.
    Non-numeric values are ignored by sum, mean, min and max.
    """
    groups: dict[tuple[Any, ...], list[Mapping[str, Any]]] = {}
    for row in rows:
        key = tuple(row.get(column) for column in rule.group_by)
        groups.setdefault(key, []).append(row)

    output = []
    for key, members in groups.items():
        out: dict[str, Any] = dict(zip(rule.group_by, key, strict=True))
        for measure in rule.measures:
            if measure.fn == "count":
                out[measure.name] = len(members)
                continue
            values = _numeric([m.get(measure.field) for m in members])
            if values.size == 0:
                out[measure.name] = None
            elif measure.fn == "sum":
                out[measure.name] = round(float(values.sum()), 6)
            elif measure.fn == "mean":
                out[measure.name] = round(float(values.mean()), 6)
            elif measure.fn == "min":
                out[measure.name] = float(values.min())
            else:
                out[measure.name] = float(values.max())
        out["record_id"] = content_hash({"run_id": run_id, "group": list(key)})
        out["run_id"] = run_id
        output.append(out)
    return output

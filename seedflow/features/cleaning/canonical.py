"""Declarative canonical schemas.

A canonical schema says which raw payload kinds it accepts, how native
fields map onto canonical fields (with type coercion and ranges), which
fields are derived, which consistency rules must hold and how the records
are weighted for quality and checked for bias.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from seedflow.core.exceptions import ConflictError, NotFoundError
from seedflow.shared.synthetic.generators import Formula

FieldType = Literal["str", "int", "float", "bool", "datetime"]

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class FieldMapping:
    """Maps a native field onto a canonical field.

    Attributes:
        source: Dotted path into the raw record. Plain names look in the
            payload first, then in ``extra``; ``payload.x`` and ``extra.a.b``
            are explicit; ``$source_key`` and ``$collected_at`` read record
            metadata. Alternatives separated by ``|`` are tried in order.
        target: Canonical field name.
        type: Canonical type to coerce to.
        required: Records missing the field are rejected by the schema.
        default: Value used when the source is missing.
        minimum: Inclusive lower bound (validity check, value is kept).
        maximum: Inclusive upper bound (validity check, value is kept).
        choices: Allowed values (validity check, value is kept).
        pattern: Regex a string value must fully match (validity check).
    """

    source: str
    target: str
    type: FieldType = "str"
    required: bool = False
    default: Any = None
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[Any, ...] | None = None
    pattern: str | None = None

    @property
    def paths(self) -> list[str]:
        return [p.strip() for p in self.source.split("|") if p.strip()]

    @property
    def roots(self) -> set[str]:
        """Top-level native names read by this mapping."""
        roots = set()
        for path in self.paths:
            parts = path.split(".")
            if parts[0] in ("payload", "extra") and len(parts) > 1:
                roots.add(parts[1])
            else:
                roots.add(parts[0])
        return roots


@dataclass(frozen=True)
class DerivedField:
    """Canonical field computed from mapped fields after coercion."""

    target: str
    expression: str
    only_if_missing: bool = False
    decimals: int = 6

    def formula(self) -> Formula:
        return Formula(self.expression)


@dataclass(frozen=True)
class ConsistencyRule:
    """Relation between two canonical fields, e.g. ``reach <= impressions``."""

    left: str
    op: Literal["<", "<=", ">", ">=", "==", "!="]
    right: str

    @property
    def name(self) -> str:
        return f"{self.left} {self.op} {self.right}"

    def check(self, fields: dict[str, Any]) -> bool | None:
        """Evaluate the rule; None when either side is missing."""
        left, right = fields.get(self.left), fields.get(self.right)
        if left is None or right is None:
            return None
        try:
            return bool(_COMPARATORS[self.op](left, right))
        except TypeError:
            return False


@dataclass(frozen=True)
class BiasConfig:
    """How bias is measured for a schema.

    The outcome is positive when ``outcome_field`` is truthy (booleans) or
    at least ``positive_threshold`` (numbers).
    """

    sensitive_attributes: tuple[str, ...] = ()
    outcome_field: str | None = None
    positive_threshold: float | None = None

    def outcome(self, fields: dict[str, Any]) -> bool | None:
        if self.outcome_field is None:
            return None
        value = fields.get(self.outcome_field)
        if value is None:
            return None
        if isinstance(value, bool) or self.positive_threshold is None:
            return bool(value)
        try:
            return float(value) >= self.positive_threshold
        except (TypeError, ValueError):
            return None


@dataclass
class CanonicalSchema:
    """A canonical schema definition."""

    name: str
    accepts: frozenset[str]
    entity_key: tuple[str, ...]
    fields: list[FieldMapping]
    observed_at_field: str | None = None
    derived: list[DerivedField] = field(default_factory=list)
    consistency: list[ConsistencyRule] = field(default_factory=list)
    quality_weights: dict[str, float] | None = None
    freshness_hours: float = 24.0 * 7
    bias: BiasConfig = field(default_factory=BiasConfig)
    version: int = 1
    description: str = ""

    def __post_init__(self) -> None:
        targets = {m.target for m in self.fields}
        missing = [k for k in self.entity_key if k not in targets]
        if missing:
            raise ValueError(f"Schema '{self.name}' entity key uses unmapped fields: {missing}")
        optional_keys = [m.target for m in self.fields if m.target in self.entity_key and not m.required]
        if optional_keys:
            raise ValueError(f"Schema '{self.name}' entity key fields must be required: {optional_keys}")

    @property
    def field_names(self) -> list[str]:
        return list(dict.fromkeys([m.target for m in self.fields] + [d.target for d in self.derived]))

    def mapping_for(self, target: str) -> FieldMapping | None:
        return next((m for m in self.fields if m.target == target), None)


# =============================================================================
# Built-in schemas
# =============================================================================


def content_performance_schema() -> CanonicalSchema:
    """Social content performance (engagement analytics)."""
    counters = ["impressions", "reach", "likes", "comments", "shares", "saves", "follower_count"]
    return CanonicalSchema(
        name="content_performance",
        description="Per-post engagement metrics across social platforms",
        accepts=frozenset({"social_post"}),
        entity_key=("platform", "post_id"),
        observed_at_field="posted_at",
        fields=[
            FieldMapping("platform", "platform", required=True),
            FieldMapping("post_id|$source_key", "post_id", required=True),
            FieldMapping("author", "author"),
            FieldMapping(
                "content_type",
                "content_type",
                choices=("image", "video", "carousel", "story", "text", "reel", "link"),
            ),
            FieldMapping("text", "text"),
            FieldMapping("posted_at", "posted_at", type="datetime"),
            *[FieldMapping(name, name, type="int", minimum=0) for name in counters],
            FieldMapping("engagement_rate", "engagement_rate", type="float", minimum=0, maximum=100),
            FieldMapping("audience_segment", "audience_segment"),
            FieldMapping("region", "region"),
        ],
        derived=[
            DerivedField(
                "engagement_rate",
                "(likes + comments + shares) / impressions * 100",
                only_if_missing=True,
            ),
        ],
        consistency=[
            ConsistencyRule("reach", "<=", "impressions"),
            ConsistencyRule("likes", "<=", "impressions"),
        ],
        freshness_hours=24.0 * 3,
        bias=BiasConfig(
            sensitive_attributes=("audience_segment", "region"),
            outcome_field="engagement_rate",
            positive_threshold=3.0,
        ),
    )


def navigation_behavior_schema() -> CanonicalSchema:
    """Web navigation behaviour for navigation-learning consumers."""
    return CanonicalSchema(
        name="navigation_behavior",
        description="Page views with dwell, scroll depth and conversion outcome",
        accepts=frozenset({"page_view"}),
        entity_key=("session_id", "page", "viewed_at"),
        observed_at_field="viewed_at",
        fields=[
            FieldMapping("session_id", "session_id", required=True),
            FieldMapping("user_id", "user_id"),
            FieldMapping("page", "page", required=True),
            FieldMapping("referrer", "referrer"),
            FieldMapping("viewed_at", "viewed_at", type="datetime", required=True),
            FieldMapping("dwell_seconds", "dwell_seconds", type="float", minimum=0, maximum=86400),
            FieldMapping("scroll_depth", "scroll_depth", type="float", minimum=0, maximum=1),
            FieldMapping("converted", "converted", type="bool", default=False),
            FieldMapping("device", "device", choices=("mobile", "desktop", "tablet")),
            FieldMapping("region", "region"),
            FieldMapping("consent", "consent", type="bool"),
        ],
        freshness_hours=24.0,
        bias=BiasConfig(sensitive_attributes=("device", "region"), outcome_field="converted"),
    )


def marketing_intelligence_schema() -> CanonicalSchema:
    """Campaign performance for marketing intelligence consumers."""
    return CanonicalSchema(
        name="marketing_intelligence",
        description="Campaign spend, funnel counters and derived efficiency metrics",
        accepts=frozenset({"campaign"}),
        entity_key=("campaign_id", "channel"),
        observed_at_field="start_date",
        fields=[
            FieldMapping("campaign_id", "campaign_id", required=True),
            FieldMapping("channel", "channel", required=True),
            FieldMapping("name", "name"),
            FieldMapping("start_date", "start_date", type="datetime"),
            FieldMapping("end_date", "end_date", type="datetime"),
            FieldMapping("spend", "spend", type="float", minimum=0),
            FieldMapping("impressions", "impressions", type="int", minimum=0),
            FieldMapping("clicks", "clicks", type="int", minimum=0),
            FieldMapping("conversions", "conversions", type="int", minimum=0),
            FieldMapping("revenue", "revenue", type="float", minimum=0),
            FieldMapping("audience_segment", "audience_segment"),
            FieldMapping("region", "region"),
        ],
        derived=[
            DerivedField("ctr", "clicks / impressions"),
            DerivedField("conversion_rate", "conversions / clicks"),
            DerivedField("roi", "(revenue - spend) / spend"),
        ],
        consistency=[
            ConsistencyRule("clicks", "<=", "impressions"),
            ConsistencyRule("conversions", "<=", "clicks"),
            ConsistencyRule("start_date", "<=", "end_date"),
        ],
        freshness_hours=24.0 * 14,
        quality_weights={
            "completeness": 0.20,
            "accuracy": 0.30,
            "consistency": 0.25,
            "timeliness": 0.10,
            "validity": 0.10,
            "uniqueness": 0.05,
        },
        bias=BiasConfig(
            sensitive_attributes=("audience_segment", "region"),
            outcome_field="roi",
            positive_threshold=0.0,
        ),
    )


def sector_benchmark_schema() -> CanonicalSchema:
    """Sector benchmark distributions used as comparison baselines."""
    percentiles = ["p10", "p25", "p50", "p75", "p90"]
    return CanonicalSchema(
        name="sector_benchmark",
        description="Published percentile distributions of sector metrics",
        accepts=frozenset({"benchmark_metric"}),
        entity_key=("sector", "metric", "provider"),
        observed_at_field="as_of",
        fields=[
            FieldMapping("sector", "sector", required=True),
            FieldMapping("metric", "metric", required=True),
            FieldMapping("provider", "provider", required=True, default="unknown"),
            *[FieldMapping(p, p, type="float", required=True) for p in percentiles],
            FieldMapping("sample_size", "sample_size", type="int", minimum=1),
            FieldMapping("as_of", "as_of", type="datetime"),
        ],
        consistency=[
            ConsistencyRule(low, "<=", high)
            for low, high in zip(percentiles, percentiles[1:], strict=False)
        ],
        freshness_hours=24.0 * 90,
    )


BUILTIN_SCHEMAS: dict[str, Callable[[], CanonicalSchema]] = {
    "content_performance": content_performance_schema,
    "navigation_behavior": navigation_behavior_schema,
    "marketing_intelligence": marketing_intelligence_schema,
    "sector_benchmark": sector_benchmark_schema,
}


class SchemaRegistry:
    """Registry of canonical schemas, pre-loaded with the built-ins."""

    def __init__(self, schemas: Iterable[CanonicalSchema] | None = None) -> None:
        self._schemas: dict[str, CanonicalSchema] = {}
        initial = list(schemas) if schemas is not None else [f() for f in BUILTIN_SCHEMAS.values()]
        for schema in initial:
            self.register(schema)

    def register(self, schema: CanonicalSchema) -> None:
        if schema.name in self._schemas:
            raise ConflictError(
                f"Schema '{schema.name}' is already registered", details={"schema": schema.name}
            )
        self._schemas[schema.name] = schema

    def get(self, name: str) -> CanonicalSchema:
        try:
            return self._schemas[name]
        except KeyError:
            raise NotFoundError(f"Unknown schema '{name}'", details={"schema": name}) from None

    def names(self) -> list[str]:
        return list(self._schemas)

    def all(self) -> list[CanonicalSchema]:
        return list(self._schemas.values())

    def accepting(self, kind: str) -> list[CanonicalSchema]:
        return [s for s in self._schemas.values() if kind in s.accepts]

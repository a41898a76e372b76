"""Configuration dataclasses for synthetic record templates.

A template is an ordered bag of rules. Each rule produces one field of the
generated row:

* ``DistributionRule`` draws a number from a named distribution;
* ``PatternRule`` draws a timestamp shaped by a business pattern;
* ``FormulaRule`` derives a value from fields generated earlier;
* ``LookupRule`` picks a categorical value from a weighted table;
* ``SequenceRule`` emits a unique key per row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


class TemplatePreset(str, Enum):
    """Built-in templates, one per observed source shape."""

    SOCIAL_MEDIA_CONTENT = "social_media_content"
    PAGE_NAVIGATION = "page_navigation"
    CAMPAIGN_PERFORMANCE = "campaign_performance"


@dataclass
class DistributionRule:
    """Numeric field drawn from a distribution.

    Attributes:
        field: Output field name.
        distribution: normal, uniform, exponential or poisson.
        params: Distribution parameters (mean/std, low/high, mean, lam).
        clip_min: Lower bound; draws below are clipped.
        clip_max: Upper bound; draws above are clipped.
        decimals: Round to this many decimals; 0 yields integers.
    """

    field: str
    distribution: Literal["normal", "uniform", "exponential", "poisson"]
    params: dict[str, float] = field(default_factory=dict)
    clip_min: float | None = None
    clip_max: float | None = None
    decimals: int | None = None

    @property
    def dependencies(self) -> list[str]:
        return []


@dataclass
class PatternRule:
    """Timestamp field shaped by a temporal pattern.

    Attributes:
        field: Output field name.
        pattern: business_hours, time_of_day or seasonal.
        window_days: Timestamps fall within the last ``window_days`` days.
        business_start: First business hour (inclusive).
        business_end: Last business hour (exclusive).
        business_weight: Share of draws landing inside business hours.
        hour_weights: 24 relative weights for the time_of_day pattern.
        month_weights: Relative weight per month (1-12) for the seasonal pattern.
    """

    field: str
    pattern: Literal["business_hours", "time_of_day", "seasonal"] = "business_hours"
    window_days: int = 30
    business_start: int = 9
    business_end: int = 17
    business_weight: float = 0.7
    hour_weights: list[float] = field(default_factory=list)
    month_weights: dict[int, float] = field(default_factory=dict)

    @property
    def dependencies(self) -> list[str]:
        return []


@dataclass
class FormulaRule:
    """Field computed from previously generated fields.

    ``expression`` is a restricted arithmetic expression; ``random()`` draws
    from the generator's own stream so results stay reproducible.
    """

    field: str
    expression: str
    dependencies: list[str] = field(default_factory=list)
    decimals: int | None = None
    clip_min: float | None = None
    clip_max: float | None = None


@dataclass
class LookupRule:
    """Categorical field picked from a weighted table."""

    field: str
    choices: dict[str, float] = field(default_factory=dict)

    @property
    def dependencies(self) -> list[str]:
        return []


@dataclass
class SequenceRule:
    """Unique identifier per generated row (``prefix`` + zero-padded index)."""

    field: str
    prefix: str = "syn-"
    width: int = 6

    @property
    def dependencies(self) -> list[str]:
        return []


TemplateRule = DistributionRule | PatternRule | FormulaRule | LookupRule | SequenceRule


@dataclass
class SyntheticTemplate:
    """Named synthetic data template.

    Attributes:
        name: Template name (also used in provenance).
        kind: Raw payload kind the rows are shaped as.
        key_field: Field holding the per-row natural key.
        rules: Field rules; evaluation order is derived from dependencies.
        seed: Random seed for reproducibility.
    """

    name: str
    kind: str
    key_field: str
    rules: list[TemplateRule] = field(default_factory=list)
    seed: int = 42

    def bounds(self) -> dict[str, tuple[float | None, float | None]]:
        """Declared value ranges per field, used for realism scoring."""
        result: dict[str, tuple[float | None, float | None]] = {}
        for rule in self.rules:
            if isinstance(rule, DistributionRule | FormulaRule):
                if rule.clip_min is not None or rule.clip_max is not None:
                    result[rule.field] = (rule.clip_min, rule.clip_max)
        return result

    @classmethod
    def from_preset(cls, preset: TemplatePreset, seed: int = 42) -> SyntheticTemplate:
        """Create a template from a built-in preset.

        Args:
            preset: The preset to use.
            seed: Random seed for reproducibility.

        Returns:
            SyntheticTemplate configured for the preset.
        """
        if preset == TemplatePreset.SOCIAL_MEDIA_CONTENT:
            return cls(
                name=preset.value,
                kind="social_post",
                key_field="post_id",
                seed=seed,
                rules=[
                    SequenceRule("post_id", prefix="syn-post-"),
                    LookupRule(
                        "platform",
                        {"instagram": 0.4, "tiktok": 0.25, "linkedin": 0.2, "x": 0.15},
                    ),
                    LookupRule(
                        "content_type",
                        {"image": 0.45, "video": 0.30, "carousel": 0.15, "story": 0.10},
                    ),
                    LookupRule(
                        "audience_segment",
                        {"18-24": 0.3, "25-34": 0.35, "35-44": 0.2, "45+": 0.15},
                    ),
                    DistributionRule(
                        "engagement_rate",
                        "normal",
                        {"mean": 3.2, "std": 1.8},
                        clip_min=0.0,
                        clip_max=15.0,
                        decimals=2,
                    ),
                    DistributionRule(
                        "impressions",
                        "exponential",
                        {"mean": 2500},
                        clip_min=100,
                        clip_max=50000,
                        decimals=0,
                    ),
                    PatternRule("posted_at", "business_hours", window_days=30),
                    FormulaRule(
                        "reach",
                        "impressions * (0.6 + random() * 0.4)",
                        dependencies=["impressions"],
                        decimals=0,
                        clip_min=0,
                    ),
                    FormulaRule(
                        "likes",
                        "impressions * engagement_rate / 100 * 0.8",
                        dependencies=["impressions", "engagement_rate"],
                        decimals=0,
                        clip_min=0,
                    ),
                    FormulaRule(
                        "comments",
                        "impressions * engagement_rate / 100 * 0.15",
                        dependencies=["impressions", "engagement_rate"],
                        decimals=0,
                        clip_min=0,
                    ),
                    FormulaRule(
                        "shares",
                        "impressions * engagement_rate / 100 * 0.05",
                        dependencies=["impressions", "engagement_rate"],
                        decimals=0,
                        clip_min=0,
                    ),
                ],
            )

        if preset == TemplatePreset.PAGE_NAVIGATION:
            return cls(
                name=preset.value,
                kind="page_view",
                key_field="session_id",
                seed=seed,
                rules=[
                    SequenceRule("session_id", prefix="syn-sess-"),
                    LookupRule(
                        "page",
                        {"/": 0.35, "/pricing": 0.2, "/features": 0.2, "/blog": 0.15, "/signup": 0.1},
                    ),
                    LookupRule("device", {"mobile": 0.55, "desktop": 0.38, "tablet": 0.07}),
                    LookupRule("region", {"na": 0.4, "emea": 0.35, "apac": 0.25}),
                    PatternRule("viewed_at", "time_of_day", window_days=14),
                    DistributionRule(
                        "dwell_seconds",
                        "exponential",
                        {"mean": 45},
                        clip_min=1,
                        clip_max=1800,
                        decimals=1,
                    ),
                    DistributionRule(
                        "scroll_depth",
                        "uniform",
                        {"low": 0.05, "high": 1.0},
                        clip_min=0.0,
                        clip_max=1.0,
                        decimals=2,
                    ),
                    FormulaRule(
                        "converted",
                        "random() < min(0.02 + dwell_seconds / 2000, 0.3)",
                        dependencies=["dwell_seconds"],
                    ),
                    FormulaRule("consent", "True"),
                ],
            )

        if preset == TemplatePreset.CAMPAIGN_PERFORMANCE:
            return cls(
                name=preset.value,
                kind="campaign",
                key_field="campaign_id",
                seed=seed,
                rules=[
                    SequenceRule("campaign_id", prefix="syn-cmp-"),
                    LookupRule(
                        "channel",
                        {"paid_social": 0.35, "search": 0.3, "email": 0.2, "display": 0.15},
                    ),
                    LookupRule(
                        "audience_segment",
                        {"smb": 0.45, "mid_market": 0.35, "enterprise": 0.2},
                    ),
                    PatternRule("start_date", "seasonal", window_days=90),
                    DistributionRule(
                        "spend",
                        "exponential",
                        {"mean": 5000},
                        clip_min=100,
                        clip_max=250000,
                        decimals=2,
                    ),
                    DistributionRule(
                        "impressions",
                        "poisson",
                        {"lam": 40000},
                        clip_min=1000,
                        decimals=0,
                    ),
                    DistributionRule(
                        "ctr",
                        "normal",
                        {"mean": 0.021, "std": 0.008},
                        clip_min=0.001,
                        clip_max=0.2,
                        decimals=4,
                    ),
                    FormulaRule(
                        "clicks",
                        "impressions * ctr",
                        dependencies=["impressions", "ctr"],
                        decimals=0,
                        clip_min=0,
                    ),
                    FormulaRule(
                        "conversions",
                        "clicks * (0.02 + random() * 0.06)",
                        dependencies=["clicks"],
                        decimals=0,
                        clip_min=0,
                    ),
                    FormulaRule(
                        "revenue",
                        "conversions * (80 + random() * 120)",
                        dependencies=["conversions"],
                        decimals=2,
                        clip_min=0,
                    ),
                ],
            )

        raise ValueError(f"Unknown template preset: {preset}")

"""Pydantic schemas for raw collection.

Raw payloads are a tagged union of the source shapes the system knows
about. Every shape field is optional because sources fill them unevenly;
native fields that are unknown (or that fail type validation) are kept in
the record's ``extra`` map instead of being dropped.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from seedflow.shared.utils import content_hash

Provenance = Literal["observed", "synthetic", "benchmark"]


# =============================================================================
# Payload shapes
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", coerce_numbers_to_str=True)


class SocialPostPayload(_Payload):
    """A post and its engagement counters from a social platform."""

    kind: Literal["social_post"] = "social_post"
    platform: str | None = None
    post_id: str | None = None
    author: str | None = None
    content_type: str | None = None
    text: str | None = None
    posted_at: datetime | None = None
    impressions: int | None = None
    reach: int | None = None
    likes: int | None = None
    comments: int | None = None
    shares: int | None = None
    saves: int | None = None
    engagement_rate: float | None = None
    follower_count: int | None = None
    audience_segment: str | None = None
    region: str | None = None


class PageViewPayload(_Payload):
    """A single page view from web navigation analytics."""

    kind: Literal["page_view"] = "page_view"
    session_id: str | None = None
    user_id: str | None = None
    page: str | None = None
    referrer: str | None = None
    viewed_at: datetime | None = None
    dwell_seconds: float | None = None
    scroll_depth: float | None = None
    converted: bool | None = None
    device: str | None = None
    region: str | None = None
    consent: bool | None = None


class CampaignPayload(_Payload):
    """Marketing campaign performance counters."""

    kind: Literal["campaign"] = "campaign"
    campaign_id: str | None = None
    channel: str | None = None
    name: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    spend: float | None = None
    impressions: int | None = None
    clicks: int | None = None
    conversions: int | None = None
    revenue: float | None = None
    audience_segment: str | None = None
    region: str | None = None


class BenchmarkMetricPayload(_Payload):
    """Sector-level distribution of a single metric."""

    kind: Literal["benchmark_metric"] = "benchmark_metric"
    sector: str | None = None
    metric: str | None = None
    p10: float | None = None
    p25: float | None = None
    p50: float | None = None
    p75: float | None = None
    p90: float | None = None
    sample_size: int | None = None
    as_of: datetime | None = None
    provider: str | None = None


RawPayload = Annotated[
    SocialPostPayload | PageViewPayload | CampaignPayload | BenchmarkMetricPayload,
    Field(discriminator="kind"),
]

PAYLOAD_TYPES: dict[str, type[_Payload]] = {
    "social_post": SocialPostPayload,
    "page_view": PageViewPayload,
    "campaign": CampaignPayload,
    "benchmark_metric": BenchmarkMetricPayload,
}

PayloadKind = Literal["social_post", "page_view", "campaign", "benchmark_metric"]


def build_payload(kind: str, native: dict[str, Any]) -> tuple[_Payload, dict[str, Any]]:
    """Split a native row into a typed payload and an ``extra`` map.

    Known fields are validated against the payload shape; fields that fail
    validation are moved to ``extra`` unchanged so nothing is lost.

    Args:
        kind: Payload kind.
        native: Row as returned by the source.

    Returns:
        Tuple of (payload, extra).

    Raises:
        ValueError: If the kind is unknown.
    """
    model = PAYLOAD_TYPES.get(kind)
    if model is None:
        raise ValueError(f"Unknown payload kind: {kind}")

    known = {k: v for k, v in native.items() if k in model.model_fields and k != "kind"}
    extra = {k: v for k, v in native.items() if k not in model.model_fields}

    while True:
        try:
            return model.model_validate(known), extra
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            bad &= set(known)
            if not bad:
                raise
            for name in bad:
                extra[name] = known.pop(name)


# =============================================================================
# Raw record
# =============================================================================


class RawRecord(BaseModel):
    """Immutable record as collected from a source.

    ``record_id`` is a content hash over the source identity, natural key,
    payload and extra fields. ``collected_at`` is excluded, so the same
    observation collected twice is addressed identically.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1, description="Connector that produced the record")
    source_key: str = Field(..., min_length=1, description="Natural key within the source")
    collected_at: datetime = Field(..., description="When the record was collected")
    payload: RawPayload
    extra: dict[str, Any] = Field(default_factory=dict, description="Unknown native fields")
    provenance: Provenance = "observed"
    provenance_chain: tuple[str, ...] = Field(
        default=(), description="Ordered steps that produced the record"
    )
    raw_confidence: float = Field(1.0, ge=0.0, le=1.0)

    @property
    def kind(self) -> str:
        return self.payload.kind

    @property
    def record_id(self) -> str:
        return content_hash(
            {
                "source_id": self.source_id,
                "source_key": self.source_key,
                "payload": self.payload.model_dump(mode="json"),
                "extra": self.extra,
            }
        )

    def payload_hash(self) -> str:
        """Hash of payload and extra only, independent of source identity."""
        return content_hash(
            {"payload": self.payload.model_dump(mode="json"), "extra": self.extra}
        )


# =============================================================================
# Connector state and reports
# =============================================================================


class CollectionQuery(BaseModel):
    """Window and parameters for a collection call."""

    start: datetime | None = Field(None, description="Inclusive window start")
    end: datetime | None = Field(None, description="Exclusive window end")
    limit: int | None = Field(None, ge=1, description="Maximum records per source")
    params: dict[str, Any] = Field(default_factory=dict, description="Source-specific parameters")


class RateLimitState(BaseModel):
    """Snapshot of a connector's rate limiter."""

    rate_per_second: float
    capacity: int
    available_tokens: float
    throttled_count: int = 0
    upstream_limited_until: datetime | None = None


class SourceHealth(BaseModel):
    """Result of a connector health check."""

    source_id: str
    healthy: bool
    latency_ms: float = 0.0
    message: str | None = None
    checked_at: datetime


class SourceCollectionReport(BaseModel):
    """Per-source outcome of one collection call."""

    source_id: str
    status: Literal["ok", "partial", "degraded"]
    record_count: int = Field(0, ge=0)
    latency_ms: float = Field(0.0, ge=0)
    attempts: int = Field(0, ge=0)
    error_rate: float = Field(0.0, ge=0, le=1)
    error: str | None = None
    reliability: float = Field(0.0, ge=0, le=1)


class SourceInfo(BaseModel):
    """Registered source description for the control surface."""

    source_id: str
    connector: str
    payload_kind: str
    reliability: float
    degraded: bool
    error_count: int
    rate_limit: RateLimitState | None = None

"""Unified collection pipeline: connectors, rate limiting and source health."""

from seedflow.features.collection.connectors import (
    CONNECTOR_TYPES,
    ContentScraperConnector,
    HistoricalTableConnector,
    HttpApiConnector,
    SourceConnector,
    StaticConnector,
    build_connector,
)
from seedflow.features.collection.rate_limit import TokenBucketRateLimiter
from seedflow.features.collection.schemas import (
    CollectionQuery,
    RawRecord,
    SourceCollectionReport,
    SourceHealth,
)
from seedflow.features.collection.service import CollectionPipeline, CollectionResult

__all__ = [
    "CONNECTOR_TYPES",
    "CollectionPipeline",
    "CollectionQuery",
    "CollectionResult",
    "ContentScraperConnector",
    "HistoricalTableConnector",
    "HttpApiConnector",
    "RawRecord",
    "SourceCollectionReport",
    "SourceConnector",
    "SourceHealth",
    "StaticConnector",
    "TokenBucketRateLimiter",
    "build_connector",
]

"""Distribution engine: target registry, eligibility and delivery lanes."""

from seedflow.features.distribution.adapters import (
    DELIVERY_METHODS,
    CallableAdapter,
    DeliveryAdapter,
    DeliveryBatch,
    DeliveryResult,
    MemoryOutbox,
    OutboxAdapter,
    WebhookAdapter,
    register_delivery_method,
)
from seedflow.features.distribution.config import (
    ConfigWatcher,
    DistributionConfigFile,
    load_distribution_config,
)
from seedflow.features.distribution.eligibility import select_records, trim_synthetic
from seedflow.features.distribution.schemas import (
    DistributionReport,
    HoldEntry,
    RealtimeResult,
    TargetConfig,
    TargetDeliveryReport,
    TransformationRule,
)
from seedflow.features.distribution.service import DistributionEngine

__all__ = [
    "DELIVERY_METHODS",
    "CallableAdapter",
    "ConfigWatcher",
    "DeliveryAdapter",
    "DeliveryBatch",
    "DeliveryResult",
    "DistributionConfigFile",
    "DistributionEngine",
    "DistributionReport",
    "HoldEntry",
    "MemoryOutbox",
    "OutboxAdapter",
    "RealtimeResult",
    "TargetConfig",
    "TargetDeliveryReport",
    "TransformationRule",
    "WebhookAdapter",
    "load_distribution_config",
    "register_delivery_method",
    "select_records",
    "trim_synthetic",
]

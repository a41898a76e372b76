"""Shared utilities used across 3+ features."""

from seedflow.shared.audit import AuditEvent, AuditKind, AuditSink
from seedflow.shared.models import CreatedAtMixin, TimestampMixin
from seedflow.shared.retry import RetryExhaustedError, RetryResult, retry_with_backoff
from seedflow.shared.schemas import PaginationParams
from seedflow.shared.utils import content_hash, utcnow

__all__ = [
    "AuditEvent",
    "AuditKind",
    "AuditSink",
    "CreatedAtMixin",
    "PaginationParams",
    "RetryExhaustedError",
    "RetryResult",
    "TimestampMixin",
    "content_hash",
    "retry_with_backoff",
    "utcnow",
]

"""Shared utility functions."""

import hashlib
import json
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def content_hash(value: Any) -> str:
    """Stable sha256 hex digest of a JSON-serializable value.

    Keys are sorted and datetimes rendered as ISO strings, so two equal
    payloads hash identically regardless of insertion order.
    """
    encoded = json.dumps(value, sort_keys=True, default=_json_default, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set | frozenset):
        return sorted(value)
    return str(value)


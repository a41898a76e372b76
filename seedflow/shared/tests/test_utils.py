"""Tests for shared utilities."""

from datetime import UTC, datetime

from seedflow.shared.schemas import PaginationParams
from seedflow.shared.utils import content_hash, utcnow


def test_content_hash_ignores_key_order():
    """Equal payloads hash identically regardless of key order."""
    assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})


def test_content_hash_handles_datetimes():
    """Datetimes are hashed through their ISO form."""
    ts = datetime(2026, 1, 1, tzinfo=UTC)

    assert content_hash({"t": ts}) == content_hash({"t": ts.isoformat()})
    assert content_hash({"t": ts}) != content_hash({"t": None})


def test_utcnow_is_timezone_aware():
    """utcnow returns an aware UTC timestamp."""
    assert utcnow().tzinfo is UTC


def test_pagination_offset():
    """Offset skips the earlier pages."""
    pagination = PaginationParams(page=3, page_size=20)

    assert pagination.offset == 40
    assert pagination.limit == 20

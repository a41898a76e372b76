"""Tests for source connectors."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import httpx
import pytest

from seedflow.core.exceptions import RateLimitedError, SourceUnavailableError
from seedflow.features.collection.connectors import (
    ContentScraperConnector,
    HistoricalTableConnector,
    HttpApiConnector,
    StaticConnector,
    build_connector,
    parse_count,
)
from seedflow.features.collection.rate_limit import TokenBucketRateLimiter
from seedflow.features.collection.schemas import CollectionQuery

HTML = """
<html><body>
  <article class="post" data-id="101">
    <span class="author">@ana</span>
    <p class="text">Launch day!</p>
    <span class="views">1.2K</span>
    <span class="likes">1,204</span>
  </article>
  <article class="post" data-id="102">
    <span class="author">@ben</span>
    <span class="views">950</span>
  </article>
</body></html>
"""


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://x.test")


class TestStaticConnector:
    """Tests for StaticConnector."""

    async def test_collects_rows_as_raw_records(self, healthy_source):
        """Test rows become observed raw records with provenance."""
        records = await healthy_source.collect(CollectionQuery())

        assert len(records) == 5
        assert records[0].source_key == "p0"
        assert records[0].provenance == "observed"
        assert records[0].provenance_chain[0] == "connector:static:source-a"

    async def test_unavailable_source_raises_and_counts_errors(self, down_source):
        """Test an unavailable source raises and bumps its error counter."""
        health = await down_source.test_connection()

        assert health.healthy is False
        with pytest.raises(SourceUnavailableError):
            await down_source.collect(CollectionQuery())
        assert down_source.error_count == 2

    async def test_limit_is_respected(self, healthy_source):
        """Test the query limit caps returned records."""
        records = await healthy_source.collect(CollectionQuery(limit=2))

        assert len(records) == 2

    def test_missing_key_falls_back_to_content_hash(self):
        """Test rows without a key still get a stable natural key."""
        connector = StaticConnector("s", [{"platform": "x"}], "social_post")
        now = datetime(2026, 1, 1, tzinfo=UTC)

        first = connector.to_record({"platform": "x"}, now)
        second = connector.to_record({"platform": "x"}, now)

        assert first.source_key == second.source_key
        assert len(first.source_key) == 16

    def test_field_aliases_rename_native_fields(self):
        """Test aliases map native names onto payload fields."""
        connector = StaticConnector(
            "s", [], "social_post", field_aliases={"views": "impressions"}, key_field="pid"
        )

        record = connector.to_record({"pid": 7, "views": 10}, datetime(2026, 1, 1, tzinfo=UTC))

        assert record.payload.impressions == 10
        assert record.source_key == "7"

    def test_rejects_unknown_kind_and_bad_reliability(self):
        """Test constructor validation."""
        with pytest.raises(ValueError):
            StaticConnector("s", [], "unknown")
        with pytest.raises(ValueError):
            StaticConnector("s", [], "social_post", reliability=1.2)


class TestHttpApiConnector:
    """Tests for HttpApiConnector."""

    async def test_paginates_until_empty_page(self):
        """Test pages are fetched until an empty page is returned."""
        seen = []

        def handler(request):
            page = int(request.url.params["page"])
            seen.append(dict(request.url.params))
            items = [{"id": f"{page}-{i}", "channel": "email"} for i in range(3)] if page < 3 else []
            return httpx.Response(200, json={"result": {"items": items}})

        connector = HttpApiConnector(
            "api",
            "https://x.test",
            "/campaigns",
            "campaign",
            records_path="result.items",
            client=_client(handler),
        )
        query = CollectionQuery(start=datetime(2026, 1, 1, tzinfo=UTC))

        records = await connector.collect(query)

        assert len(records) == 6
        assert seen[0]["since"] == "2026-01-01T00:00:00+00:00"
        assert records[0].provenance_chain[-1] == "page:1"

    async def test_rate_limit_keeps_partial_records(self, rate_limited_source):
        """Test HTTP 429 raises RateLimitedError carrying collected records."""
        with pytest.raises(RateLimitedError) as exc_info:
            await rate_limited_source.collect(CollectionQuery())

        assert len(exc_info.value.partial) == 4
        assert exc_info.value.retry_after == 0.0
        assert rate_limited_source.error_count == 1

    async def test_rate_limit_blocks_limiter(self):
        """Test a 429 empties the connector's token bucket."""
        limiter = TokenBucketRateLimiter(rate_per_second=100.0, capacity=5)
        connector = HttpApiConnector(
            "api",
            "https://x.test",
            "/p",
            "social_post",
            client=_client(lambda r: httpx.Response(429, headers={"Retry-After": "30"})),
            rate_limiter=limiter,
        )

        with pytest.raises(RateLimitedError):
            await connector.collect(CollectionQuery())

        assert connector.rate_limit_state().upstream_limited_until is not None
        assert limiter.try_acquire() is False

    async def test_server_error_raises_source_unavailable(self):
        """Test 5xx responses surface as SourceUnavailableError."""
        connector = HttpApiConnector(
            "api", "https://x.test", "/p", "social_post",
            client=_client(lambda r: httpx.Response(503)),
        )

        with pytest.raises(SourceUnavailableError):
            await connector.collect(CollectionQuery())

    async def test_transport_error_raises_source_unavailable(self):
        """Test connection failures surface as SourceUnavailableError."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        connector = HttpApiConnector("api", "https://x.test", "/p", "social_post", client=_client(handler))

        with pytest.raises(SourceUnavailableError):
            await connector.collect(CollectionQuery())
        health = await connector.test_connection()
        assert health.healthy is False

    async def test_health_check(self):
        """Test a 200 health check reports healthy."""
        connector = HttpApiConnector(
            "api", "https://x.test", "/p", "social_post",
            client=_client(lambda r: httpx.Response(200, json={"data": []})),
        )

        health = await connector.test_connection()

        assert health.healthy is True
        assert health.source_id == "api"


class TestContentScraperConnector:
    """Tests for ContentScraperConnector."""

    def _connector(self, handler=None):
        return ContentScraperConnector(
            "scraper",
            urls=["https://x.test/feed"],
            item_selector="article.post",
            field_selectors={
                "post_id": "@data-id",
                "author": ".author",
                "text": ".text",
                "impressions": ".views",
                "likes": ".likes",
            },
            key_field="post_id",
            client=_client(handler or (lambda r: httpx.Response(200, text=HTML))),
        )

    def test_parse_extracts_items(self):
        """Test HTML items become field dicts with parsed counters."""
        rows = self._connector().parse(HTML)

        assert rows[0] == {
            "post_id": 101,
            "author": "@ana",
            "text": "Launch day!",
            "impressions": 1200,
            "likes": 1204,
        }
        assert "likes" not in rows[1]

    async def test_collect_wraps_rows(self):
        """Test scraped items become raw records keyed by post id."""
        records = await self._connector().collect(CollectionQuery())

        assert [r.source_key for r in records] == ["101", "102"]
        assert records[0].payload.impressions == 1200
        assert records[0].provenance_chain[-1] == "url:https://x.test/feed"

    async def test_not_found_raises(self):
        """Test HTTP errors surface as SourceUnavailableError."""
        connector = self._connector(lambda r: httpx.Response(404))

        with pytest.raises(SourceUnavailableError):
            await connector.collect(CollectionQuery())


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("1,204", 1204), ("3.4K", 3400), ("2M", 2_000_000), ("0.5", 0.5), ("hello", "hello")],
)
def test_parse_count(raw, expected):
    """Display counters are converted to numbers."""
    assert parse_count(raw) == expected


class TestHistoricalTableConnector:
    """Tests for HistoricalTableConnector."""

    def test_build_query_with_window_and_limit(self):
        """Test the SELECT is windowed and parameterized."""
        connector = HistoricalTableConnector(
            "hist",
            MagicMock(),
            "analytics.page_views",
            "page_view",
            timestamp_column="viewed_at",
            columns=["session_id", "page", "viewed_at"],
        )
        query = CollectionQuery(
            start=datetime(2026, 1, 1, tzinfo=UTC), end=datetime(2026, 1, 2, tzinfo=UTC), limit=50
        )

        sql, params = connector.build_query(query)

        assert sql == (
            "SELECT session_id, page, viewed_at FROM analytics.page_views "
            "WHERE viewed_at >= :start AND viewed_at < :end ORDER BY viewed_at LIMIT :limit"
        )
        assert params["limit"] == 50

    def test_rejects_unsafe_identifiers(self):
        """Test table and column names are validated."""
        with pytest.raises(ValueError, match="Invalid SQL identifier"):
            HistoricalTableConnector(
                "hist", MagicMock(), "views; DROP TABLE x", "page_view", timestamp_column="ts"
            )


class TestBuildConnector:
    """Tests for build_connector."""

    def test_builds_static_connector_with_rate_limit(self):
        """Test configuration mappings produce configured connectors."""
        connector = build_connector(
            {
                "type": "static",
                "source_id": "fixture",
                "rows": [{"id": 1}],
                "payload_kind": "campaign",
                "rate_limit": {"rate_per_second": 2, "burst": 3},
            }
        )

        assert isinstance(connector, StaticConnector)
        assert connector.rate_limit_state().capacity == 3

    def test_unknown_type_raises(self):
        """Test unknown connector types are rejected."""
        with pytest.raises(ValueError, match="Unknown connector type"):
            build_connector({"type": "ftp", "source_id": "x"})

    def test_historical_requires_engine(self):
        """Test historical connectors need a database engine."""
        with pytest.raises(ValueError, match="engine"):
            build_connector(
                {
                    "type": "historical",
                    "source_id": "h",
                    "table": "t",
                    "payload_kind": "page_view",
                    "timestamp_column": "ts",
                }
            )

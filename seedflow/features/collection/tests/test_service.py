"""Tests for the collection pipeline."""

from unittest.mock import AsyncMock

import pytest

from seedflow.core.exceptions import ConflictError, NotFoundError, SourceUnavailableError
from seedflow.features.collection.connectors import StaticConnector
from seedflow.features.collection.schemas import CollectionQuery
from seedflow.features.collection.service import CollectionPipeline
from seedflow.shared.audit import AuditKind


class FlakyConnector(StaticConnector):
    """Static connector failing its first ``failures`` collect calls."""

    def __init__(self, *args, failures: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.collect_calls = 0

    async def collect(self, query):
        self.collect_calls += 1
        if self.collect_calls <= self.failures:
            self.record_error()
            raise SourceUnavailableError(self.source_id, "flaky upstream")
        return await super().collect(query)


class CrashingConnector(StaticConnector):
    """Connector with a bug in its collect method."""

    async def collect(self, query):
        raise KeyError("missing")


class TestRegistry:
    """Tests for source registration."""

    def test_duplicate_registration_conflicts(self, fast_settings, healthy_source):
        """Test registering the same source id twice is rejected."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(healthy_source)

        with pytest.raises(ConflictError):
            pipeline.register_source(healthy_source)

    async def test_unregister_unknown_source(self, fast_settings):
        """Test unregistering an unknown source raises NotFoundError."""
        pipeline = CollectionPipeline(fast_settings)

        with pytest.raises(NotFoundError):
            await pipeline.unregister_source("ghost")

    async def test_unknown_filter_raises(self, fast_settings, healthy_source):
        """Test filtering on an unregistered source raises NotFoundError."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(healthy_source)

        with pytest.raises(NotFoundError):
            await pipeline.collect(source_filter=["ghost"])

    def test_list_sources(self, fast_settings, healthy_source, down_source):
        """Test source listing reports connector details."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(healthy_source)
        pipeline.register_source(down_source)

        infos = pipeline.list_sources()

        assert [i.source_id for i in infos] == ["source-a", "source-c"]
        assert infos[0].connector == "static"
        assert infos[0].reliability == pytest.approx(0.9)


class TestCollect:
    """Tests for CollectionPipeline.collect."""

    async def test_three_sources_healthy_rate_limited_and_down(
        self, fast_settings, healthy_source, rate_limited_source, down_source
    ):
        """Test a run completes with partial data from B and C marked degraded."""
        audit = AsyncMock()
        pipeline = CollectionPipeline(fast_settings, audit=audit)
        for source in (healthy_source, rate_limited_source, down_source):
            pipeline.register_source(source)

        result = await pipeline.collect()

        by_source = {sid: [r for r in result.records if r.source_id == sid] for sid in result.reports}
        assert len(by_source["source-a"]) == 5
        assert len(by_source["source-b"]) == 4
        assert by_source["source-c"] == []

        assert result.reports["source-a"].status == "ok"
        assert result.reports["source-b"].status == "partial"
        assert result.reports["source-c"].status == "degraded"
        assert result.degraded_sources == ["source-c"]
        assert pipeline.degraded_sources() == ["source-c"]

        events = [call.args[0] for call in audit.await_args_list]
        assert [e.source_id for e in events] == ["source-c"]
        assert events[0].kind == AuditKind.SOURCE_HEALTH
        assert events[0].message.startswith("SourceUnavailable")

    async def test_transient_failures_are_retried(self, fast_settings, social_rows):
        """Test a source failing fewer times than the retry limit still delivers."""
        flaky = FlakyConnector("flaky", social_rows, "social_post", failures=2)
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(flaky)

        result = await pipeline.collect()

        report = result.reports["flaky"]
        assert report.status == "ok"
        assert report.attempts == 3
        assert report.error_rate == pytest.approx(2 / 3, abs=1e-4)
        assert len(result.records) == 5

    async def test_exhausted_retries_degrade_source(self, fast_settings, social_rows):
        """Test exhausting retries isolates the source as degraded."""
        flaky = FlakyConnector("flaky", social_rows, "social_post", failures=10)
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(flaky)

        result = await pipeline.collect()

        assert result.reports["flaky"].status == "degraded"
        assert result.reports["flaky"].attempts == fast_settings.collection_retry_attempts
        assert result.records == []
        assert flaky.error_count == fast_settings.collection_retry_attempts

    async def test_connector_crash_is_isolated(self, fast_settings, healthy_source):
        """Test an unexpected connector exception only degrades that source."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(healthy_source)
        pipeline.register_source(CrashingConnector("buggy", [], "social_post"))

        result = await pipeline.collect()

        assert result.reports["buggy"].status == "degraded"
        assert "KeyError" in result.reports["buggy"].error
        assert result.reports["source-a"].status == "ok"

    async def test_source_filter_limits_collection(
        self, fast_settings, healthy_source, down_source
    ):
        """Test only filtered sources are collected."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(healthy_source)
        pipeline.register_source(down_source)

        result = await pipeline.collect(source_filter=["source-a"], window=CollectionQuery(limit=3))

        assert list(result.reports) == ["source-a"]
        assert len(result.records) == 3

    async def test_recovery_clears_degraded_flag(self, fast_settings, social_rows):
        """Test a degraded source becomes healthy after a clean collection."""
        source = StaticConnector("s", social_rows, "social_post", available=False)
        audit = AsyncMock()
        pipeline = CollectionPipeline(fast_settings, audit=audit)
        pipeline.register_source(source)

        await pipeline.collect()
        assert pipeline.degraded_sources() == ["s"]

        source.available = True
        await pipeline.collect()

        assert pipeline.degraded_sources() == []
        assert audit.await_args_list[-1].args[0].message == "Source recovered"

    async def test_error_count_is_monotonic(self, fast_settings, down_source):
        """Test connector error counters never decrease across runs."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(down_source)

        counts = []
        for _ in range(3):
            await pipeline.collect()
            counts.append(down_source.error_count)

        assert counts == sorted(counts)
        assert counts[0] < counts[-1]


class TestReliability:
    """Tests for reliability tracking."""

    async def test_reliability_falls_after_failures(self, fast_settings, social_rows):
        """Test failed collections reduce the computed reliability."""
        source = StaticConnector("s", social_rows, "social_post", reliability=0.9, available=False)
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(source)
        before = pipeline.reliability("s")

        await pipeline.collect()

        assert pipeline.reliability("s") < before

    async def test_rejections_lower_reliability(self, fast_settings, social_rows):
        """Test normalization rejections feed back into reliability."""
        pipeline = CollectionPipeline(fast_settings)
        pipeline.register_source(StaticConnector("s", social_rows, "social_post"))
        await pipeline.collect()
        clean = pipeline.reliability("s")

        pipeline.record_rejections("s", 5)

        assert pipeline.reliability("s") < clean

    def test_unknown_source_reliability_is_zero(self, fast_settings):
        """Test unknown sources have zero reliability."""
        assert CollectionPipeline(fast_settings).reliability("nope") == 0.0

"""Tests for cleaning, normalization and reconciliation."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from seedflow.core.config import Settings
from seedflow.features.cleaning.canonical import (
    content_performance_schema,
    marketing_intelligence_schema,
    navigation_behavior_schema,
)
from seedflow.features.cleaning.service import (
    CleaningConfig,
    CleaningEngine,
    clean,
    deduplicate,
    normalize,
    normalize_all,
    reconcile,
)
from seedflow.shared.audit import AuditKind


def _post(post_id, **counters):
    return {"platform": "instagram", "post_id": post_id, **counters}


class TestDeduplicate:
    """Tests for deduplication."""

    def test_same_source_key_keeps_latest(self, make_raw, collected_at):
        """Test a re-collected key keeps the most recent observation."""
        old = make_raw(_post("1", likes=10), key="1", collected_at=collected_at)
        new = make_raw(_post("1", likes=12), key="1", collected_at=collected_at + timedelta(hours=1))

        unique, removed = deduplicate([old, new])

        assert removed == 1
        assert unique[0].payload.likes == 12

    def test_identical_content_collapses_within_source(self, make_raw):
        """Test identical payloads under different keys collapse."""
        a = make_raw(_post("1", likes=10), key="a")
        b = make_raw(_post("1", likes=10), key="b")

        unique, removed = deduplicate([a, b])

        assert removed == 1
        assert len(unique) == 1

    def test_identical_content_across_sources_is_kept(self, make_raw):
        """Test cross-source duplicates are left for reconciliation."""
        a = make_raw(_post("1", likes=10), source_id="source-a")
        b = make_raw(_post("1", likes=10), source_id="source-b")

        unique, removed = deduplicate([a, b])

        assert removed == 0
        assert len(unique) == 2


class TestImputation:
    """Tests for missing value imputation."""

    @pytest.fixture
    def batch(self, make_raw):
        rows = [
            _post("1", impressions=100, saves=1),
            _post("2", impressions=200),
            _post("3", impressions=300),
            _post("4"),
        ]
        return [make_raw(row, key=row["post_id"]) for row in rows]

    def test_statistical_uses_median(self, batch):
        """Test the batch median fills gaps in common numeric fields."""
        result = clean(batch, CleaningConfig(imputation="statistical"))

        filled = next(c for c in result.records if c.record.source_key == "4")
        assert filled.record.payload.impressions == 200
        assert filled.imputed_fields == ["impressions"]
        assert result.imputed == 1

    def test_sparse_fields_are_not_imputed(self, batch):
        """Test fields present in under half the records stay missing."""
        result = clean(batch, CleaningConfig(imputation="statistical"))

        assert all(
            c.record.payload.saves is None for c in result.records if c.record.source_key != "1"
        )

    def test_default_fills_zero(self, batch):
        """Test the default strategy fills zero."""
        result = clean(batch, CleaningConfig(imputation="default"))

        filled = next(c for c in result.records if c.record.source_key == "4")
        assert filled.record.payload.impressions == 0

    def test_drop_reports_dropped_records(self, batch):
        """Test the drop strategy removes and reports incomplete records."""
        result = clean(batch, CleaningConfig(imputation="drop"))

        assert [r.source_key for r in result.dropped] == ["4"]
        assert len(result.records) == 3
        assert result.missing_fields == {result.dropped[0].record_id: ["impressions"]}


class TestOutliers:
    """Tests for outlier flagging."""

    def test_iqr_flags_but_keeps_value(self, make_raw):
        """Test IQR outliers are flagged while the value is preserved."""
        values = [100, 110, 120, 130, 140, 10000]
        batch = [make_raw(_post(str(i), impressions=v), key=str(i)) for i, v in enumerate(values)]

        result = clean(batch, CleaningConfig(outlier_method="iqr"))

        flagged = [c for c in result.records if c.outlier_fields]
        assert len(flagged) == 1
        assert flagged[0].record.payload.impressions == 10000
        assert flagged[0].outlier_fields == ["impressions"]
        assert result.outliers == 1

    def test_zscore_threshold(self, make_raw):
        """Test z-score flagging respects the configured threshold."""
        values = [10] * 9 + [1000]
        batch = [make_raw(_post(str(i), impressions=v), key=str(i)) for i, v in enumerate(values)]

        strict = clean(batch, CleaningConfig(outlier_method="zscore", zscore_threshold=2.0))
        lenient = clean(batch, CleaningConfig(outlier_method="zscore", zscore_threshold=4.0))

        assert strict.outliers == 1
        assert lenient.outliers == 0

    def test_small_groups_are_not_scored(self, make_raw):
        """Test fewer than min_samples values never produce outliers."""
        batch = [make_raw(_post(str(i), impressions=v), key=str(i)) for i, v in enumerate([1, 1000])]

        assert clean(batch).outliers == 0


class TestNormalize:
    """Tests for single-schema normalization."""

    def test_maps_fields_and_keeps_unknown_in_extra(self, make_raw):
        """Test mapped fields are typed and unmapped native fields kept."""
        raw = make_raw(_post("42", impressions="1,200", likes=30, mood="happy"))

        result = normalize([raw], content_performance_schema(), run_id="run-1")

        record = result.records[0]
        assert record.fields["impressions"] == 1200
        assert record.extra == {"mood": "happy"}
        assert record.entity_key == "instagram|42"
        assert record.run_id == "run-1"
        assert record.provenance_chain[-1] == "normalize:content_performance"

    def test_source_key_fallback_for_post_id(self, make_raw):
        """Test the natural key is used when the payload has no post id."""
        raw = make_raw({"platform": "x", "id": "p9"}, key="p9")

        record = normalize([raw], content_performance_schema()).records[0]

        assert record.fields["post_id"] == "p9"

    def test_derived_engagement_rate(self, make_raw):
        """Test engagement rate is derived only when not supplied."""
        derived = make_raw(_post("1", impressions=1000, likes=30, comments=10, shares=10), key="1")
        supplied = make_raw(
            _post("2", impressions=1000, likes=30, comments=10, shares=10, engagement_rate=9.9),
            key="2",
        )

        records = normalize([derived, supplied], content_performance_schema()).records

        assert records[0].fields["engagement_rate"] == pytest.approx(5.0)
        assert records[1].fields["engagement_rate"] == pytest.approx(9.9)

    def test_marketing_derived_fields(self, make_raw):
        """Test ROI and CTR are derived from campaign counters."""
        raw = make_raw(
            {
                "campaign_id": "c1",
                "channel": "search",
                "spend": 100,
                "revenue": 150,
                "impressions": 1000,
                "clicks": 50,
            },
            kind="campaign",
        )

        record = normalize([raw], marketing_intelligence_schema()).records[0]

        assert record.fields["roi"] == pytest.approx(0.5)
        assert record.fields["ctr"] == pytest.approx(0.05)
        assert record.fields["conversion_rate"] is None

    def test_missing_required_is_quarantined(self, make_raw):
        """Test records without a required field are quarantined with a reason."""
        raw = make_raw({"post_id": "1", "likes": 3})

        result = normalize([raw], content_performance_schema())

        assert result.records == []
        assert "platform" in result.quarantined[0].reasons[0]

    def test_wrong_kind_is_quarantined(self, make_raw):
        """Test a schema rejects payload kinds it does not accept."""
        raw = make_raw(_post("1"))

        result = normalize([raw], navigation_behavior_schema())

        assert "not accepted" in result.quarantined[0].reasons[0]

    def test_uncoercible_required_is_quarantined(self, make_raw):
        """Test a required value that cannot be coerced rejects the record."""
        raw = make_raw(
            {"session_id": "s1", "page": "/", "viewed_at": "yesterday"}, kind="page_view"
        )

        result = normalize([raw], navigation_behavior_schema())

        assert result.records == []
        assert "viewed_at" in result.quarantined[0].reasons[0]

    def test_out_of_range_optional_is_flagged(self, make_raw):
        """Test out-of-range optional values are kept and marked invalid."""
        raw = make_raw(
            {
                "session_id": "s1",
                "page": "/",
                "viewed_at": "2026-01-10T10:00:00Z",
                "scroll_depth": 1.5,
            },
            kind="page_view",
        )

        record = normalize([raw], navigation_behavior_schema()).records[0]

        assert record.fields["scroll_depth"] == 1.5
        assert record.flags.invalid_fields == ["scroll_depth"]
        assert record.fields["converted"] is False

    def test_normalization_is_idempotent(self, make_raw, collected_at):
        """Test re-collecting an unchanged observation yields the same record."""
        first = make_raw(_post("1", likes=5), collected_at=collected_at)
        second = make_raw(_post("1", likes=5), collected_at=collected_at + timedelta(days=1))
        schema = content_performance_schema()

        a = normalize([first], schema).records[0]
        b = normalize([second], schema).records[0]

        assert a.record_id == b.record_id
        assert a.fields == b.fields
        assert a.record_id == a.content_hash()

    def test_outlier_flags_map_to_canonical_fields(self, make_raw):
        """Test cleaning flags carry through to the canonical record."""
        values = [100, 110, 120, 130, 140, 10000]
        batch = [make_raw(_post(str(i), impressions=v), key=str(i)) for i, v in enumerate(values)]
        cleaned = clean(batch).records

        records = normalize(cleaned, content_performance_schema()).records

        flagged = [r for r in records if r.flags.outlier_fields]
        assert [r.fields["impressions"] for r in flagged] == [10000]
        assert flagged[0].flags.outlier_fields == ["impressions"]


class TestNormalizeAll:
    """Tests for multi-schema normalization."""

    def test_unmatched_kind_is_quarantined(self, make_raw):
        """Test a record no schema accepts is quarantined, not skipped."""
        raw = make_raw({"campaign_id": "c1", "channel": "email"}, kind="campaign")

        result = normalize_all([raw], [content_performance_schema()])

        assert result.records == []
        assert result.quarantined[0].reasons == ["SchemaMismatch: no schema accepts kind 'campaign'"]

    def test_routes_records_by_kind(self, make_raw):
        """Test each record lands in the schema accepting its kind."""
        post = make_raw(_post("1"))
        view = make_raw(
            {"session_id": "s", "page": "/", "viewed_at": "2026-01-10T10:00:00Z"},
            kind="page_view",
            key="v1",
        )
        schemas = [content_performance_schema(), navigation_behavior_schema()]

        result = normalize_all([post, view], schemas)

        assert [r.schema_name for r in result.records] == [
            "content_performance",
            "navigation_behavior",
        ]


class TestReconcile:
    """Tests for conflict resolution."""

    def _records(self, make_raw, collected_at, likes_by_source, offsets=None):
        offsets = offsets or {}
        raws = [
            make_raw(
                _post("1", likes=likes),
                source_id=source,
                collected_at=collected_at + timedelta(minutes=offsets.get(source, 0)),
            )
            for source, likes in likes_by_source.items()
        ]
        return normalize(raws, content_performance_schema()).records

    def test_highest_reliability_wins(self, make_raw, collected_at):
        """Test the most reliable source wins and losers are recorded."""
        records = self._records(make_raw, collected_at, {"a": 1, "b": 2, "c": 3})

        winners, resolved = reconcile(records, {"a": 0.5, "b": 0.9, "c": 0.7})

        assert len(winners) == 1
        assert winners[0].source_id == "b"
        assert winners[0].flags.conflicts == ["a", "c"]
        assert resolved == 1

    def test_tie_breaks_on_latest_collection(self, make_raw, collected_at):
        """Test equal reliability falls back to the most recent collection."""
        records = self._records(make_raw, collected_at, {"a": 1, "b": 2}, offsets={"a": 30})

        winners, _ = reconcile(records, {"a": 0.8, "b": 0.8})

        assert winners[0].source_id == "a"

    def test_tie_breaks_on_source_id(self, make_raw, collected_at):
        """Test full ties resolve to the lowest source id."""
        records = self._records(make_raw, collected_at, {"b": 1, "a": 2})

        winners, _ = reconcile(records, {"a": 0.8, "b": 0.8})

        assert winners[0].source_id == "a"

    def test_agreeing_sources_are_not_conflicts(self, make_raw, collected_at):
        """Test sources reporting identical content do not count as conflicts."""
        records = self._records(make_raw, collected_at, {"a": 5, "b": 5})

        winners, resolved = reconcile(records, {"a": 0.9, "b": 0.8})

        assert winners[0].flags.conflicts == []
        assert resolved == 0


class TestCleaningEngine:
    """Tests for the full cleaning stage."""

    async def test_process_reports_and_audits_quarantines(self, cleaning_settings, make_raw):
        """Test the stage returns a report and audits every quarantine."""
        audit = AsyncMock()
        engine = CleaningEngine(cleaning_settings, audit=audit)
        batch = [
            make_raw(_post("1", likes=1), key="1"),
            make_raw(_post("1", likes=1), key="1"),
            make_raw({"likes": 4}, key="2", source_id="source-b"),
        ]

        outcome = await engine.process(batch, run_id="run-1", reliability={"source-a": 0.9})

        assert outcome.report.input_count == 3
        assert outcome.report.duplicates_removed == 1
        assert outcome.report.normalized == 1
        assert outcome.report.quarantined == 1
        assert outcome.report.per_schema == {"content_performance": 1}
        assert outcome.rejections_by_source == {"source-b": 1}
        assert outcome.records[0].run_id == "run-1"

        event = audit.await_args.args[0]
        assert event.kind == AuditKind.QUARANTINE
        assert event.run_id == "run-1"
        assert event.source_id == "source-b"

    def test_normalize_by_schema_name(self, cleaning_settings, make_raw):
        """Test schemas can be addressed by registry name."""
        engine = CleaningEngine(cleaning_settings)

        result = engine.normalize([make_raw(_post("1"))], "content_performance")

        assert result.records[0].schema_name == "content_performance"

    async def test_process_audits_dropped_incomplete_records(self, make_raw):
        """Test records removed by the drop strategy leave an audit trail."""
        audit = AsyncMock()
        engine = CleaningEngine(Settings(cleaning_imputation_strategy="drop"), audit=audit)
        rows = [_post("1", impressions=100), _post("2", impressions=200), _post("3")]
        batch = [make_raw(row, key=row["post_id"]) for row in rows]

        outcome = await engine.process(batch, run_id="run-1")

        assert outcome.report.dropped_incomplete == 1
        events = [call.args[0] for call in audit.await_args_list]
        dropped = [e for e in events if e.details.get("reason") == "incomplete"]
        assert len(dropped) == 1
        event = dropped[0]
        assert event.kind == AuditKind.QUARANTINE
        assert event.run_id == "run-1"
        assert event.source_id == "source-a"
        assert event.record_id == outcome.dropped[0].record_id
        assert event.details["missing_fields"] == ["impressions"]

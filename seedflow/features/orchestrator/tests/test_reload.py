"""Tests for configuration reloads, the outbox and the scheduler tick."""

import os

import pytest
import yaml

from seedflow.core.exceptions import NotFoundError, SchemaMismatchError, ValidationError
from seedflow.features.orchestrator.schemas import RunStatus
from seedflow.shared.audit import AuditKind


def _write(path, data, bump=0):
    path.write_text(yaml.safe_dump(data))
    if bump:
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + bump))


@pytest.fixture
def config_path(orchestrator):
    return orchestrator.watcher.path


@pytest.fixture
def file_config(make_rows):
    return {
        "batch_schedule_seconds": 600,
        "targets": [
            {
                "target_id": "content_engine",
                "schemas": ["content_performance"],
                "method": "store_and_poll",
            }
        ],
        "sources": [
            {
                "type": "static",
                "source_id": "replay",
                "payload_kind": "social_post",
                "rows": make_rows(5, pii_every=0),
            }
        ],
        "policies": [{"preset": "retention_limit"}],
    }


class TestReload:
    """Tests for SeedingOrchestrator.reload_config."""

    async def test_applies_file(self, orchestrator, config_path, file_config):
        """Test targets, sources, policies and schedule come from the file."""
        _write(config_path, file_config)

        response = await orchestrator.reload_config()

        assert response.reloaded is True
        assert response.targets == ["content_engine", "engine"]
        assert "replay" in response.sources
        assert response.policies == ["retention_limit"]
        assert orchestrator.schedule_seconds == 600
        events, _ = await orchestrator.store.audit_events(kind=AuditKind.CONFIG_CHANGE)
        assert len(events) == 1

        unchanged = await orchestrator.reload_config()
        assert unchanged.reloaded is False

    async def test_removed_entries_are_unregistered(
        self, orchestrator, config_path, file_config
    ):
        """Test file-managed targets and sources disappear with the file entry."""
        _write(config_path, file_config)
        await orchestrator.reload_config()

        _write(config_path, {**file_config, "targets": [], "sources": []}, bump=10)
        response = await orchestrator.reload_config()

        assert response.targets == ["engine"]
        assert response.sources == ["source-a"]

    async def test_unknown_schema_applies_nothing(self, orchestrator, config_path, file_config):
        """Test a target with an unknown schema rejects the whole file."""
        file_config["targets"].append({"target_id": "weather", "schemas": ["forecast"]})
        _write(config_path, file_config)

        with pytest.raises(SchemaMismatchError):
            await orchestrator.reload_config()

        assert orchestrator.distribution.target_ids() == ["engine"]
        assert "replay" not in orchestrator.collection.source_ids

    async def test_unknown_policy_rejected(self, orchestrator, config_path, file_config):
        """Test an unknown governance preset is a validation error."""
        file_config["policies"] = [{"preset": "astrology"}]
        _write(config_path, file_config)

        with pytest.raises(ValidationError):
            await orchestrator.reload_config()

    async def test_missing_file(self, orchestrator):
        """Test a forced reload of a missing file is not found."""
        with pytest.raises(NotFoundError):
            await orchestrator.reload_config(force=True)
        assert (await orchestrator.reload_config()).reloaded is False


class TestOutbox:
    """Tests for store-and-poll targets."""

    async def test_rows_are_polled_by_cursor(self, orchestrator, config_path, file_config):
        """Test a consumer pages through delivered rows with the cursor."""
        _write(config_path, file_config)
        await orchestrator.reload_config()
        await orchestrator.start_run(["replay"], targets=["content_engine"])

        first = await orchestrator.read_outbox("content_engine", limit=3)
        rest = await orchestrator.read_outbox("content_engine", after=first.next_cursor)

        assert len(first.entries) == 3
        assert len(rest.entries) == 2
        assert (await orchestrator.read_outbox("content_engine", rest.next_cursor)).entries == []


class TestLifecycle:
    """Tests for start, tick and stop."""

    async def test_start_loads_config_and_tick_runs(
        self, orchestrator, config_path, file_config
    ):
        """Test start applies the file and a tick runs a batch over every target."""
        _write(config_path, file_config)

        await orchestrator.start()
        run = await orchestrator.tick()
        await orchestrator.stop()

        assert run.status == RunStatus.COMPLETED
        assert set(run.target_ids) == {"engine", "content_engine"}
        assert run.summary.collected == 105

    async def test_tick_skips_while_stopped(self, orchestrator):
        """Test the scheduler does not start runs during an emergency stop."""
        await orchestrator.emergency_stop("incident", "ops")

        assert await orchestrator.tick() is None
        assert await orchestrator.store.latest_run() is None

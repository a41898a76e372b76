"""Tests for the distribution configuration file."""

import os

import pytest

from seedflow.core.exceptions import ValidationError
from seedflow.features.distribution.config import ConfigWatcher, load_distribution_config

CONFIG = """
batch_schedule_seconds: 900
targets:
  - target_id: content_engine
    schemas: [content_performance]
    method: store_and_poll
    min_quality: 0.7
    policy_bindings: [pii_detection]
  - target_id: live_dashboard
    schemas: [navigation_behavior]
    method: message_push
    url: https://dashboard.test/ingest
    priority: realtime
    bias_sensitive: true
policies:
  - preset: minimum_completeness
    enforcement: blocking
    params: {min_completeness: 0.8}
gaps:
  - schema_name: content_performance
    template: social_media_content
    min_records: 100
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "distribution.yaml"
    path.write_text(CONFIG)
    return path


class TestLoad:
    """Tests for load_distribution_config."""

    def test_parses_targets_and_wiring(self, config_file):
        """Test targets, policies and gaps are parsed."""
        config = load_distribution_config(config_file)

        assert config.batch_schedule_seconds == 900
        assert [t.target_id for t in config.targets] == ["content_engine", "live_dashboard"]
        assert config.targets[0].min_quality == 0.7
        assert config.targets[1].priority == "realtime"
        assert config.policies[0].params == {"min_completeness": 0.8}
        assert config.gaps[0].min_records == 100

    def test_empty_file(self, tmp_path):
        """Test an empty file is an empty configuration."""
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = load_distribution_config(path)

        assert config.targets == []
        assert config.policies is None

    def test_missing_file(self, tmp_path):
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_distribution_config(tmp_path / "nope.yaml")

    @pytest.mark.parametrize(
        "content",
        [
            "targets: [{target_id: a, schemas: [x], min_quality: 2}]",
            "targets: {",
            "- just a list",
        ],
    )
    def test_invalid_content(self, tmp_path, content):
        """Test out-of-range values, bad YAML and non-mappings are rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text(content)

        with pytest.raises(ValidationError):
            load_distribution_config(path)


class TestConfigWatcher:
    """Tests for modification-time based reloading."""

    def test_reloads_only_on_change(self, config_file):
        """Test the file is re-read only when its mtime changes."""
        watcher = ConfigWatcher(config_file)

        first = watcher.poll()
        assert first is not None
        assert watcher.poll() is None

        config_file.write_text(CONFIG.replace("min_quality: 0.7", "min_quality: 0.9"))
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 10))

        second = watcher.poll()
        assert second is not None
        assert second.targets[0].min_quality == 0.9
        assert watcher.current is second

    def test_invalid_update_keeps_previous(self, config_file):
        """Test a broken file is skipped and the last good configuration kept."""
        watcher = ConfigWatcher(config_file)
        good = watcher.poll()

        config_file.write_text("targets: [{target_id: a}]")
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 10))

        assert watcher.poll() is None
        assert watcher.current is good
        with pytest.raises(ValidationError):
            watcher.poll(force=True)

    def test_missing_file_is_ignored(self, tmp_path):
        """Test polling a file that does not exist yet returns nothing."""
        watcher = ConfigWatcher(tmp_path / "later.yaml")

        assert watcher.changed() is False
        assert watcher.poll() is None

"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from seedflow.core.config import Settings, get_settings


def test_settings_has_defaults():
    """Settings should have sensible defaults."""
    settings = Settings()

    assert settings.app_name == "SeedFlow"
    assert settings.app_env == "development"
    assert settings.debug is False
    assert settings.log_level == "INFO"
    assert settings.log_format == "json"
    assert settings.api_port == 8123
    assert settings.state_store_backend == "sql"
    assert settings.synthetic_max_ratio == 0.3
    assert settings.orchestrator_auto_schedule is False


@pytest.mark.parametrize(
    ("env", "development", "testing", "production"),
    [
        ("development", True, False, False),
        ("testing", False, True, False),
        ("staging", False, False, False),
        ("production", False, False, True),
    ],
)
def test_environment_flags(env, development, testing, production):
    """Environment flags follow app_env; staging sets none of them."""
    settings = Settings(app_env=env)

    assert (settings.is_development, settings.is_testing, settings.is_production) == (
        development,
        testing,
        production,
    )


def test_get_settings_returns_singleton():
    """get_settings should return cached singleton."""
    settings1 = get_settings()
    settings2 = get_settings()

    assert settings1 is settings2


def test_settings_from_environment(monkeypatch):
    """Settings should load from environment variables."""
    monkeypatch.setenv("APP_NAME", "TestApp")
    monkeypatch.setenv("STATE_STORE_BACKEND", "memory")
    monkeypatch.setenv("BATCH_SCHEDULE_SECONDS", "120")

    # Create new settings instance (not cached)
    settings = Settings()

    assert settings.app_name == "TestApp"
    assert settings.state_store_backend == "memory"
    assert settings.batch_schedule_seconds == 120


@pytest.mark.parametrize("field", ["synthetic_max_ratio", "confidence_floor"])
def test_ratios_must_be_unit_interval(field):
    """Ratio-like settings outside [0, 1] are rejected."""
    with pytest.raises(ValidationError):
        Settings(**{field: 1.5})


def test_retry_delays_must_be_ordered():
    """The base retry delay may not exceed the maximum."""
    with pytest.raises(ValidationError):
        Settings(collection_retry_base_delay_seconds=10, collection_retry_max_delay_seconds=1)

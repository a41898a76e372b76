"""Pytest fixtures for synthetic generation tests."""

from datetime import UTC, datetime

import pytest

from seedflow.shared.synthetic.config import SyntheticTemplate, TemplatePreset


@pytest.fixture
def now():
    """Fixed end of the generation window."""
    return datetime(2026, 1, 15, 23, 30, tzinfo=UTC)


@pytest.fixture
def social_template():
    """Social media content preset with a fixed seed."""
    return SyntheticTemplate.from_preset(TemplatePreset.SOCIAL_MEDIA_CONTENT, seed=7)

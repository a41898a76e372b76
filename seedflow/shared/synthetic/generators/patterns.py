"""Timestamp generators shaped by business patterns."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from seedflow.shared.synthetic.config import PatternRule

# Typical hourly activity curve (00:00-23:00) for consumer traffic
DEFAULT_HOUR_WEIGHTS = [
    0.2, 0.1, 0.1, 0.1, 0.1, 0.2, 0.4, 0.7,
    1.0, 1.2, 1.3, 1.3, 1.4, 1.3, 1.2, 1.2,
    1.2, 1.3, 1.5, 1.7, 1.8, 1.5, 1.0, 0.5,
]  # fmt: skip

# Quarter-end push in marketing spend
DEFAULT_MONTH_WEIGHTS = {
    1: 0.8, 2: 0.9, 3: 1.2, 4: 0.9, 5: 1.0, 6: 1.2,
    7: 0.8, 8: 0.8, 9: 1.2, 10: 1.1, 11: 1.4, 12: 1.3,
}  # fmt: skip


class TimestampPatternGenerator:
    """Draws timestamps inside a trailing window, weighted by pattern."""

    def __init__(self, rng: np.random.Generator, now: datetime) -> None:
        """Initialize the generator.

        Args:
            rng: Seeded numpy random generator.
            now: End of the generation window (timezone-aware).
        """
        self.rng = rng
        self.now = now

    def sample(self, rule: PatternRule) -> datetime:
        """Draw one timestamp for ``rule``."""
        if rule.pattern == "business_hours":
            return self._business_hours(rule)
        if rule.pattern == "time_of_day":
            return self._time_of_day(rule)
        if rule.pattern == "seasonal":
            return self._seasonal(rule)
        raise ValueError(f"Unknown pattern: {rule.pattern}")

    def _day(self, window_days: int) -> datetime:
        offset = int(self.rng.integers(0, max(window_days, 1)))
        day = self.now - timedelta(days=offset)
        return day.replace(hour=0, minute=0, second=0, microsecond=0)

    def _finish(self, day: datetime, hour: int) -> datetime:
        minute = int(self.rng.integers(0, 60))
        second = int(self.rng.integers(0, 60))
        value = day + timedelta(hours=hour, minutes=minute, seconds=second)
        # The window is trailing; never emit future timestamps.
        return min(value, self.now)

    def _business_hours(self, rule: PatternRule) -> datetime:
        day = self._day(rule.window_days)
        if self.rng.random() < rule.business_weight:
            hour = int(self.rng.integers(rule.business_start, rule.business_end))
        else:
            off_hours = [h for h in range(24) if not rule.business_start <= h < rule.business_end]
            hour = int(self.rng.choice(off_hours))
        return self._finish(day, hour)

    def _time_of_day(self, rule: PatternRule) -> datetime:
        weights = np.asarray(rule.hour_weights or DEFAULT_HOUR_WEIGHTS, dtype=float)
        hour = int(self.rng.choice(24, p=weights / weights.sum()))
        return self._finish(self._day(rule.window_days), hour)

    def _seasonal(self, rule: PatternRule) -> datetime:
        month_weights = rule.month_weights or DEFAULT_MONTH_WEIGHTS
        # Weight each candidate day in the window by its month factor.
        days = [self._window_start(rule.window_days) + timedelta(days=i) for i in range(rule.window_days)]
        weights = np.asarray([month_weights.get(d.month, 1.0) for d in days], dtype=float)
        day = days[int(self.rng.choice(len(days), p=weights / weights.sum()))]
        hour = int(self.rng.integers(0, 24))
        return self._finish(day, hour)

    def _window_start(self, window_days: int) -> datetime:
        start = self.now - timedelta(days=max(window_days, 1) - 1)
        return start.replace(hour=0, minute=0, second=0, microsecond=0)

"""Source reliability from collection history."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

import numpy as np

RELIABILITY_WEIGHTS: dict[str, float] = {
    "historical_accuracy": 0.30,
    "uptime": 0.25,
    "consistency": 0.25,
    "update_frequency": 0.15,
    "validation": 0.05,
}


@dataclass
class SourceStats:
    """Rolling collection history for one source.

    Attributes:
        attempts: Collection calls made (including retries).
        successes: Calls that returned records or an empty page cleanly.
        failures: Calls that failed after retries.
        records_collected: Total raw records returned.
        records_rejected: Records later quarantined by normalization.
        recent_counts: Record counts of the most recent collections.
        last_success_at: Time of the last successful collection.
        expected_interval_hours: How often the source is expected to update.
    """

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    records_collected: int = 0
    records_rejected: int = 0
    recent_counts: deque[int] = field(default_factory=lambda: deque(maxlen=20))
    last_success_at: datetime | None = None
    expected_interval_hours: float = 24.0

    @property
    def error_rate(self) -> float:
        return self.failures / self.attempts if self.attempts else 0.0


def compute_reliability(prior: float, stats: SourceStats, now: datetime) -> float:
    """Weighted reliability score in [0, 1].

    Components:
        historical_accuracy: configured prior for the source.
        uptime: share of successful collection calls.
        consistency: 1 - coefficient of variation of recent record counts.
        update_frequency: 1 while the last success is within the expected
            interval, decaying linearly to 0 at three intervals.
        validation: share of collected records that normalized cleanly.

    Without history the prior is returned unchanged.
    """
    if stats.attempts == 0:
        return prior

    uptime = stats.successes / stats.attempts

    counts = np.asarray(stats.recent_counts, dtype=float)
    if counts.size >= 2 and counts.mean() > 0:
        consistency = float(max(0.0, 1.0 - counts.std() / counts.mean()))
    else:
        consistency = 1.0 if stats.successes else 0.0

    if stats.last_success_at is None:
        update_frequency = 0.0
    else:
        age_hours = (now - stats.last_success_at).total_seconds() / 3600
        interval = max(stats.expected_interval_hours, 1e-6)
        if age_hours <= interval:
            update_frequency = 1.0
        else:
            update_frequency = max(0.0, 1.0 - (age_hours - interval) / (2 * interval))

    validation = (
        1.0 - stats.records_rejected / stats.records_collected
        if stats.records_collected
        else 1.0
    )

    components = {
        "historical_accuracy": prior,
        "uptime": uptime,
        "consistency": consistency,
        "update_frequency": update_frequency,
        "validation": max(0.0, validation),
    }
    score = sum(RELIABILITY_WEIGHTS[name] * value for name, value in components.items())
    return float(min(1.0, max(0.0, score)))

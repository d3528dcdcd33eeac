"""
Windowed spending statistics.

StatsWindow keeps a running count, sum and sum of squares so the mean,
population standard deviation and outlier interval are updated in O(1)
per purchase. The derived values are rounded to cents, so summation
drift can never push a constant series outside its own interval.
RingBuffer owns the samples of one window and folds each eviction into
the same update as the insertion that caused it.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable

from .errors import NumericError
from .types import Sample

logger = logging.getLogger("peerwatch.stats")

DEFAULT_SIGMA_LEVEL = 3

# derived statistics are kept at cent precision
PRECISION = 2


def population_variance(n: int, total: float, square_total: float) -> float:
    """Q/n - (S/n)^2, refusing to return a negative value."""
    if n <= 0:
        return 0.0
    mean = total / n
    variance = square_total / n - mean * mean
    if variance < 0:
        raise NumericError(
            f"negative variance {variance!r} from n={n} S={total!r} Q={square_total!r}"
        )
    return variance


class StatsWindow:
    """
    Incremental mean / population stdev over a bounded window.

    The window itself does not store samples; the owner reports each new
    amount together with the amount it pushed out (if any)::

        stats = StatsWindow(sigma_level=3)
        stats.add(10.0)
        stats.add(12.0, evicted=9.5)
        stats.is_outlier(40.0)
    """

    def __init__(self, sigma_level: int = DEFAULT_SIGMA_LEVEL):
        self.sigma_level = int(sigma_level)
        self._count: int = 0
        self._sum: float = 0.0
        self._square_sum: float = 0.0

        self.mean: float = 0.0
        self.stdev: float = 0.0
        self.lower_bound: float = 0.0
        self.upper_bound: float = 0.0

    @property
    def count(self) -> int:
        return self._count

    def add(self, amount: float, evicted: float | None = None):
        """Fold one insertion, and optionally one eviction, into the totals."""
        if evicted is None:
            self._count += 1
        else:
            self._sum -= evicted
            self._square_sum -= evicted * evicted
        self._sum += amount
        self._square_sum += amount * amount
        self._recompute()

    def interval(self, sigma_level: int | None = None) -> tuple[float, float]:
        """Outlier interval [mean - k*sd, mean + k*sd] for the given level."""
        if sigma_level is None or sigma_level == self.sigma_level:
            return self.lower_bound, self.upper_bound
        spread = sigma_level * self.stdev
        return round(self.mean - spread, PRECISION), round(self.mean + spread, PRECISION)

    def is_outlier(self, amount: float, sigma_level: int | None = None) -> bool:
        if self._count < 2:
            return False
        lower, upper = self.interval(sigma_level)
        return amount < lower or amount > upper

    def reset(self):
        self._count = 0
        self._sum = 0.0
        self._square_sum = 0.0
        self._recompute()

    def stats(self) -> dict:
        return {
            "n": self._count,
            "mean": round(self.mean, 4),
            "stdev": round(self.stdev, 4),
            "sigma_level": self.sigma_level,
            "lower_bound": round(self.lower_bound, 4),
            "upper_bound": round(self.upper_bound, 4),
        }

    # ── Internal ───────────────────────────────────────────────────────

    def _recompute(self):
        if self._count == 0:
            self.mean = self.stdev = 0.0
            self.lower_bound = self.upper_bound = 0.0
            return

        self.mean = round(self._sum / self._count, PRECISION)
        try:
            variance = population_variance(self._count, self._sum, self._square_sum)
        except NumericError as e:
            logger.debug(f"Clamping variance to zero: {e}")
            variance = 0.0
        self.stdev = round(math.sqrt(variance), PRECISION)

        spread = self.sigma_level * self.stdev
        self.lower_bound = round(self.mean - spread, PRECISION)
        self.upper_bound = round(self.mean + spread, PRECISION)


class RingBuffer:
    """
    Fixed-capacity circular buffer of Samples with its own StatsWindow.

    Once full, every insert evicts the oldest sample and returns it.
    """

    def __init__(self, capacity: int, sigma_level: int = DEFAULT_SIGMA_LEVEL):
        if capacity < 1:
            raise ValueError(f"RingBuffer capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._slots: list[Sample | None] = [None] * capacity
        self._start = 0
        self._count = 0
        self.stats = StatsWindow(sigma_level)

    def __len__(self) -> int:
        return self._count

    @property
    def full(self) -> bool:
        return self._count == self.capacity

    def insert(self, sample: Sample) -> Sample | None:
        """Append `sample`; return the evicted oldest sample when full."""
        stop = (self._start + self._count) % self.capacity
        evicted = self._slots[self._start] if self.full else None

        self.stats.add(sample.amount, None if evicted is None else evicted.amount)

        self._slots[stop] = sample
        if evicted is not None:
            self._start = (self._start + 1) % self.capacity
        else:
            self._count += 1
        return evicted

    def extend(self, samples: Iterable[Sample]):
        for sample in samples:
            self.insert(sample)

    def ordered_snapshot(self) -> list[Sample]:
        """Contents oldest first."""
        return [
            self._slots[(self._start + i) % self.capacity]
            for i in range(self._count)
        ]

    def flush(self) -> list[Sample]:
        """Drain every sample (oldest first) and reset the statistics."""
        samples = self.ordered_snapshot()
        self.clear()
        return samples

    def clear(self):
        self._slots = [None] * self.capacity
        self._start = 0
        self._count = 0
        self.stats.reset()

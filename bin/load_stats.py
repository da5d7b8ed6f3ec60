#!/usr/bin/env python3
"""
FLOW-Load Streaming Statistics

Online aggregation of request outcomes for the load generator.
Nothing here buffers samples: every statistic is updated in O(1) per
request so a run can go on indefinitely.

This module provides:
- SampleOutcome: one completed request (latency, status code)
- RunningStats: Welford mean/variance plus a decayed variance estimator
- Histogram: bucket -> count, rendered in ascending key order
- StatsAggregator: the single consumer that owns all of the above

Author: FLOW-Load Team
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

from tqdm import tqdm


# Forgetting factor applied per sample to the decayed estimator
DECAY = 0.999

# Width of one latency histogram bin in milliseconds
LATENCY_BIN_MS = 100


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class SampleOutcome:
    """Result of a single completed request."""
    latency_ms: float
    status_code: int


@dataclass
class RunningStats:
    """
    Running latency statistics.

    `mean` and `m2` follow Welford's algorithm over the full history.
    `decayed_count` and `decayed_m2` are the same sums with every older
    term multiplied by DECAY per new sample, so the reported variance
    follows regime changes much faster than the full-history one.

    The decayed term is computed from the full-history delta and the
    already-advanced mean; there is no separately decayed mean.
    """
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    decayed_count: float = 0.0
    decayed_m2: float = 0.0
    max: float = 0.0
    min: float = math.inf

    def add(self, x: float) -> None:
        """Fold one latency sample into the running sums."""
        self.max = max(self.max, x)
        self.min = min(self.min, x)

        self.count += 1
        delta = x - self.mean
        self.mean += delta / self.count
        t = delta * (x - self.mean)
        self.m2 += t

        self.decayed_count = self.decayed_count * DECAY + 1.0
        self.decayed_m2 = self.decayed_m2 * DECAY + t

    @property
    def variance(self) -> float:
        """Recency-weighted variance; NaN until more than one effective sample."""
        if self.decayed_count <= 1:
            return math.nan
        return self.decayed_m2 / (self.decayed_count - 1)

    @property
    def welford_variance(self) -> float:
        """Sample variance over the full history."""
        if self.count < 2:
            return math.nan
        return self.m2 / (self.count - 1)


@dataclass
class Histogram:
    """Occurrence counts keyed by integer bucket."""
    data: Counter = field(default_factory=Counter)

    def add(self, key: int) -> None:
        self.data[key] += 1

    def total(self) -> int:
        return sum(self.data.values())

    def format(self, unit: str = "") -> str:
        """Render as `<key><unit>:<count>` pairs sorted by key."""
        return " ".join(f"{k}{unit}:{self.data[k]}" for k in sorted(self.data))


def _fixed(value: float) -> str:
    """Two-decimal rendering; NaN prints as `NaN`."""
    if math.isnan(value):
        return "NaN"
    return f"{value:.2f}"


def latency_bucket(latency_ms: float) -> int:
    """Upper bound of the 100ms bin a latency falls into (0 -> 100, 100 -> 200)."""
    return int(latency_ms // LATENCY_BIN_MS) * LATENCY_BIN_MS + LATENCY_BIN_MS


# =============================================================================
# AGGREGATOR
# =============================================================================

class StatsAggregator:
    """
    Owner of the run's statistics.

    Exactly one caller (the control loop) may mutate an aggregator; all
    serialization is structural, so there is no lock.
    """

    def __init__(
        self,
        progress_every: int = 1000,
        emit: Optional[Callable[[str], None]] = None,
    ):
        self.stats = RunningStats()
        self.latency_hist = Histogram()
        self.status_hist = Histogram()
        self.dispatched = 0
        self.progress_every = progress_every
        self._emit = emit if emit is not None else tqdm.write

    def record(self, outcome: SampleOutcome) -> None:
        """Consume one outcome; emits a progress line every `progress_every` samples."""
        self.stats.add(outcome.latency_ms)
        self.latency_hist.add(latency_bucket(outcome.latency_ms))
        self.status_hist.add(outcome.status_code)

        if self.progress_every > 0 and self.stats.count % self.progress_every == 0:
            self._emit(self.snapshot())

    def note_dispatch(self) -> None:
        self.dispatched += 1

    def snapshot(self) -> str:
        s = self.stats
        return (
            f"sent {s.count}/{self.dispatched} requests "
            f"avg:{s.mean:.2f} v:{_fixed(s.variance)} max:{s.max:.2f} "
            f"status_code[{self.status_hist.format()}]"
        )

    def latency_histogram(self) -> str:
        return "\t" + self.latency_hist.format("ms")

    def final_report(self) -> str:
        return self.snapshot() + "\n" + self.latency_histogram()

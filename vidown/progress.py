"""
Turns cumulative byte counts into smoothed speed, ETA and percent.

The estimator is pure state: it never reads a clock on its own unless it is
given one, which keeps it deterministic under test.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .constants import PROGRESS_INTERVAL_SECONDS, SPEED_EMA_ALPHA


@dataclass(frozen=True)
class ProgressSnapshot:
    bytes_received: int
    total_bytes: Optional[int]
    speed_bps: float
    eta_seconds: Optional[int]
    percent: Optional[int]


def compute_percent(bytes_received: int, total_bytes: Optional[int]) -> Optional[int]:
    """Returns floor(100 * received / total) clamped to [0, 100], or None if the total is unknown."""
    if not total_bytes or total_bytes <= 0:
        return None
    percent = math.floor(100 * bytes_received / total_bytes)
    return max(0, min(100, percent))


def compute_eta(bytes_received: int, total_bytes: Optional[int], speed_bps: float) -> Optional[int]:
    """Returns the remaining seconds, or None when it cannot be estimated."""
    if not total_bytes or total_bytes <= 0 or speed_bps <= 0:
        return None
    remaining = max(total_bytes - bytes_received, 0)
    return math.ceil(remaining / speed_bps)


class ProgressEstimator:
    """
    Exponentially smoothed transfer speed with a fixed update cadence.

    Callers feed every byte count through ``update``; a snapshot comes back only
    when the rate limit allows a recomputation (or on ``flush``), so high-throughput
    links do not turn into event storms.
    """

    def __init__(self, total_bytes: Optional[int] = None, alpha: float = SPEED_EMA_ALPHA,
                 min_interval: float = PROGRESS_INTERVAL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.total_bytes = total_bytes
        self.alpha = alpha
        self.min_interval = min_interval
        self.clock = clock
        self.bytes_received = 0
        self.speed_ema: Optional[float] = None
        self.last_tick: Optional[float] = None
        self.last_bytes = 0

    def set_total(self, total_bytes: Optional[int]):
        self.total_bytes = total_bytes

    def restart(self):
        """Forgets the rate history for a new attempt; the byte high-water mark is kept."""
        self.speed_ema = None
        self.last_tick = None
        self.last_bytes = self.bytes_received

    @property
    def speed_bps(self) -> float:
        return self.speed_ema or 0.0

    def update(self, bytes_received: int, now: Optional[float] = None, flush: bool = False) -> Optional[ProgressSnapshot]:
        """
        Records a cumulative byte count.

        Args:
            bytes_received: Total bytes transferred so far. Values below the running
                maximum are ignored.
            now: The sample time in seconds; defaults to the estimator's clock.
            flush: Bypass the rate limit and always return a snapshot.

        Returns:
            A new snapshot when speed/ETA/percent were recomputed, otherwise None.
        """
        if now is None:
            now = self.clock()
        self.bytes_received = max(self.bytes_received, bytes_received)

        if self.last_tick is None:
            self.last_tick = now
            self.last_bytes = self.bytes_received
            return self.snapshot()

        elapsed = now - self.last_tick
        if elapsed < self.min_interval and not flush:
            return None

        if elapsed > 0:
            delta = max(self.bytes_received - self.last_bytes, 0)
            instant = delta / elapsed
            if self.speed_ema is None:
                self.speed_ema = instant
            else:
                self.speed_ema = self.alpha * instant + (1 - self.alpha) * self.speed_ema
            self.last_tick = now
            self.last_bytes = self.bytes_received
        return self.snapshot()

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            bytes_received=self.bytes_received,
            total_bytes=self.total_bytes,
            speed_bps=self.speed_bps,
            eta_seconds=compute_eta(self.bytes_received, self.total_bytes, self.speed_bps),
            percent=compute_percent(self.bytes_received, self.total_bytes),
        )


class ProgressSink(Protocol):
    """Where acquisition code writes transfer progress; the queue manager drains it."""

    async def report(self, bytes_received: int) -> None:
        ...

    async def set_total(self, total_bytes: Optional[int]) -> None:
        ...


class NullSink:
    """A sink that discards everything."""

    async def report(self, bytes_received: int) -> None:
        return None

    async def set_total(self, total_bytes: Optional[int]) -> None:
        return None

"""
Network measurement statistics.

Pure functions and lightweight dataclasses -- no I/O, no side effects.
Everything here is deterministic and easy to unit-test.  Every function
returns ``0.0`` on empty input instead of raising.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Sequence


# ---------------------------------------------------------------------------
# Core aggregates
# ---------------------------------------------------------------------------

def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def median(values: Sequence[float]) -> float:
    """Middle value; average of the two central values for even input."""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def minimum(values: Sequence[float]) -> float:
    return min(values) if values else 0.0


def maximum(values: Sequence[float]) -> float:
    return max(values) if values else 0.0


def stdev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    avg = mean(values)
    return math.sqrt(mean([(v - avg) ** 2 for v in values]))


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolation percentile between order statistics."""
    if not values:
        return 0.0

    ordered = sorted(values)
    n = len(ordered)
    idx = (clamp(p, 0.0, 100.0) / 100) * (n - 1)
    lower = int(idx)
    upper = min(lower + 1, n - 1)
    weight = idx - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight


def jitter(latency_samples: Sequence[float]) -> float:
    """Jitter is the population standard deviation of the latency samples."""
    return stdev(latency_samples)


def packet_loss(expected: int, received: int) -> float:
    """Fraction of probes lost, ``0.0`` when nothing was expected."""
    if expected <= 0:
        return 0.0
    return (expected - received) / expected


def moving_average(values: Sequence[float], window: int) -> List[float]:
    if not values or window <= 0:
        return []
    result = []
    for i in range(len(values)):
        start = max(0, i - window + 1)
        result.append(mean(values[start:i + 1]))
    return result


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


# ---------------------------------------------------------------------------
# Throughput helpers
# ---------------------------------------------------------------------------

def speed_mbps(byte_count: float, seconds: float) -> float:
    """Megabits per second for *byte_count* bytes moved in *seconds*."""
    if seconds <= 0:
        return 0.0
    return (byte_count * 8) / seconds / 1_000_000


def apply_overhead_compensation(speed: float, compensation: float) -> float:
    return speed * (1 + compensation)


def stability(speeds: Sequence[float]) -> float:
    """0-100 score from the coefficient of variation; 100 is constant speed."""
    if len(speeds) < 2:
        return 100.0
    avg = mean(speeds)
    if avg <= 0:
        return 0.0 if stdev(speeds) > 0 else 100.0
    return max(0.0, 100 * (1 - stdev(speeds) / avg))


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Sample:
    """A timestamped measurement, immutable once recorded."""

    timestamp: float
    value: float


@dataclass
class LatencyResultSet:
    """Latency samples of one series and the statistics derived from them.

    Statistics cover successful samples only; ``attempted`` counts every
    probe attempt, so ``packet_loss`` (a percentage) reflects failures.
    """

    samples: List[Sample] = field(default_factory=list)
    attempted: int = 0

    @property
    def values(self) -> List[float]:
        return [s.value for s in self.samples]

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def min(self) -> float:
        return minimum(self.values)

    @property
    def max(self) -> float:
        return maximum(self.values)

    @property
    def avg(self) -> float:
        return mean(self.values)

    @property
    def median(self) -> float:
        return median(self.values)

    @property
    def jitter(self) -> float:
        return jitter(self.values)

    @property
    def p95(self) -> float:
        return percentile(self.values, 95)

    @property
    def packet_loss(self) -> float:
        return packet_loss(self.attempted, self.count) * 100

    def to_dict(self) -> dict:
        return {
            "samples": [
                {"timestamp": s.timestamp, "latency": round(s.value, 3)}
                for s in self.samples
            ],
            "attempted": self.attempted,
            "count": self.count,
            "min": round(self.min, 3),
            "max": round(self.max, 3),
            "avg": round(self.avg, 3),
            "median": round(self.median, 3),
            "p95": round(self.p95, 3),
            "jitter": round(self.jitter, 3),
            "packet_loss": round(self.packet_loss, 2),
        }


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_speed(speed: float) -> str:
    """Human-readable speed string."""
    if speed >= 1000:
        return f"{speed / 1000:.2f} Gbps"
    return f"{speed:.2f} Mbps"


def format_latency(latency_ms: float) -> str:
    """Human-readable latency string."""
    if latency_ms >= 1000:
        return f"{latency_ms / 1000:.2f} s"
    return f"{latency_ms:.1f} ms"

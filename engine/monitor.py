"""
Continuous monitoring sessions.

A session samples the link on a fixed interval and keeps a bounded, ordered
buffer of data points plus rolling statistics.  Latency is probed on every
tick; throughput is re-measured with a short transfer only when the last
measurement is older than ``throughput_refresh_interval_ms`` and otherwise
re-used with a little synthetic variation (those points are flagged
``estimated``).

The manager is the session's only writer.  Sessions are immutable: each tick
builds the next buffer and statistics in full and swaps them in with one
assignment, so readers never see a buffer and statistics that disagree.

State machine::

    STOPPED --start()--> RUNNING --pause()--> PAUSED --resume()--> RUNNING
       ^                    |                   |
       +------stop()--------+-------stop()------+
"""
from __future__ import annotations

import logging
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Optional, Sequence, Tuple

from .config import TestConfig
from .constants import MONITOR_LATENCY_TIMEOUT_MS, MONITOR_SPEED_VARIATION, MONITOR_WINDOW
from .errors import ConnectivityError, NetPulseError, TransferError
from .events import EventEmitter
from .latency import LatencyProber
from .quality import METHOD_WORST, QualityLevel, assess
from .stats import jitter, mean, packet_loss
from .throughput import ThroughputConfig, ThroughputEngine
from .timer import RepeatingTask

LOGGER = logging.getLogger(__name__)

EVENTS = ("data", "status", "error")


class MonitorStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MonitoringDataPoint:
    timestamp: float
    latency: float
    download_speed: float
    upload_speed: float
    jitter: float
    packet_loss: float               # percent
    quality: QualityLevel
    estimated: bool = False          # throughput re-used, not measured

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "latency": round(self.latency, 2),
            "download_speed": round(self.download_speed, 2),
            "upload_speed": round(self.upload_speed, 2),
            "jitter": round(self.jitter, 2),
            "packet_loss": round(self.packet_loss, 2),
            "quality": self.quality.value,
            "estimated": self.estimated,
        }


@dataclass(frozen=True)
class SessionStatistics:
    average_latency: float = 0.0
    average_download: float = 0.0
    average_upload: float = 0.0
    average_jitter: float = 0.0
    average_packet_loss: float = 0.0
    overall_quality: QualityLevel = QualityLevel.EXCELLENT
    sample_count: int = 0

    @classmethod
    def from_points(cls, points: Sequence[MonitoringDataPoint]) -> SessionStatistics:
        """Averages over *points*; overall quality is worst-of-five on the averages."""
        if not points:
            return cls()
        avg_latency = mean([p.latency for p in points])
        avg_download = mean([p.download_speed for p in points])
        avg_upload = mean([p.upload_speed for p in points])
        avg_jitter = mean([p.jitter for p in points])
        avg_loss = mean([p.packet_loss for p in points])
        overall = assess(
            avg_latency, avg_download, avg_upload, avg_jitter, avg_loss, method=METHOD_WORST
        ).overall
        return cls(
            average_latency=avg_latency,
            average_download=avg_download,
            average_upload=avg_upload,
            average_jitter=avg_jitter,
            average_packet_loss=avg_loss,
            overall_quality=overall,
            sample_count=len(points),
        )

    def to_dict(self) -> dict:
        return {
            "average_latency": round(self.average_latency, 2),
            "average_download": round(self.average_download, 2),
            "average_upload": round(self.average_upload, 2),
            "average_jitter": round(self.average_jitter, 2),
            "average_packet_loss": round(self.average_packet_loss, 2),
            "overall_quality": self.overall_quality.value,
            "sample_count": self.sample_count,
        }


@dataclass(frozen=True)
class MonitoringSession:
    id: str
    start_time: float
    max_data_points: int
    status: MonitorStatus = MonitorStatus.STOPPED
    end_time: Optional[float] = None
    data_points: Tuple[MonitoringDataPoint, ...] = ()
    statistics: SessionStatistics = field(default_factory=SessionStatistics)

    def with_point(self, point: MonitoringDataPoint) -> MonitoringSession:
        """A copy with *point* appended, oldest evicted, statistics rebuilt."""
        points = (self.data_points + (point,))[-self.max_data_points:]
        return replace(self, data_points=points, statistics=SessionStatistics.from_points(points))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "data_points": [p.to_dict() for p in self.data_points],
            "statistics": self.statistics.to_dict(),
        }


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class MonitoringSessionManager:
    """Owns at most one live session and drives it on a ``RepeatingTask``."""

    def __init__(
        self,
        prober: LatencyProber,
        engine: ThroughputEngine,
        config: Optional[TestConfig] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.prober = prober
        self.engine = engine
        self.config = config or TestConfig()
        self.clock = clock
        self.rng = rng or random.Random()

        self.session: Optional[MonitoringSession] = None
        self._events = EventEmitter(EVENTS)
        self._timer: Optional[RepeatingTask] = None
        self._latencies: Deque[float] = deque(maxlen=MONITOR_WINDOW)
        self._attempts: Deque[bool] = deque(maxlen=MONITOR_WINDOW)
        self._throughput: Optional[Tuple[float, float]] = None
        self._throughput_at = 0.0

    # -- Subscriptions ------------------------------------------------------

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to ``data``, ``status`` or ``error``."""
        return self._events.on(event, callback)

    @property
    def status(self) -> MonitorStatus:
        return self.session.status if self.session else MonitorStatus.STOPPED

    @property
    def statistics(self) -> SessionStatistics:
        return self.session.statistics if self.session else SessionStatistics()

    # -- Control ------------------------------------------------------------

    async def start(self) -> MonitoringSession:
        """Start a new session; the first sample is taken before this returns."""
        if self.status is not MonitorStatus.STOPPED:
            raise RuntimeError(f"Cannot start monitoring while {self.status.value}")

        self._latencies.clear()
        self._attempts.clear()
        self._throughput = None

        session = MonitoringSession(
            id=uuid.uuid4().hex[:12],
            start_time=self.clock(),
            max_data_points=self.config.max_data_points,
        )
        point = await self._sample()

        self.session = replace(session.with_point(point), status=MonitorStatus.RUNNING)
        self._events.emit("data", point)
        self._start_timer()
        LOGGER.info(
            "Monitoring session %s started (every %.0f ms)",
            session.id, self.config.monitoring_interval_ms,
        )
        self._events.emit("status", MonitorStatus.RUNNING)
        return self.session

    async def pause(self) -> None:
        if self.status is not MonitorStatus.RUNNING:
            raise RuntimeError(f"Cannot pause monitoring while {self.status.value}")
        await self._stop_timer()
        self._set_status(MonitorStatus.PAUSED)

    async def resume(self) -> None:
        if self.status is not MonitorStatus.PAUSED:
            raise RuntimeError(f"Cannot resume monitoring while {self.status.value}")
        self._start_timer()
        self._set_status(MonitorStatus.RUNNING)

    async def stop(self) -> MonitoringSession:
        """Halt sampling and stamp ``end_time``; returns the final session."""
        if self.session is None or self.status is MonitorStatus.STOPPED:
            raise RuntimeError("Monitoring is not running")
        await self._stop_timer()
        self.session = replace(self.session, end_time=self.clock())
        self._set_status(MonitorStatus.STOPPED)
        return self.session

    # -- Scheduling ---------------------------------------------------------

    def _start_timer(self) -> None:
        self._timer = RepeatingTask(
            self._tick,
            self.config.monitoring_interval_ms / 1000,
            name="netpulse-monitor",
        )
        self._timer.start()

    async def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            await timer.cancel()

    def _set_status(self, status: MonitorStatus) -> None:
        self.session = replace(self.session, status=status)
        LOGGER.info("Monitoring %s", status.value)
        self._events.emit("status", status)

    async def _tick(self) -> None:
        try:
            point = await self._sample()
        except NetPulseError as exc:
            LOGGER.warning("Monitoring sample skipped: %s", exc)
            self._events.emit("error", exc)
            return

        if self.session is None or self.session.status is not MonitorStatus.RUNNING:
            return
        self.session = self.session.with_point(point)
        self._events.emit("data", point)

    # -- Sampling -----------------------------------------------------------

    async def _sample(self) -> MonitoringDataPoint:
        latency = await self.prober.get_current_latency(MONITOR_LATENCY_TIMEOUT_MS)
        self._attempts.append(latency is not None)
        if latency is None:
            raise ConnectivityError("Latency probe failed")
        self._latencies.append(latency)

        download, upload, estimated = await self._sample_throughput()
        jit = jitter(list(self._latencies))
        loss = packet_loss(len(self._attempts), sum(self._attempts)) * 100
        quality = assess(latency, download, upload, jit, loss, method=METHOD_WORST).overall

        return MonitoringDataPoint(
            timestamp=self.clock(),
            latency=latency,
            download_speed=download,
            upload_speed=upload,
            jitter=jit,
            packet_loss=loss,
            quality=quality,
            estimated=estimated,
        )

    async def _sample_throughput(self) -> Tuple[float, float, bool]:
        """(download, upload, estimated) -- measured when stale, otherwise re-used."""
        age_ms = (self.clock() - self._throughput_at) * 1000
        if self._throughput is None or age_ms >= self.config.throughput_refresh_interval_ms:
            cfg = ThroughputConfig(
                duration_ms=self.config.monitor_transfer_duration_ms,
                connection_count=self.config.monitor_connections,
                overhead_compensation=self.config.overhead_compensation,
                progress_interval_ms=self.config.progress_interval_ms,
                progressive=False,
                allow_simulated_fallback=self.config.allow_simulated_fallback,
            )
            try:
                down = await self.engine.measure_download(cfg)
                up = await self.engine.measure_upload(cfg)
            except TransferError as exc:
                if self._throughput is None:
                    raise
                LOGGER.warning("Throughput refresh failed, re-using last measurement: %s", exc)
                self._throughput_at = self.clock()
            else:
                self._throughput = (down.speed, up.speed)
                self._throughput_at = self.clock()
                return down.speed, up.speed, False

        down, up = self._throughput
        return self._vary(down), self._vary(up), True

    def _vary(self, speed: float) -> float:
        half = MONITOR_SPEED_VARIATION / 2
        return max(0.0, speed * (1 + self.rng.uniform(-half, half)))

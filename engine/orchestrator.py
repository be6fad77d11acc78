"""
One-shot test orchestration.

Runs the phases of a full test in order and maps each component's own 0-100
progress onto a slice of the overall bar::

    initializing   0-10 %   server selection
    latency       10-30 %
    transition    30 %      short pause between phases
    download      30-70 %
    upload        70-100 %

The orchestrator fails fast: the first unrecovered component error moves
the run to ``ERROR`` and is re-raised.  ``stop_test()`` moves it to
``CANCELLED``; a cancelled run never fires ``complete``.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import TestConfig
from .constants import SETTLE_TIMEOUT
from .errors import MeasurementTimeoutError, RunCancelledError
from .events import EventEmitter
from .latency import LatencyProber
from .progress import Phase, ProgressCallback, ProgressEvent
from .quality import QualityAssessment, assess
from .servers import TestServer
from .stats import LatencyResultSet
from .throughput import ThroughputConfig, ThroughputEngine, ThroughputResult

LOGGER = logging.getLogger(__name__)

# (start, end) of each phase on the overall progress bar
PHASE_RANGES: Dict[Phase, tuple] = {
    Phase.INITIALIZING: (0.0, 10.0),
    Phase.LATENCY: (10.0, 30.0),
    Phase.TRANSITION: (30.0, 30.0),
    Phase.DOWNLOAD: (30.0, 70.0),
    Phase.UPLOAD: (70.0, 100.0),
}

EVENTS = ("progress", "phase", "complete", "error")

ServerSelector = Callable[[ProgressCallback], Awaitable[TestServer]]


@dataclass
class TestResult:
    """Everything one completed run measured."""

    __test__ = False  # not a test case

    latency: LatencyResultSet
    download: ThroughputResult
    upload: ThroughputResult
    quality: QualityAssessment
    server: Optional[TestServer] = None
    duration: float = 0.0
    config: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "duration": round(self.duration, 2),
            "server": self.server.to_dict() if self.server else None,
            "latency": self.latency.to_dict(),
            "download": self.download.to_dict(),
            "upload": self.upload.to_dict(),
            "quality": self.quality.to_dict(),
            "config": self.config,
        }


class TestOrchestrator:
    """
    Drives a full run: server selection, latency, download, upload.

    One instance handles one run at a time; ``start_test`` while a run is in
    progress raises ``RuntimeError``.
    """

    __test__ = False  # not a test case

    def __init__(
        self,
        prober: LatencyProber,
        engine: ThroughputEngine,
        config: Optional[TestConfig] = None,
        select_server: Optional[ServerSelector] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.prober = prober
        self.engine = engine
        self.config = config or TestConfig()
        self.select_server = select_server
        self.clock = clock

        self.phase = Phase.IDLE
        self.result: Optional[TestResult] = None
        self._events = EventEmitter(EVENTS)
        self._cancel = asyncio.Event()
        self._running = False
        self._phase_floor = 0.0

    # -- Subscriptions ------------------------------------------------------

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to ``progress``, ``phase``, ``complete`` or ``error``."""
        return self._events.on(event, callback)

    @property
    def running(self) -> bool:
        return self._running

    # -- Control ------------------------------------------------------------

    def stop_test(self) -> None:
        """Request cancellation; the running ``start_test`` raises ``RunCancelledError``."""
        if self._running:
            LOGGER.info("Stop requested during %s", self.phase.value)
            self._cancel.set()

    async def start_test(self) -> TestResult:
        if self._running:
            raise RuntimeError("A test is already running")

        self._running = True
        self._cancel = asyncio.Event()
        self.result = None
        cfg = self.config
        started = self.clock()

        try:
            server: Optional[TestServer] = None
            self._enter(Phase.INITIALIZING, "Selecting server...")
            if self.select_server is not None:
                server = await self._run_phase(
                    self.select_server(self._scaled(Phase.INITIALIZING)),
                    cfg.latency_timeout_ms,
                )

            self._enter(Phase.LATENCY, "Testing latency...")
            latency = await self._run_phase(
                self.prober.measure_series(
                    count=cfg.latency_sample_count,
                    interval_ms=cfg.latency_interval_ms,
                    timeout_ms=cfg.latency_timeout_ms,
                    on_progress=self._scaled(Phase.LATENCY),
                    cancel=self._cancel,
                ),
                # every sample may walk the whole fallback chain
                cfg.latency_sample_count * (
                    cfg.latency_timeout_ms * max(len(self.prober.strategies), 1)
                    + cfg.latency_interval_ms
                ),
            )

            self._enter(Phase.TRANSITION, "Preparing throughput test...")
            await self._pause(cfg.transition_delay_ms / 1000)

            throughput = ThroughputConfig(
                duration_ms=cfg.transfer_duration_ms,
                connection_count=cfg.parallel_connections,
                overhead_compensation=cfg.overhead_compensation,
                progress_interval_ms=cfg.progress_interval_ms,
                progressive=cfg.progressive_payload,
                allow_simulated_fallback=cfg.allow_simulated_fallback,
            )
            # probe + transfer + settle
            transfer_limit = (
                throughput.probe_duration_ms + cfg.transfer_duration_ms + SETTLE_TIMEOUT * 1000
            )

            self._enter(Phase.DOWNLOAD, "Testing download speed...")
            download = await self._run_phase(
                self.engine.measure_download(
                    throughput, self._scaled(Phase.DOWNLOAD), self._cancel
                ),
                transfer_limit,
            )

            self._enter(Phase.UPLOAD, "Testing upload speed...")
            upload = await self._run_phase(
                self.engine.measure_upload(
                    throughput, self._scaled(Phase.UPLOAD), self._cancel
                ),
                transfer_limit,
            )

            quality = assess(
                latency=latency.avg,
                download=download.speed,
                upload=upload.speed,
                jitter=latency.jitter,
                packet_loss=latency.packet_loss,
                method=cfg.quality_method,
            )
            result = TestResult(
                latency=latency,
                download=download,
                upload=upload,
                quality=quality,
                server=server,
                duration=self.clock() - started,
                config=cfg.to_dict(),
            )

            self._set_phase(Phase.COMPLETED)
            self._progress(ProgressEvent(Phase.COMPLETED, 100.0, "Test complete"))
            self.result = result
            LOGGER.info(
                "Test complete in %.1fs: %.1f ms, %.2f/%.2f Mbps, %s (%.1f)",
                result.duration, latency.avg, download.speed, upload.speed,
                quality.overall.value, quality.score,
            )
            self._events.emit("complete", result)
            return result

        except RunCancelledError:
            self._set_phase(Phase.CANCELLED)
            raise
        except Exception as exc:
            LOGGER.error("Test failed during %s: %s", self.phase.value, exc)
            self._set_phase(Phase.ERROR)
            self._events.emit("error", exc)
            raise
        finally:
            self._running = False

    # -- Internals ----------------------------------------------------------

    def _set_phase(self, phase: Phase) -> None:
        self.phase = phase
        LOGGER.info("Phase: %s", phase.value)
        self._events.emit("phase", phase)

    def _enter(self, phase: Phase, label: str) -> None:
        """Check for cancellation, switch phase and report its start."""
        if self._cancel.is_set():
            raise RunCancelledError(f"Cancelled before {phase.value}")
        self._set_phase(phase)
        self._phase_floor = 0.0
        start, _ = PHASE_RANGES[phase]
        self._progress(ProgressEvent(phase, start, label))

    def _progress(self, event: ProgressEvent) -> None:
        self._events.emit("progress", event)

    def _scaled(self, phase: Phase) -> ProgressCallback:
        """Map a component's 0-100 progress into *phase*'s overall slice."""
        start, end = PHASE_RANGES[phase]

        def forward(event: ProgressEvent) -> None:
            pct = max(min(event.percentage, 100.0), self._phase_floor)
            self._phase_floor = pct
            self._progress(ProgressEvent(
                phase=phase,
                percentage=start + (end - start) * pct / 100,
                label=event.label,
                speed=event.speed,
                latency=event.latency,
                bytes_transferred=event.bytes_transferred,
            ))

        return forward

    async def _run_phase(self, coro: Awaitable[Any], budget_ms: float) -> Any:
        """
        Await *coro*, bounded by *budget_ms* plus the phase timeout grace.

        Cancellation wins over a slow component: the component task is
        cancelled as soon as ``stop_test`` fires.
        """
        limit = (budget_ms + self.config.phase_timeout_ms) / 1000
        task = asyncio.ensure_future(coro)
        cancel_waiter = asyncio.ensure_future(self._cancel.wait())

        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=limit,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task}, timeout=SETTLE_TIMEOUT)
        if self._cancel.is_set():
            raise RunCancelledError(f"{self.phase.value} cancelled")
        raise MeasurementTimeoutError(
            f"{self.phase.value} did not finish within {limit:.1f}s"
        )

    async def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RunCancelledError("Cancelled during transition")

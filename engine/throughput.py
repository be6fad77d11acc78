"""
Throughput measurement with parallel connections.

One engine serves both directions.  A measurement optionally probes the link
with a short single-connection transfer, picks a payload size from the
bucket table, then runs ``connection_count`` concurrent transfers against a
shared byte counter.  A sampler loop converts byte deltas into speed on every
progress tick until the duration elapses or every transfer has finished.

Transfers are injected: any ``async transfer(conn_id, size, on_bytes)``
callable works.  The HTTP transfers below stream real payloads; tests use
rate-controlled fakes.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol

import aiohttp

from .constants import (
    CHUNK_SIZE,
    COMMON_HEADERS,
    DEFAULT_CONNECTIONS,
    DEFAULT_OVERHEAD_COMPENSATION,
    DEFAULT_PAYLOAD,
    DEFAULT_PROGRESS_INTERVAL_MS,
    DEFAULT_TRANSFER_DURATION_MS,
    MAX_CONNECTIONS,
    MIN_CONNECTIONS,
    NO_CACHE_HEADERS,
    PAYLOAD_BUCKETS,
    PROBE_DURATION_MS,
    SETTLE_TIMEOUT,
    SMOOTHING_WINDOW,
    UPLOAD_BUFFER_SIZE,
)
from .errors import RunCancelledError, TransferError
from .progress import Phase, ProgressCallback, ProgressEvent
from .stats import apply_overhead_compensation, mean, speed_mbps, stability

LOGGER = logging.getLogger(__name__)

# Ticks shorter than this fraction of the interval are too noisy to sample.
_MIN_TICK_FRACTION = 0.2


# ---------------------------------------------------------------------------
# Payload sizing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PayloadBucket:
    name: str
    size: int
    min_speed: float
    max_speed: float

    def contains(self, speed: float) -> bool:
        return self.min_speed <= speed < self.max_speed


PAYLOADS: List[PayloadBucket] = [PayloadBucket(*row) for row in PAYLOAD_BUCKETS]


def get_payload(name: str) -> PayloadBucket:
    for bucket in PAYLOADS:
        if bucket.name == name:
            return bucket
    raise KeyError(name)


def select_payload(estimate: Optional[float]) -> PayloadBucket:
    """
    Pick the bucket whose ``[min_speed, max_speed)`` contains *estimate*.

    ``None`` (no probe run) selects the default bucket; anything above every
    bucket selects the largest.
    """
    if estimate is None:
        return get_payload(DEFAULT_PAYLOAD)
    for bucket in PAYLOADS:
        if bucket.contains(estimate):
            return bucket
    if estimate < PAYLOADS[0].min_speed:
        return PAYLOADS[0]
    return PAYLOADS[-1]


# ---------------------------------------------------------------------------
# Config / results
# ---------------------------------------------------------------------------

@dataclass
class ThroughputConfig:
    duration_ms: float = DEFAULT_TRANSFER_DURATION_MS
    connection_count: int = DEFAULT_CONNECTIONS
    overhead_compensation: float = DEFAULT_OVERHEAD_COMPENSATION
    progress_interval_ms: float = DEFAULT_PROGRESS_INTERVAL_MS
    progressive: bool = True
    probe_duration_ms: float = PROBE_DURATION_MS
    allow_simulated_fallback: bool = False


@dataclass
class ConnectionStats:
    """Per-connection statistics collected by each transfer worker."""

    id: int = 0
    bytes_transferred: int = 0
    duration_ms: float = 0.0
    speed_mbps: float = 0.0
    error: Optional[str] = None

    def calculate(self) -> None:
        self.speed_mbps = speed_mbps(self.bytes_transferred, self.duration_ms / 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bytes": self.bytes_transferred,
            "duration_ms": round(self.duration_ms, 2),
            "speed_mbps": round(self.speed_mbps, 2),
            "error": self.error,
        }


@dataclass
class ThroughputResult:
    """Result of one direction of a throughput measurement."""

    direction: str = Phase.DOWNLOAD.value
    speed: float = 0.0               # Mbps, compensated cumulative average
    bytes_transferred: int = 0
    duration: float = 0.0            # seconds
    connection_count: int = 0
    speed_history: List[float] = field(default_factory=list)
    peak_speed: float = 0.0
    avg_speed: float = 0.0
    stability: float = 100.0
    payload: str = DEFAULT_PAYLOAD
    estimated_speed: Optional[float] = None
    failed_connections: int = 0
    simulated: bool = False
    connections: List[ConnectionStats] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "speed_mbps": round(self.speed, 2),
            "bytes": self.bytes_transferred,
            "duration": round(self.duration, 2),
            "connections": self.connection_count,
            "speed_history": [round(s, 2) for s in self.speed_history],
            "peak_speed": round(self.peak_speed, 2),
            "avg_speed": round(self.avg_speed, 2),
            "stability": round(self.stability, 2),
            "payload": self.payload,
            "estimated_speed": (
                None if self.estimated_speed is None else round(self.estimated_speed, 2)
            ),
            "failed_connections": self.failed_connections,
            "simulated": self.simulated,
            "per_connection": [c.to_dict() for c in self.connections],
        }


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

class Transfer(Protocol):
    def __call__(
        self, conn_id: int, size: int, on_bytes: Callable[[int], None]
    ) -> Awaitable[int]:
        ...


class ByteCounter:
    """Shared byte total; only ever touched from the event loop thread."""

    def __init__(self) -> None:
        self.total = 0

    def add(self, n: int) -> None:
        self.total += n


def _unique(url: str, size_param: str, size: int, conn_id: int) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{size_param}={size}&c={conn_id}&t={int(time.time() * 1000)}"


class _HttpTransfer:
    """Owns one lazily created ``aiohttp.ClientSession`` shared by all connections."""

    def __init__(
        self, url: str, size_param: str = "size", headers: Optional[dict] = None
    ) -> None:
        self.url = url
        self.size_param = size_param
        self.headers = {**COMMON_HEADERS, **NO_CACHE_HEADERS, **(headers or {})}
        self._session: Optional[aiohttp.ClientSession] = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=MAX_CONNECTIONS,
                limit_per_host=MAX_CONNECTIONS,
                force_close=False,
            )
            timeout = aiohttp.ClientTimeout(total=None, connect=5, sock_read=5)
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                connector=connector,
                timeout=timeout,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class HttpDownloadTransfer(_HttpTransfer):
    """Streamed GET of ``size`` bytes, reporting every chunk as it arrives."""

    def __init__(
        self, url: str, size_param: str = "size", headers: Optional[dict] = None
    ) -> None:
        super().__init__(url, size_param, {"Accept-Encoding": "identity", **(headers or {})})

    async def __call__(self, conn_id: int, size: int, on_bytes: Callable[[int], None]) -> int:
        session = self._ensure_session()
        received = 0
        async with session.get(_unique(self.url, self.size_param, size, conn_id)) as resp:
            resp.raise_for_status()
            async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                received += len(chunk)
                on_bytes(len(chunk))
        return received


class HttpUploadTransfer(_HttpTransfer):
    """Streamed chunked POST of ``size`` bytes cut from a random buffer."""

    def __init__(
        self, url: str, size_param: str = "size", headers: Optional[dict] = None
    ) -> None:
        super().__init__(
            url, size_param, {"Content-Type": "application/octet-stream", **(headers or {})}
        )
        self._buffer = os.urandom(UPLOAD_BUFFER_SIZE)

    async def __call__(self, conn_id: int, size: int, on_bytes: Callable[[int], None]) -> int:
        session = self._ensure_session()
        sent = 0

        async def data_stream():
            nonlocal sent
            pos = 0
            while sent < size:
                n = min(CHUNK_SIZE, size - sent, len(self._buffer) - pos)
                chunk = self._buffer[pos:pos + n]
                pos = (pos + n) % len(self._buffer)
                sent += n
                on_bytes(n)
                yield chunk

        url = _unique(self.url, self.size_param, size, conn_id)
        async with session.post(url, data=data_stream()) as resp:
            resp.raise_for_status()
            await resp.read()
        return sent


class SimulatedTransfer:
    """
    Deterministic-duration stand-in used only by the explicit fallback policy.

    Delivers ``size`` bytes in ``chunk_size`` pieces spread evenly over
    ``duration`` seconds.  Results produced with it are flagged ``simulated``.
    """

    def __init__(self, duration: float = 3.0, chunk_size: int = CHUNK_SIZE) -> None:
        self.duration = duration
        self.chunk_size = chunk_size

    async def __call__(self, conn_id: int, size: int, on_bytes: Callable[[int], None]) -> int:
        chunks = max(1, -(-size // self.chunk_size))
        pause = self.duration / chunks
        sent = 0
        while sent < size:
            n = min(self.chunk_size, size - sent)
            sent += n
            on_bytes(n)
            await asyncio.sleep(pause)
        return sent


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class _ProgressGate:
    """Forwards events while keeping the percentage non-decreasing."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.last = 0.0

    def emit(self, event: ProgressEvent) -> None:
        if self.callback is None:
            return
        if event.percentage < self.last:
            event = ProgressEvent(
                phase=event.phase,
                percentage=self.last,
                label=event.label,
                speed=event.speed,
                latency=event.latency,
                bytes_transferred=event.bytes_transferred,
            )
        self.last = event.percentage
        self.callback(event)


class ThroughputEngine:
    """
    Parallel-connection throughput measurement for both directions.

    Speeds are in Mbps (10^6 bits per second).  Every reported speed is
    multiplied by ``1 + overhead_compensation``.
    """

    def __init__(
        self,
        download: Optional[Transfer] = None,
        upload: Optional[Transfer] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.download = download
        self.upload = upload
        self.clock = clock

    async def measure_download(
        self,
        config: Optional[ThroughputConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ThroughputResult:
        return await self._measure(Phase.DOWNLOAD, self.download, config, on_progress, cancel)

    async def measure_upload(
        self,
        config: Optional[ThroughputConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ThroughputResult:
        return await self._measure(Phase.UPLOAD, self.upload, config, on_progress, cancel)

    async def close(self) -> None:
        for transfer in (self.download, self.upload):
            close = getattr(transfer, "close", None)
            if close is not None:
                await close()

    # -- Internals ----------------------------------------------------------

    async def _measure(
        self,
        phase: Phase,
        transfer: Optional[Transfer],
        config: Optional[ThroughputConfig],
        on_progress: Optional[ProgressCallback],
        cancel: Optional[asyncio.Event],
    ) -> ThroughputResult:
        config = config or ThroughputConfig()
        if transfer is None:
            raise TransferError(f"No {phase.value} transfer configured")
        if config.duration_ms <= 0 or config.progress_interval_ms <= 0:
            raise ValueError("duration_ms and progress_interval_ms must be positive")

        gate = _ProgressGate(on_progress)
        connections = max(MIN_CONNECTIONS, min(config.connection_count, MAX_CONNECTIONS))

        estimate: Optional[float] = None
        if config.progressive:
            gate.emit(ProgressEvent(phase=phase, percentage=0.0, label="Estimating link speed..."))
            estimate = await self._probe_speed(transfer, config, cancel)
        bucket = select_payload(estimate)
        LOGGER.info(
            "%s: payload %s (%d bytes), estimate %s Mbps, %d connections",
            phase.value, bucket.name, bucket.size,
            "n/a" if estimate is None else f"{estimate:.1f}", connections,
        )

        try:
            result = await self._run(phase, transfer, bucket, connections, config, gate, cancel)
        except TransferError:
            if not config.allow_simulated_fallback:
                raise
            LOGGER.warning("%s: all connections failed, using simulated transfer", phase.value)
            result = await self._run(
                phase, SimulatedTransfer(), bucket, connections, config, gate, cancel
            )
            result.simulated = True

        result.estimated_speed = estimate
        return result

    async def _probe_speed(
        self,
        transfer: Transfer,
        config: ThroughputConfig,
        cancel: Optional[asyncio.Event],
    ) -> Optional[float]:
        """Short single-connection transfer; ``None`` if it fails outright."""
        counter = ByteCounter()
        limit = min(config.probe_duration_ms, config.duration_ms) / 1000
        start = self.clock()
        task = asyncio.ensure_future(transfer(0, PAYLOADS[0].size, counter.add))

        try:
            await _wait_or_cancel([task], limit, cancel)
        finally:
            elapsed = self.clock() - start
            await _settle([task])

        if not task.cancelled() and task.exception() is not None:
            LOGGER.debug("Speed probe failed: %s", task.exception())
            return None
        return speed_mbps(counter.total, elapsed)

    async def _run(
        self,
        phase: Phase,
        transfer: Transfer,
        bucket: PayloadBucket,
        connections: int,
        config: ThroughputConfig,
        gate: _ProgressGate,
        cancel: Optional[asyncio.Event],
    ) -> ThroughputResult:
        duration = config.duration_ms / 1000
        tick = config.progress_interval_ms / 1000
        compensation = config.overhead_compensation
        label = "Downloading..." if phase is Phase.DOWNLOAD else "Uploading..."

        counter = ByteCounter()
        conn_stats = [ConnectionStats(id=i) for i in range(connections)]
        history: List[float] = []
        recent = deque(maxlen=SMOOTHING_WINDOW)

        start = self.clock()
        deadline = start + duration
        workers = [
            asyncio.ensure_future(self._connection(transfer, stats, bucket.size, counter))
            for stats in conn_stats
        ]

        prev_bytes = 0
        prev_time = start
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise RunCancelledError(f"{phase.value} measurement cancelled")

                pending = [w for w in workers if not w.done()]
                remaining = deadline - self.clock()
                if not pending or remaining <= 0:
                    break

                await asyncio.wait(pending, timeout=min(tick, remaining))

                now = self.clock()
                dt = now - prev_time
                if dt < tick * _MIN_TICK_FRACTION:
                    continue

                total = counter.total
                recent.append(speed_mbps(total - prev_bytes, dt))
                prev_bytes, prev_time = total, now

                instant = apply_overhead_compensation(mean(recent), compensation)
                history.append(instant)

                gate.emit(ProgressEvent(
                    phase=phase,
                    percentage=min((now - start) / duration * 100, 100.0),
                    label=label,
                    speed=instant,
                    bytes_transferred=total,
                ))
        finally:
            await _settle(workers)

        elapsed = self.clock() - start
        failed = [s for s in conn_stats if s.error is not None]
        if len(failed) == connections:
            raise TransferError(
                f"All {connections} {phase.value} connections failed: {failed[0].error}"
            )

        avg = apply_overhead_compensation(speed_mbps(counter.total, elapsed), compensation)
        result = ThroughputResult(
            direction=phase.value,
            speed=avg,
            bytes_transferred=counter.total,
            duration=elapsed,
            connection_count=connections,
            speed_history=history,
            peak_speed=max(history) if history else avg,
            avg_speed=avg,
            stability=stability(history),
            payload=bucket.name,
            failed_connections=len(failed),
            connections=conn_stats,
        )
        LOGGER.info(
            "%s: %.2f Mbps avg, %.2f Mbps peak, stability %.0f, %d/%d connections failed",
            phase.value, result.avg_speed, result.peak_speed, result.stability,
            len(failed), connections,
        )
        return result

    async def _connection(
        self,
        transfer: Transfer,
        stats: ConnectionStats,
        size: int,
        counter: ByteCounter,
    ) -> None:
        """Run one transfer; a failure only stops this connection contributing."""
        t0 = self.clock()

        def on_bytes(n: int) -> None:
            stats.bytes_transferred += n
            counter.add(n)

        try:
            await transfer(stats.id, size, on_bytes)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - isolate per-connection failures
            stats.error = str(exc) or type(exc).__name__
            LOGGER.warning("Connection %d failed: %s", stats.id, stats.error)
        finally:
            stats.duration_ms = (self.clock() - t0) * 1000
            stats.calculate()


async def _wait_or_cancel(
    tasks: List[asyncio.Future],
    timeout: float,
    cancel: Optional[asyncio.Event],
) -> None:
    """Wait for *tasks* up to *timeout*; raise if *cancel* fires first."""
    waiters = list(tasks)
    cancel_waiter = None
    if cancel is not None:
        if cancel.is_set():
            raise RunCancelledError("Cancelled")
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.append(cancel_waiter)

    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if cancel is not None and cancel.is_set():
        raise RunCancelledError("Cancelled")


async def _settle(tasks: List[asyncio.Future]) -> None:
    """Cancel unfinished *tasks* and give them a bounded time to unwind."""
    pending = [t for t in tasks if not t.done()]
    for t in pending:
        t.cancel()
    if pending:
        _, still = await asyncio.wait(pending, timeout=SETTLE_TIMEOUT)
        if still:
            LOGGER.warning("%d transfers did not settle after cancellation", len(still))

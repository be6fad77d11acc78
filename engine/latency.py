"""
Latency probing with an ordered fallback chain of strategies.

A strategy is any object with a ``name`` and an ``async measure() -> float``
method returning a round-trip time in milliseconds.  For one sample the
prober tries strategies in order, each bounded by the sample timeout; the
first one that succeeds wins.  Callers never see individual strategy
failures -- only :class:`~engine.errors.ConnectivityError` once the whole
chain is exhausted.

Shipped strategies, lightest first::

    HttpPingProbe          HEAD request/response timing
    ResourceTimingProbe    GET timed to the first body byte
    WebSocketPingProbe     PING/PONG over a persistent websocket
    TcpHandshakeProbe      TCP connect timing
    ConnectionClassEstimate  typical RTT of a known connection class
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, List, Optional, Protocol, Sequence

import aiohttp
import websockets
import websockets.exceptions

from .constants import (
    COMMON_HEADERS,
    CONNECTION_CLASS_RTT_MS,
    DEFAULT_PING_COUNT,
    DEFAULT_PING_INTERVAL_MS,
    DEFAULT_PING_TIMEOUT_MS,
    NO_CACHE_HEADERS,
)
from .errors import ConnectivityError, RunCancelledError
from .progress import Phase, ProgressCallback, ProgressEvent
from .stats import LatencyResultSet, Sample, jitter

LOGGER = logging.getLogger(__name__)

# Exceptions that mean "this strategy failed", as opposed to programming errors.
PROBE_ERRORS = (
    asyncio.TimeoutError,
    aiohttp.ClientError,
    websockets.exceptions.WebSocketException,
    ConnectionError,
    OSError,
    ValueError,
)

_WS_CONNECT_TIMEOUT = 5.0
_HANDSHAKE_TIMEOUT = 2.0
_MSG_TIMEOUT = 0.5


class ProbeStrategy(Protocol):
    name: str

    async def measure(self) -> float:
        ...


def _cache_buster(url: str) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}t={int(time.time() * 1000)}&r={random.random():.8f}"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class HttpPingProbe:
    """Time a HEAD request against *url*; non-2xx responses count as failure."""

    name = "http-head"

    def __init__(self, session: aiohttp.ClientSession, url: str) -> None:
        self.session = session
        self.url = url

    async def measure(self) -> float:
        start = time.perf_counter()
        async with self.session.head(
            _cache_buster(self.url),
            headers=NO_CACHE_HEADERS,
            allow_redirects=False,
        ) as resp:
            elapsed = (time.perf_counter() - start) * 1000
            if resp.status >= 400:
                raise ValueError(f"HTTP {resp.status}")
        return elapsed


class ResourceTimingProbe:
    """Time a GET until the first body byte arrives, like a resource load."""

    name = "resource-timing"

    def __init__(self, session: aiohttp.ClientSession, url: str) -> None:
        self.session = session
        self.url = url

    async def measure(self) -> float:
        start = time.perf_counter()
        async with self.session.get(
            _cache_buster(self.url),
            headers=NO_CACHE_HEADERS,
        ) as resp:
            if resp.status >= 400:
                raise ValueError(f"HTTP {resp.status}")
            await resp.content.read(1)
            return (time.perf_counter() - start) * 1000


class WebSocketPingProbe:
    """
    PING/PONG round-trip over a persistent websocket.

    Protocol flow::

        1. Connect to ``url``
        2. Receive up to three greeting lines (HELLO, YOURIP, CAPABILITIES)
        3. Send  PING {timestamp_ms}
        4. Receive PONG {server_timestamp}

    The connection is kept between samples and dropped after any failure so
    the next sample reconnects.
    """

    name = "websocket"

    def __init__(self, url: str) -> None:
        self.url = url
        self.server_version = ""
        self._ws = None

    async def _connect(self):
        if self._ws is None:
            self._ws = await websockets.connect(
                self.url,
                additional_headers=COMMON_HEADERS,
                ping_interval=None,
                close_timeout=2,
                open_timeout=_WS_CONNECT_TIMEOUT,
            )
            await self._read_handshake(self._ws)
        return self._ws

    async def _read_handshake(self, ws) -> None:
        """Consume greeting lines until three arrive or the window closes."""
        start = time.perf_counter()
        received = 0

        while time.perf_counter() - start < _HANDSHAKE_TIMEOUT:
            try:
                msg = await asyncio.wait_for(ws.recv(), timeout=_MSG_TIMEOUT)
            except asyncio.TimeoutError:
                break

            if isinstance(msg, str) and msg.startswith("HELLO"):
                parts = msg.split()
                if len(parts) >= 2:
                    self.server_version = parts[1]

            received += 1
            if received >= 3:
                break

    async def measure(self) -> float:
        try:
            ws = await self._connect()
            send_time = time.perf_counter()
            await ws.send(f"PING {int(send_time * 1000)}")
            msg = await ws.recv()
            elapsed = (time.perf_counter() - send_time) * 1000
        except BaseException:
            await self.close()
            raise

        if not (isinstance(msg, str) and msg.startswith("PONG")):
            await self.close()
            raise ValueError(f"Unexpected response: {str(msg)[:50]}")
        return elapsed

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError):
                pass


class TcpHandshakeProbe:
    """Time a TCP three-way handshake to ``host:port``."""

    name = "tcp-handshake"

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port

    async def measure(self) -> float:
        start = time.perf_counter()
        _, writer = await asyncio.open_connection(self.host, self.port)
        elapsed = (time.perf_counter() - start) * 1000
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return elapsed


class ConnectionClassEstimate:
    """Last resort: the typical RTT of a known connection class."""

    name = "connection-class"

    def __init__(self, connection_class: str) -> None:
        self.connection_class = connection_class.lower()

    async def measure(self) -> float:
        try:
            return CONNECTION_CLASS_RTT_MS[self.connection_class]
        except KeyError:
            raise ValueError(f"Unknown connection class: {self.connection_class}") from None


# ---------------------------------------------------------------------------
# Prober
# ---------------------------------------------------------------------------

class LatencyProber:
    """Measure round-trip latency through an ordered list of strategies."""

    def __init__(
        self,
        strategies: Sequence[ProbeStrategy],
        timeout_ms: float = DEFAULT_PING_TIMEOUT_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.strategies: List[ProbeStrategy] = list(strategies)
        self.timeout_ms = timeout_ms
        self.clock = clock
        self.last_strategy: Optional[str] = None

    # -- Single sample ------------------------------------------------------

    async def measure_once(self, timeout_ms: Optional[float] = None) -> float:
        """One latency sample in ms; raises ``ConnectivityError`` if every strategy fails."""
        timeout = (timeout_ms if timeout_ms is not None else self.timeout_ms) / 1000
        if not self.strategies:
            raise ConnectivityError("No latency probes configured")

        for strategy in self.strategies:
            try:
                latency = await asyncio.wait_for(strategy.measure(), timeout=timeout)
            except PROBE_ERRORS as exc:
                LOGGER.debug("Probe %s failed: %s", strategy.name, exc or type(exc).__name__)
                continue
            self.last_strategy = strategy.name
            return latency

        raise ConnectivityError(
            f"All {len(self.strategies)} latency probes failed"
        )

    async def get_current_latency(self, timeout_ms: Optional[float] = None) -> Optional[float]:
        """Single probe for live displays; ``None`` instead of an error."""
        try:
            return await self.measure_once(timeout_ms)
        except ConnectivityError:
            LOGGER.debug("Failed to get current latency")
            return None

    # -- Series -------------------------------------------------------------

    async def measure_series(
        self,
        count: int = DEFAULT_PING_COUNT,
        interval_ms: float = DEFAULT_PING_INTERVAL_MS,
        timeout_ms: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> LatencyResultSet:
        """
        Make *count* attempts, *interval_ms* apart, and aggregate the successes.

        A failed attempt counts towards packet loss but never aborts the
        series; only zero successes raise ``ConnectivityError``.
        """
        if count < 1:
            raise ValueError("count must be at least 1")

        result = LatencyResultSet()

        for i in range(count):
            if cancel is not None and cancel.is_set():
                raise RunCancelledError("Latency series cancelled")

            latency: Optional[float] = None
            result.attempted += 1
            try:
                latency = await self.measure_once(timeout_ms)
                result.samples.append(Sample(timestamp=self.clock(), value=latency))
            except ConnectivityError:
                LOGGER.debug("Latency sample %d/%d failed", i + 1, count)

            if on_progress:
                on_progress(ProgressEvent(
                    phase=Phase.LATENCY,
                    percentage=(i + 1) / count * 100,
                    label=f"Testing latency... ({i + 1}/{count})",
                    latency=latency,
                ))

            if i < count - 1 and interval_ms > 0:
                await _sleep_or_cancel(interval_ms / 1000, cancel)

        if not result.samples:
            raise ConnectivityError(f"No latency samples succeeded out of {count} attempts")

        LOGGER.info(
            "Latency: %.1f ms avg, %.1f ms jitter, %.1f%% loss (%d/%d)",
            result.avg, jitter(result.values), result.packet_loss,
            result.count, result.attempted,
        )
        return result

    async def close(self) -> None:
        for strategy in self.strategies:
            close = getattr(strategy, "close", None)
            if close is not None:
                await close()


async def _sleep_or_cancel(seconds: float, cancel: Optional[asyncio.Event]) -> None:
    """Sleep, waking early (and raising) if *cancel* gets set."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise RunCancelledError("Cancelled while waiting")

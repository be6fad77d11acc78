"""
The engine's public surface.

``NetPulse`` owns the shared ``aiohttp.ClientSession`` and wires the prober,
throughput engine, orchestrator, monitor and result history together::

    async with NetPulse(TestConfig(parallel_connections=8)) as netpulse:
        netpulse.on("progress", print)
        result = await netpulse.start_test()

Probes and transfers always point at one server.  A test run re-selects the
best server first; monitoring uses whichever server is bound at the time.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence

import aiohttp

from .config import TestConfig
from .constants import COMMON_HEADERS
from .history import JsonFileStore, KeyValueStore, ResultHistory
from .latency import (
    ConnectionClassEstimate,
    HttpPingProbe,
    LatencyProber,
    ProbeStrategy,
    ResourceTimingProbe,
    TcpHandshakeProbe,
    WebSocketPingProbe,
)
from .monitor import EVENTS as MONITOR_EVENTS
from .monitor import MonitoringSession, MonitoringSessionManager, MonitorStatus
from .orchestrator import EVENTS as TEST_EVENTS
from .orchestrator import TestOrchestrator, TestResult
from .progress import Phase, ProgressCallback, ProgressEvent
from .servers import DEFAULT_SERVERS, ServerCatalog, TestServer, select_server
from .stats import LatencyResultSet
from .throughput import HttpDownloadTransfer, HttpUploadTransfer, ThroughputEngine

LOGGER = logging.getLogger(__name__)


class NetPulse:
    """Async context-manager facade over the measurement engine."""

    def __init__(
        self,
        config: Optional[TestConfig] = None,
        servers: Optional[Sequence[TestServer]] = None,
        store: Optional[KeyValueStore] = None,
    ) -> None:
        self.config = (config or TestConfig()).validate()
        self.servers: List[TestServer] = list(servers or DEFAULT_SERVERS)
        self.server: Optional[TestServer] = None
        self.history = ResultHistory(
            store if store is not None else JsonFileStore(),
            max_entries=self.config.history_limit,
        )

        self.prober = LatencyProber([], timeout_ms=self.config.latency_timeout_ms)
        self.engine = ThroughputEngine()
        self.orchestrator = TestOrchestrator(
            self.prober, self.engine, self.config, select_server=self._select_server
        )
        self.monitor = MonitoringSessionManager(self.prober, self.engine, self.config)
        self._session: Optional[aiohttp.ClientSession] = None

    # -- Context manager ----------------------------------------------------

    async def __aenter__(self) -> NetPulse:
        self._session = aiohttp.ClientSession(
            headers=COMMON_HEADERS,
            timeout=aiohttp.ClientTimeout(total=None, connect=5),
        )
        await self._bind(self.servers[0])
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.close()

    async def close(self) -> None:
        self.orchestrator.stop_test()
        if self.monitor.status is not MonitorStatus.STOPPED:
            await self.monitor.stop()
        await self.prober.close()
        await self.engine.close()
        if self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "NetPulse must be used as an async context manager "
                "(async with NetPulse() as netpulse: ...)"
            )
        return self._session

    # -- Subscriptions ------------------------------------------------------

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """
        Subscribe to test events (``progress``, ``phase``, ``complete``) or
        monitoring events (``data``, ``status``); ``error`` covers both.
        """
        offs = []
        if event in TEST_EVENTS:
            offs.append(self.orchestrator.on(event, callback))
        if event in MONITOR_EVENTS:
            offs.append(self.monitor.on(event, callback))
        if not offs:
            known = sorted(set(TEST_EVENTS) | set(MONITOR_EVENTS))
            raise ValueError(f"Unknown event {event!r}; expected one of {', '.join(known)}")

        def off() -> None:
            for unsubscribe in offs:
                unsubscribe()

        return off

    # -- One-shot test ------------------------------------------------------

    async def start_test(self) -> TestResult:
        """Run a full test and append it to the history."""
        self._ensure_session()
        result = await self.orchestrator.start_test()
        self.history.add(result.to_dict())
        return result

    def stop_test(self) -> None:
        self.orchestrator.stop_test()

    async def get_current_latency(self) -> Optional[float]:
        self._ensure_session()
        return await self.prober.get_current_latency()

    async def measure_latency(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> LatencyResultSet:
        """Latency series only, against the currently bound server."""
        self._ensure_session()
        return await self.prober.measure_series(
            count=self.config.latency_sample_count,
            interval_ms=self.config.latency_interval_ms,
            timeout_ms=self.config.latency_timeout_ms,
            on_progress=on_progress,
        )

    # -- Monitoring ---------------------------------------------------------

    async def start_monitoring(self) -> MonitoringSession:
        self._ensure_session()
        return await self.monitor.start()

    async def pause_monitoring(self) -> None:
        await self.monitor.pause()

    async def resume_monitoring(self) -> None:
        await self.monitor.resume()

    async def stop_monitoring(self) -> MonitoringSession:
        return await self.monitor.stop()

    # -- Server binding -----------------------------------------------------

    def _strategies(self, server: TestServer) -> List[ProbeStrategy]:
        session = self._ensure_session()
        strategies: List[ProbeStrategy] = [
            HttpPingProbe(session, server.ping_url),
            ResourceTimingProbe(session, server.ping_url),
        ]
        ws_url = self.config.ws_url or server.ws_url
        if ws_url:
            strategies.append(WebSocketPingProbe(ws_url))
        strategies.append(TcpHandshakeProbe(server.host, server.port))
        if self.config.connection_class:
            strategies.append(ConnectionClassEstimate(self.config.connection_class))
        return strategies

    async def _bind(self, server: TestServer) -> None:
        """Point probes and transfers at *server*."""
        await self.prober.close()
        await self.engine.close()
        self.prober.strategies = self._strategies(server)
        self.engine.download = HttpDownloadTransfer(server.download_url, server.size_param)
        self.engine.upload = HttpUploadTransfer(server.upload_url, server.size_param)
        self.server = server
        LOGGER.info("Using server %s (%s)", server.name, server.base_url)

    async def _candidates(self) -> List[TestServer]:
        if not self.config.server_url:
            return self.servers
        try:
            async with ServerCatalog(self.config.server_url) as catalog:
                servers = await catalog.fetch_servers()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            LOGGER.warning("Server catalog unavailable, using built-in list: %s", exc)
            return self.servers
        return servers or self.servers

    async def _select_server(self, on_progress: ProgressCallback) -> TestServer:
        session = self._ensure_session()
        timeout = self.config.latency_timeout_ms / 1000

        async def measure(server: TestServer) -> float:
            probe = HttpPingProbe(session, server.ping_url)
            return await asyncio.wait_for(probe.measure(), timeout=timeout)

        def measured(done: int, total: int, server: TestServer) -> None:
            on_progress(ProgressEvent(
                phase=Phase.INITIALIZING,
                percentage=done / total * 100,
                label=f"Testing {server.name}...",
                latency=server.latency,
            ))

        best = await select_server(await self._candidates(), measure, on_measured=measured)
        await self._bind(best)
        return best

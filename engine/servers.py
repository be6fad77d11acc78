"""
Test servers: the built-in list, remote catalogs and best-server selection.

A catalog is a JSON array of server objects fetched over HTTP through a
single ``aiohttp.ClientSession`` managed via the async-context-manager
protocol (``async with ServerCatalog(url) as catalog: ...``).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from .constants import COMMON_HEADERS

LOGGER = logging.getLogger(__name__)

CDN_BONUS = 10.0
UNREACHABLE_LATENCY = 9999.0


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TestServer:
    """A measurement endpoint; ``latency``/``score`` are set by selection."""

    __test__ = False  # not a test case

    id: str
    name: str
    host: str
    port: int = 443
    location: str = ""
    cdn: bool = False
    scheme: str = "https"
    ping_path: str = "/"
    download_path: str = "/download"
    upload_path: str = "/upload"
    size_param: str = "size"
    ws_path: Optional[str] = None
    latency: Optional[float] = None
    score: Optional[float] = None

    # -- Constructors -------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TestServer:
        host_raw = data.get("host", "")
        host, _, port = host_raw.partition(":")
        return cls(
            id=str(data.get("id", host)),
            name=data.get("name", host),
            host=host,
            port=int(data.get("port", port or 443)),
            location=data.get("location", ""),
            cdn=bool(data.get("cdn", False)),
            scheme=data.get("scheme", "https"),
            ping_path=data.get("ping_path", "/"),
            download_path=data.get("download_path", "/download"),
            upload_path=data.get("upload_path", "/upload"),
            size_param=data.get("size_param", "size"),
            ws_path=data.get("ws_path"),
        )

    # -- Derived URLs -------------------------------------------------------

    @property
    def base_url(self) -> str:
        default_port = 443 if self.scheme == "https" else 80
        if self.port == default_port:
            return f"{self.scheme}://{self.host}"
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def ping_url(self) -> str:
        return self.base_url + self.ping_path

    @property
    def download_url(self) -> str:
        return self.base_url + self.download_path

    @property
    def upload_url(self) -> str:
        return self.base_url + self.upload_path

    @property
    def ws_url(self) -> Optional[str]:
        if self.ws_path is None:
            return None
        ws_scheme = "wss" if self.scheme == "https" else "ws"
        return f"{ws_scheme}://{self.host}:{self.port}{self.ws_path}"

    # -- Serialisation ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "location": self.location,
            "cdn": self.cdn,
            "latency": None if self.latency is None else round(self.latency, 2),
            "score": None if self.score is None else round(self.score, 2),
        }


DEFAULT_SERVERS: List[TestServer] = [
    TestServer(
        id="cloudflare",
        name="Cloudflare",
        host="speed.cloudflare.com",
        location="Global CDN",
        cdn=True,
        ping_path="/__down?bytes=0",
        download_path="/__down",
        upload_path="/__up",
        size_param="bytes",
    ),
]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class ServerCatalog:
    """Async context-manager fetching a server list from *url*."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._session: Optional[aiohttp.ClientSession] = None
        self.servers: List[TestServer] = []

    # -- Context manager ----------------------------------------------------

    async def __aenter__(self) -> ServerCatalog:
        self._session = aiohttp.ClientSession(headers=COMMON_HEADERS)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                "ServerCatalog must be used as an async context manager "
                "(async with ServerCatalog(url) as catalog: ...)"
            )
        return self._session

    async def fetch_servers(self, limit: int = 10) -> List[TestServer]:
        """Return up to *limit* servers from the catalog, in catalog order."""
        session = self._ensure_session()

        async with session.get(self.url) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)

        if not isinstance(data, list):
            raise ValueError("Server catalog must be a JSON array")

        self.servers = [TestServer.from_dict(s) for s in data[:limit]]
        LOGGER.info("Fetched %d servers from %s", len(self.servers), self.url)
        return self.servers


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def score_server(server: TestServer, latency: float) -> float:
    """Lower latency scores higher; CDN endpoints get a fixed bonus."""
    score = max(0.0, 100.0 - latency)
    if server.cdn:
        score += CDN_BONUS
    return score


async def select_server(
    servers: Sequence[TestServer],
    measure: Callable[[TestServer], Awaitable[float]],
    concurrent: int = 4,
    on_measured: Optional[Callable[[int, int, TestServer], None]] = None,
) -> TestServer:
    """
    Measure every candidate concurrently and return the best scoring one.

    The returned server is a new instance carrying ``latency`` and ``score``.
    Unreachable candidates score 0.  *on_measured* is called as
    ``(done, total, server)`` after each measurement.
    """
    if not servers:
        raise ValueError("No servers to select from")

    sem = asyncio.Semaphore(max(1, concurrent))
    total = len(servers)
    done = 0

    async def _measure(server: TestServer) -> TestServer:
        nonlocal done
        async with sem:
            try:
                latency = await measure(server)
                scored = replace(server, latency=latency, score=score_server(server, latency))
            except Exception as exc:  # noqa: BLE001 - an unreachable server just scores 0
                LOGGER.debug("Server %s unreachable: %s", server.name, exc)
                scored = replace(server, latency=UNREACHABLE_LATENCY, score=0.0)
        done += 1
        if on_measured:
            on_measured(done, total, scored)
        return scored

    results = await asyncio.gather(*(_measure(s) for s in servers))
    best = max(results, key=lambda s: s.score)
    LOGGER.info("Selected server %s (%.1f ms, score %.1f)", best.name, best.latency, best.score)
    return best

"""
Test history persistence and display.

Completed results are kept as one JSON list under a single key of a
key-value store, newest first and capped at ``max_entries``.  The default
store is a JSON object file at ``~/.netpulse/store.json``; writes go to a
temporary file first and are moved into place, so a crash never leaves a
half-written store behind.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .constants import DEFAULT_HISTORY_LIMIT, HISTORY_KEY

LOGGER = logging.getLogger(__name__)

_DEFAULT_DIR = os.path.join(Path.home(), ".netpulse")
_DEFAULT_FILE = "store.json"
MAX_DISPLAY = 20  # show last N entries in --history


def _store_path() -> str:
    return os.path.join(_DEFAULT_DIR, _DEFAULT_FILE)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStore:
    """In-process store; nothing survives the interpreter."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """All keys in one JSON object file."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or _store_path()

    def _read(self) -> Dict[str, Any]:
        if not os.path.isfile(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (json.JSONDecodeError, OSError) as exc:
            LOGGER.warning("Ignoring unreadable store %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[Any]:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class ResultHistory:
    """Newest-first list of result records, capped at ``max_entries``."""

    def __init__(
        self,
        store: KeyValueStore,
        key: str = HISTORY_KEY,
        max_entries: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.store = store
        self.key = key
        self.max_entries = max_entries

    def load(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stored records, newest first; non-dict entries are skipped."""
        raw = self.store.get(self.key)
        if not isinstance(raw, list):
            return []
        entries = [e for e in raw if isinstance(e, dict)]
        return entries[:limit] if limit is not None else entries

    def add(self, record: Dict[str, Any]) -> List[Dict[str, Any]]:
        entries = [record] + self.load()
        entries = entries[:self.max_entries]
        self.store.set(self.key, entries)
        return entries

    def clear(self) -> None:
        self.store.delete(self.key)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

def format_history_table(entries: List[Dict[str, Any]]) -> List[dict]:
    """
    Transform raw history records into a flat list of dicts suitable for
    tabular display.  Each dict has: timestamp, server, latency, jitter,
    download, upload, quality.
    """
    rows = []
    for e in entries:
        ts_raw = e.get("timestamp", "")
        try:
            ts = datetime.fromisoformat(ts_raw).strftime("%Y-%m-%d %H:%M")
        except (ValueError, TypeError):
            ts = ts_raw[:16] if ts_raw else "?"

        server = e.get("server") or {}
        latency = e.get("latency") or {}
        dl = e.get("download") or {}
        ul = e.get("upload") or {}
        quality = e.get("quality") or {}

        rows.append({
            "timestamp": ts,
            "server": server.get("name", "?"),
            "latency": latency.get("avg", 0),
            "jitter": latency.get("jitter", 0),
            "download": dl.get("speed_mbps", 0),
            "upload": ul.get("speed_mbps", 0),
            "quality": quality.get("overall", "?"),
        })
    return rows


def sparkline(values: List[float]) -> str:
    """Single-line Unicode sparkline chart."""
    if not values:
        return ""
    bars = "▁▂▃▄▅▆▇█"
    lo, hi = min(values), max(values)
    span = hi - lo if hi > lo else 1.0
    return "".join(
        bars[min(int((v - lo) / span * (len(bars) - 1)), len(bars) - 1)]
        for v in values
    )

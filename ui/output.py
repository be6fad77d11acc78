"""
Output formatting -- JSON export, plain text, and CSV.
"""
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from engine.monitor import MonitoringSession
from engine.orchestrator import TestResult

CSV_COLUMNS = (
    "timestamp",
    "server",
    "latency_ms",
    "jitter_ms",
    "packet_loss_pct",
    "download_mbps",
    "upload_mbps",
    "quality",
    "score",
)


def create_result_json(result: TestResult) -> Dict[str, Any]:
    """Full result record plus flat summary keys for scripting."""
    data = result.to_dict()
    data["summary"] = {
        "latency_ms": round(result.latency.avg, 2),
        "jitter_ms": round(result.latency.jitter, 2),
        "packet_loss_pct": round(result.latency.packet_loss, 2),
        "download_mbps": round(result.download.speed, 2),
        "upload_mbps": round(result.upload.speed, 2),
        "quality": result.quality.overall.value,
        "score": result.quality.score,
    }
    return data


def create_session_json(session: MonitoringSession) -> Dict[str, Any]:
    data = session.to_dict()
    data["exported_at"] = datetime.now(timezone.utc).isoformat()
    return data


def save_json(result: Dict[str, Any], filepath: str) -> None:
    """Write *result* to *filepath* atomically (write-tmp then rename)."""
    dir_path = os.path.dirname(filepath) or "."
    tmp = os.path.join(dir_path, f".tmp_{os.path.basename(filepath)}")

    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(result, fh, indent=2, ensure_ascii=False)
        os.replace(tmp, filepath)
    except OSError as exc:
        # Clean up partial temp file
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise OSError(f"Failed to save JSON to {filepath}: {exc}") from exc


# ---------------------------------------------------------------------------
# Plain-text / CSV helpers
# ---------------------------------------------------------------------------

def format_text_result(result: TestResult) -> str:
    sep = "=" * 50
    mid = "-" * 50
    server = result.server.name if result.server else "?"
    latency = result.latency
    lines = [
        sep,
        "NetPulse Results",
        sep,
        f"Server: {server}",
        mid,
        f"Latency: {latency.avg:.1f} ms (jitter: {latency.jitter:.2f} ms)",
        f"Packet Loss: {latency.packet_loss:.1f}%",
        f"Download: {result.download.speed:.2f} Mbps",
        f"Upload: {result.upload.speed:.2f} Mbps",
        f"Quality: {result.quality.overall.value} (score {result.quality.score:.1f})",
    ]
    if result.download.simulated or result.upload.simulated:
        lines.append("Note: throughput simulated, not measured")
    lines.append(sep)
    return "\n".join(lines)


def _csv_escape(value: Any) -> str:
    """Quote a field if it contains a delimiter, quote or newline."""
    text = str(value)
    if any(c in text for c in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def format_csv_header() -> str:
    return ",".join(CSV_COLUMNS)


def format_csv_row(result: TestResult, timestamp: Optional[str] = None) -> str:
    ts = timestamp or result.timestamp or datetime.now(timezone.utc).isoformat()
    fields = (
        ts,
        result.server.name if result.server else "",
        f"{result.latency.avg:.1f}",
        f"{result.latency.jitter:.2f}",
        f"{result.latency.packet_loss:.1f}",
        f"{result.download.speed:.2f}",
        f"{result.upload.speed:.2f}",
        result.quality.overall.value,
        f"{result.quality.score:.1f}",
    )
    return ",".join(_csv_escape(f) for f in fields)


def append_csv(path: str, result: TestResult) -> None:
    """Append a single CSV row, writing the header if the file is new."""
    write_header = not os.path.isfile(path) or os.path.getsize(path) == 0
    with open(path, "a", encoding="utf-8") as fh:
        if write_header:
            fh.write(format_csv_header() + "\n")
        fh.write(format_csv_row(result) + "\n")

"""
Rich-based terminal dashboard for NetPulse results.

All formatting helpers live in ``engine.stats`` -- this module only does
presentation via the ``rich`` library.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from engine.history import format_history_table, sparkline
from engine.monitor import MonitoringSession
from engine.progress import ProgressEvent
from engine.quality import QualityAssessment, QualityLevel
from engine.servers import TestServer
from engine.stats import LatencyResultSet, format_latency, format_speed
from engine.throughput import ThroughputResult

console = Console()

QUALITY_COLORS = {
    QualityLevel.EXCELLENT: "bright_green",
    QualityLevel.GOOD: "green",
    QualityLevel.FAIR: "yellow",
    QualityLevel.POOR: "red",
    QualityLevel.VERY_POOR: "bold red",
}


def quality_text(level: QualityLevel) -> str:
    color = QUALITY_COLORS.get(level, "white")
    return f"[{color}]{level.value}[/{color}]"


# ---------------------------------------------------------------------------
# Histogram helper
# ---------------------------------------------------------------------------

_BARS = "▁▂▃▄▅▆▇█"


def create_histogram(values: List[float], height: int = 5) -> str:
    """Return a single-line Unicode bar-chart."""
    if not values:
        return "No data"

    lo, hi = min(values), max(values)
    span = hi - lo if hi > lo else 1.0
    norm = [(v - lo) / span * height for v in values]
    return "".join(_BARS[min(int(n * (len(_BARS) - 1) / height), len(_BARS) - 1)] for n in norm)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------

def print_header() -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]NetPulse[/bold cyan]\n"
            "[dim]Latency, throughput and connection quality from the terminal[/dim]",
            border_style="cyan",
        )
    )
    console.print()


def print_server(server: TestServer) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="bold")
    table.add_row("Server:", server.name)
    table.add_row("Host:", server.base_url)
    if server.location:
        table.add_row("Location:", server.location)
    if server.latency is not None:
        table.add_row("Latency:", format_latency(server.latency))
    console.print(Panel(table, title="[bold]Selected Server[/bold]", border_style="blue"))


def print_latency_details(result: LatencyResultSet) -> None:
    """Print detailed latency statistics and a histogram."""
    table = Table(title="Latency Details", box=box.ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Min", format_latency(result.min))
    table.add_row("Max", format_latency(result.max))
    table.add_row("Mean", format_latency(result.avg))
    table.add_row("Median", format_latency(result.median))
    table.add_row("P95", format_latency(result.p95))
    table.add_row("Jitter", f"{result.jitter:.2f} ms")
    table.add_row("Packet Loss", f"{result.packet_loss:.1f}%")
    table.add_row("Samples", f"{result.count}/{result.attempted}")
    console.print(table)

    values = result.values
    if values:
        console.print(
            Panel(
                f"[cyan]{create_histogram(values)}[/cyan]\n"
                f"[dim]Min: {min(values):.1f} ms  Max: {max(values):.1f} ms[/dim]",
                title="Ping Histogram",
            )
        )


def print_speed_result(result: ThroughputResult, title: str, color: str = "green") -> None:
    """Print a download or upload result panel."""
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Speed", f"[bold {color}]{format_speed(result.speed)}[/bold {color}]")
    table.add_row("Peak", format_speed(result.peak_speed))
    table.add_row("Stability", f"{result.stability:.0f}/100")
    table.add_row("Data Transferred", f"{result.bytes_transferred / 1_000_000:.1f} MB")
    table.add_row("Duration", f"{result.duration:.1f} s")
    table.add_row("Payload", result.payload)
    table.add_row(
        "Connections",
        f"{result.connection_count - result.failed_connections}/{result.connection_count}",
    )
    if result.simulated:
        table.add_row("Note", "[yellow]simulated, not measured[/yellow]")
    console.print(table)

    if result.speed_history:
        console.print(
            Panel(
                f"[{color}]{create_histogram(result.speed_history)}[/{color}]\n"
                f"[dim]Min: {min(result.speed_history):.1f} Mbps  "
                f"Max: {max(result.speed_history):.1f} Mbps[/dim]",
                title="Speed Over Time",
            )
        )

    if result.connections:
        ct = Table(title="Per-Connection Stats", box=box.SIMPLE)
        ct.add_column("ID", style="dim")
        ct.add_column("Bytes", justify="right")
        ct.add_column("Speed", justify="right")
        ct.add_column("Status")
        for conn in result.connections:
            ct.add_row(
                str(conn.id),
                f"{conn.bytes_transferred / 1_000_000:.1f} MB",
                format_speed(conn.speed_mbps),
                f"[red]{conn.error[:40]}[/red]" if conn.error else "[green]ok[/green]",
            )
        console.print(ct)


def print_quality(quality: QualityAssessment) -> None:
    table = Table(title="Connection Quality", box=box.ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Level", justify="right")
    table.add_row("Latency", quality_text(quality.latency))
    table.add_row("Download", quality_text(quality.download))
    table.add_row("Upload", quality_text(quality.upload))
    table.add_row("Jitter", quality_text(quality.jitter))
    table.add_row("Packet Loss", quality_text(quality.packet_loss))
    console.print(table)


def print_final_results(result) -> None:  # noqa: ANN001 (TestResult)
    latency = result.latency
    quality = result.quality
    server = result.server.name if result.server else "?"
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Server:[/bold cyan] {server}\n\n"
            f"[bold white]   Latency:[/bold white]  [bold yellow]{latency.avg:.1f} ms[/bold yellow]  "
            f"[dim](jitter: {latency.jitter:.2f} ms, loss: {latency.packet_loss:.1f}%)[/dim]\n"
            f"[bold white]   Download:[/bold white]  [bold green]{format_speed(result.download.speed)}[/bold green]\n"
            f"[bold white]   Upload:[/bold white]  [bold blue]{format_speed(result.upload.speed)}[/bold blue]\n\n"
            f"[bold white]   Quality:[/bold white]  {quality_text(quality.overall)}  "
            f"[dim](score {quality.score:.0f}/100)[/dim]",
            title="[bold]Results[/bold]",
            border_style="cyan",
        )
    )
    console.print()


def print_history(entries: List[Dict[str, Any]]) -> None:
    if not entries:
        console.print("[dim]No test history yet.[/dim]")
        return

    rows = format_history_table(entries)
    table = Table(title=f"Test History (last {len(rows)})", box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("Server")
    table.add_column("Latency", justify="right")
    table.add_column("Jitter", justify="right")
    table.add_column("Download", justify="right", style="green")
    table.add_column("Upload", justify="right", style="blue")
    table.add_column("Quality")
    for row in rows:
        table.add_row(
            row["timestamp"],
            row["server"],
            f"{row['latency']:.1f} ms",
            f"{row['jitter']:.2f} ms",
            format_speed(row["download"]),
            format_speed(row["upload"]),
            row["quality"],
        )
    console.print(table)

    # oldest to newest, left to right
    downloads = [r["download"] for r in reversed(rows)]
    console.print(f"  Download trend: [green]{sparkline(downloads)}[/green]")


# ---------------------------------------------------------------------------
# Progress display
# ---------------------------------------------------------------------------

class ProgressDisplay:
    """A single ``rich`` progress bar for a whole test, fed ``ProgressEvent``s."""

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description:<30}"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[bold cyan]{task.fields[detail]}[/bold cyan]"),
            TimeElapsedColumn(),
            console=console,
        )
        self._task_id = None
        self._last_pct = -1.0

    def start(self, description: str = "Starting...") -> None:
        self.progress.start()
        self._task_id = self.progress.add_task(description, total=100, detail="")
        self._last_pct = -1.0

    def handle(self, event: ProgressEvent) -> None:
        if self._task_id is None:
            return
        # Debounce: only update when the bar moves noticeably
        if event.percentage - self._last_pct < 0.5 and event.percentage < 100:
            return
        if event.speed is not None:
            detail = format_speed(event.speed)
        elif event.latency is not None:
            detail = format_latency(event.latency)
        else:
            detail = ""
        self.progress.update(
            self._task_id,
            completed=event.percentage,
            description=event.label or event.phase.value,
            detail=detail,
        )
        self._last_pct = event.percentage

    def stop(self) -> None:
        self.progress.stop()


# ---------------------------------------------------------------------------
# Monitoring display
# ---------------------------------------------------------------------------

def build_monitor_table(session: Optional[MonitoringSession], rows: int = 15) -> Table:
    """Recent data points plus session averages as one table."""
    table = Table(box=box.ROUNDED, expand=False)
    table.add_column("Time", style="dim")
    table.add_column("Latency", justify="right")
    table.add_column("Jitter", justify="right")
    table.add_column("Loss", justify="right")
    table.add_column("Download", justify="right", style="green")
    table.add_column("Upload", justify="right", style="blue")
    table.add_column("Quality")

    if session is None:
        table.title = "Monitoring"
        return table

    for p in session.data_points[-rows:]:
        mark = "~" if p.estimated else " "
        table.add_row(
            datetime.fromtimestamp(p.timestamp).strftime("%H:%M:%S"),
            format_latency(p.latency),
            f"{p.jitter:.2f} ms",
            f"{p.packet_loss:.0f}%",
            f"{mark}{format_speed(p.download_speed)}",
            f"{mark}{format_speed(p.upload_speed)}",
            quality_text(p.quality),
        )

    stats = session.statistics
    table.title = f"Monitoring ({session.status.value}, {stats.sample_count} samples)"
    table.caption = (
        f"avg {stats.average_latency:.1f} ms | "
        f"{format_speed(stats.average_download)} down | "
        f"{format_speed(stats.average_upload)} up | "
        f"session quality: {quality_text(stats.overall_quality)}  "
        f"[dim]~ = estimated[/dim]"
    )
    return table


class MonitorDisplay:
    """Live-refreshing monitoring table."""

    def __init__(self) -> None:
        self.live = Live(build_monitor_table(None), console=console, refresh_per_second=4)

    def start(self) -> None:
        self.live.start()

    def update(self, session: Optional[MonitoringSession]) -> None:
        self.live.update(build_monitor_table(session))

    def stop(self) -> None:
        self.live.stop()

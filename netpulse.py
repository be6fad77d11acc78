#!/usr/bin/env python3
"""
NetPulse CLI -- latency, throughput and connection quality from the terminal.

Usage::

    python netpulse.py                       # rich dashboard
    python netpulse.py --simple              # plain text
    python netpulse.py --json                # JSON to stdout
    python netpulse.py -o result.json        # save to file
    python netpulse.py --csv log.csv         # append CSV row
    python netpulse.py --history             # show past results
    python netpulse.py --latency-only        # latency series only
    python netpulse.py --monitor --interval 2 --max-points 100
    python netpulse.py --log-level DEBUG --log-file netpulse.log
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from engine.config import TestConfig, load_test_config
from engine.errors import ConfigError, NetPulseError
from engine.history import MAX_DISPLAY, JsonFileStore, KeyValueStore, ResultHistory
from engine.logging_setup import configure_logging
from engine.monitor import MonitoringDataPoint, MonitorStatus
from engine.quality import METHODS
from engine.service import NetPulse
from engine.stats import format_latency, format_speed
from ui.dashboard import (
    MonitorDisplay,
    ProgressDisplay,
    console,
    print_final_results,
    print_header,
    print_history,
    print_latency_details,
    print_quality,
    print_server,
    print_speed_result,
)
from ui.output import (
    append_csv,
    create_result_json,
    create_session_json,
    format_text_result,
    save_json,
)

LOGGER = logging.getLogger("netpulse")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def build_config(args: argparse.Namespace) -> TestConfig:
    """Persisted defaults overridden by command-line flags; raises ``ConfigError``."""
    overrides = {
        "latency_sample_count": args.ping_count,
        "parallel_connections": args.connections,
        "transfer_duration_ms": None if args.duration is None else args.duration * 1000,
        "overhead_compensation": args.overhead,
        "monitoring_interval_ms": None if args.interval is None else args.interval * 1000,
        "max_data_points": args.max_points,
        "quality_method": args.quality_method,
        "connection_class": args.connection_class,
        "server_url": args.server_url,
        "ws_url": args.ws_url,
    }
    if args.allow_simulated:
        overrides["allow_simulated_fallback"] = True
    return load_test_config(**overrides)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

async def run_test(
    config: TestConfig,
    *,
    json_output: bool = False,
    output_file: Optional[str] = None,
    csv_file: Optional[str] = None,
    simple: bool = False,
    store: Optional[KeyValueStore] = None,
) -> dict:
    """Execute a full test and return its JSON-serialisable record."""
    show_ui = not json_output and not simple

    if show_ui:
        print_header()

    async with NetPulse(config, store=store) as netpulse:
        progress = None
        if show_ui:
            progress = ProgressDisplay()
            netpulse.on("progress", progress.handle)
            progress.start()
        try:
            result = await netpulse.start_test()
        finally:
            if progress is not None:
                progress.stop()

    if show_ui:
        if result.server is not None:
            print_server(result.server)
        print_latency_details(result.latency)
        print_speed_result(result.download, "Download Results", "green")
        print_speed_result(result.upload, "Upload Results", "blue")
        print_quality(result.quality)
        print_final_results(result)
    elif simple:
        print(format_text_result(result))

    result_json = create_result_json(result)

    if json_output:
        print(json.dumps(result_json, indent=2))

    if output_file:
        save_json(result_json, output_file)
        if not json_output:
            console.print(f"\n[green]Results saved to:[/green] {output_file}")

    if csv_file:
        append_csv(csv_file, result)
        if not json_output:
            console.print(f"[green]CSV row appended to:[/green] {csv_file}")

    return result_json


async def run_latency_only(
    config: TestConfig,
    *,
    json_output: bool = False,
    simple: bool = False,
) -> dict:
    async with NetPulse(config) as netpulse:
        latency = await netpulse.measure_latency()
        strategy = netpulse.prober.last_strategy

    data = latency.to_dict()
    data["strategy"] = strategy
    if json_output:
        print(json.dumps(data, indent=2))
    elif simple:
        print(f"Latency: {latency.avg:.1f} ms")
        print(f"Jitter: {latency.jitter:.2f} ms")
        print(f"Packet Loss: {latency.packet_loss:.1f}%")
    else:
        print_header()
        print_latency_details(latency)
    return data


def _format_point(point: MonitoringDataPoint) -> str:
    mark = " (est.)" if point.estimated else ""
    return (
        f"{format_latency(point.latency)}  jitter {point.jitter:.2f} ms  "
        f"loss {point.packet_loss:.0f}%  "
        f"down {format_speed(point.download_speed)}  up {format_speed(point.upload_speed)}"
        f"{mark}  [{point.quality.value}]"
    )


async def run_monitor(
    config: TestConfig,
    *,
    duration: float = 0.0,
    json_output: bool = False,
    output_file: Optional[str] = None,
    simple: bool = False,
) -> dict:
    """Monitor until *duration* seconds pass (0 = until interrupted)."""
    show_ui = not json_output and not simple

    async with NetPulse(config) as netpulse:
        display = MonitorDisplay() if show_ui else None
        if display is not None:
            netpulse.on("data", lambda _point: display.update(netpulse.monitor.session))
            netpulse.on("status", lambda _status: display.update(netpulse.monitor.session))
        elif simple:
            netpulse.on("data", lambda point: print(_format_point(point), flush=True))

        if display is not None:
            display.start()
        try:
            await netpulse.start_monitoring()
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                await asyncio.Event().wait()
        finally:
            if display is not None:
                display.stop()
            if netpulse.monitor.status is not MonitorStatus.STOPPED:
                await netpulse.stop_monitoring()
        session = netpulse.monitor.session

    session_json = create_session_json(session)
    if json_output:
        print(json.dumps(session_json, indent=2))
    if output_file:
        save_json(session_json, output_file)
    return session_json


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="NetPulse -- network latency, throughput and quality",
    )
    # Output modes
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    parser.add_argument("--output", "-o", type=str, metavar="FILE", help="Save results to JSON file")
    parser.add_argument("--csv", type=str, metavar="FILE", help="Append results as CSV row")
    parser.add_argument("--simple", "-s", action="store_true", help="Simple output mode (no dashboard)")

    # Modes
    parser.add_argument("--latency-only", action="store_true", help="Measure latency only")
    parser.add_argument("--monitor", "-m", action="store_true", help="Continuous monitoring session")
    parser.add_argument("--history", action="store_true", help="Show past test results and exit")
    parser.add_argument("--clear-history", action="store_true", help="Delete stored results and exit")

    # Test parameters (unset flags fall back to ~/.netpulse/config.json)
    parser.add_argument("--ping-count", type=int, metavar="N", help="Number of latency samples (default: 15)")
    parser.add_argument("--duration", type=float, metavar="SECS", help="Transfer duration per direction in seconds (default: 10)")
    parser.add_argument("--connections", type=int, metavar="N", help="Number of parallel connections (default: 4)")
    parser.add_argument("--overhead", type=float, metavar="FRACTION", help="Protocol overhead compensation (default: 0.08)")
    parser.add_argument("--quality-method", choices=METHODS, help="Overall quality formula (default: weighted)")
    parser.add_argument("--connection-class", metavar="CLASS", help="Last-resort latency estimate, e.g. wifi or 4g")
    parser.add_argument("--server-url", metavar="URL", help="JSON server catalog to select from")
    parser.add_argument("--ws-url", metavar="URL", help="WebSocket endpoint for PING/PONG latency probes")
    parser.add_argument("--allow-simulated", action="store_true", help="Fall back to simulated throughput when every connection fails")

    # Monitoring
    parser.add_argument("--interval", type=float, metavar="SECS", help="Seconds between monitoring samples (default: 2)")
    parser.add_argument("--max-points", type=int, metavar="N", help="Data points kept by a monitoring session (default: 50)")
    parser.add_argument("--monitor-duration", type=float, default=0.0, metavar="SECS", help="Stop monitoring after SECS (default: until Ctrl-C)")

    # Logging
    parser.add_argument("--log-level", default="WARNING", choices=("DEBUG", "INFO", "WARNING", "ERROR"), help="Log verbosity (default: WARNING)")
    parser.add_argument("--log-file", metavar="FILE", help="Also write logs to a rotating file")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    # History mode
    if args.history or args.clear_history:
        history = ResultHistory(JsonFileStore())
        if args.clear_history:
            history.clear()
            console.print("[green]History cleared.[/green]")
        else:
            print_history(history.load(MAX_DISPLAY))
        return

    try:
        config = build_config(args)
    except ConfigError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    try:
        if args.monitor:
            asyncio.run(run_monitor(
                config,
                duration=args.monitor_duration,
                json_output=args.json,
                output_file=args.output,
                simple=args.simple,
            ))
        elif args.latency_only:
            asyncio.run(run_latency_only(config, json_output=args.json, simple=args.simple))
        else:
            asyncio.run(run_test(
                config,
                json_output=args.json,
                output_file=args.output,
                csv_file=args.csv,
                simple=args.simple,
            ))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        sys.exit(1)
    except NetPulseError as exc:
        LOGGER.debug("Run failed", exc_info=True)
        console.print(f"\n[red]Error: {exc}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()

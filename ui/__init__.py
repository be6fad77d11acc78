"""UI layer -- Rich dashboard and output formatters."""

from .dashboard import (
    MonitorDisplay,
    ProgressDisplay,
    build_monitor_table,
    console,
    create_histogram,
    print_final_results,
    print_header,
    print_history,
    print_latency_details,
    print_quality,
    print_server,
    print_speed_result,
)
from .output import (
    append_csv,
    create_result_json,
    create_session_json,
    format_csv_header,
    format_csv_row,
    format_text_result,
    save_json,
)

__all__ = [
    "MonitorDisplay",
    "ProgressDisplay",
    "append_csv",
    "build_monitor_table",
    "console",
    "create_histogram",
    "create_result_json",
    "create_session_json",
    "format_csv_header",
    "format_csv_row",
    "format_text_result",
    "print_final_results",
    "print_header",
    "print_history",
    "print_latency_details",
    "print_quality",
    "print_server",
    "print_speed_result",
    "save_json",
]

"""NetPulse measurement engine -- latency, throughput, quality and monitoring."""

from .config import TestConfig, load_config, load_test_config, save_config
from .errors import (
    ConfigError,
    ConnectivityError,
    MeasurementTimeoutError,
    NetPulseError,
    RunCancelledError,
    TransferError,
)
from .history import JsonFileStore, MemoryStore, ResultHistory
from .latency import LatencyProber
from .monitor import (
    MonitoringDataPoint,
    MonitoringSession,
    MonitoringSessionManager,
    MonitorStatus,
    SessionStatistics,
)
from .orchestrator import TestOrchestrator, TestResult
from .progress import Phase, ProgressEvent
from .quality import QualityAssessment, QualityLevel, assess
from .servers import DEFAULT_SERVERS, TestServer
from .service import NetPulse
from .stats import LatencyResultSet, Sample, format_latency, format_speed
from .throughput import ThroughputConfig, ThroughputEngine, ThroughputResult

__all__ = [
    "ConfigError",
    "ConnectivityError",
    "DEFAULT_SERVERS",
    "JsonFileStore",
    "LatencyProber",
    "LatencyResultSet",
    "MeasurementTimeoutError",
    "MemoryStore",
    "MonitorStatus",
    "MonitoringDataPoint",
    "MonitoringSession",
    "MonitoringSessionManager",
    "NetPulse",
    "NetPulseError",
    "Phase",
    "ProgressEvent",
    "QualityAssessment",
    "QualityLevel",
    "ResultHistory",
    "RunCancelledError",
    "Sample",
    "SessionStatistics",
    "TestConfig",
    "TestOrchestrator",
    "TestResult",
    "TestServer",
    "ThroughputConfig",
    "ThroughputEngine",
    "ThroughputResult",
    "TransferError",
    "assess",
    "format_latency",
    "format_speed",
    "load_config",
    "load_test_config",
    "save_config",
]

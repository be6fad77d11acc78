"""
Shared constants used across all engine modules.

Centralises magic numbers, default headers, thresholds and tunables so they
live in exactly one place.
"""

# ---------------------------------------------------------------------------
# HTTP headers
# ---------------------------------------------------------------------------

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/144.0.0.0 Safari/537.36"
)

COMMON_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# ---------------------------------------------------------------------------
# Connection limits
# ---------------------------------------------------------------------------

MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 32
DEFAULT_CONNECTIONS = 4

# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------

DEFAULT_PING_COUNT = 15
MIN_PING_COUNT = 1
MAX_PING_COUNT = 100
DEFAULT_PING_TIMEOUT_MS = 5000
DEFAULT_PING_INTERVAL_MS = 300

# Typical round-trip times per connection class, used by the last-resort
# estimate strategy.
CONNECTION_CLASS_RTT_MS = {
    "ethernet": 10.0,
    "wifi": 30.0,
    "5g": 25.0,
    "4g": 60.0,
    "3g": 270.0,
    "2g": 1400.0,
    "slow-2g": 2000.0,
}

# ---------------------------------------------------------------------------
# Throughput
# ---------------------------------------------------------------------------

DEFAULT_TRANSFER_DURATION_MS = 10000
MIN_DURATION_MS = 1000
MAX_DURATION_MS = 300000
DEFAULT_PROGRESS_INTERVAL_MS = 100
DEFAULT_OVERHEAD_COMPENSATION = 0.08
PROBE_DURATION_MS = 2000         # progressive sizing probe, upper bound
SMOOTHING_WINDOW = 5             # per-tick rates averaged for instant speed

CHUNK_SIZE = 64 * 1024
UPLOAD_BUFFER_SIZE = 1024 * 1024 # 1 MB pre-generated random buffer
SETTLE_TIMEOUT = 2.0             # seconds to wait for cancelled transfers

# (name, size in bytes, min Mbps inclusive, max Mbps exclusive)
PAYLOAD_BUCKETS = (
    ("small", 350 * 1024, 0.0, 10.0),
    ("medium", 750 * 1024, 10.0, 25.0),
    ("large", 1536 * 1024, 25.0, 50.0),
    ("xlarge", 3 * 1024 * 1024, 50.0, 100.0),
    ("xxlarge", 5 * 1024 * 1024, 100.0, 1000.0),
)
DEFAULT_PAYLOAD = "large"

# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

DEFAULT_TRANSITION_DELAY_MS = 1000
DEFAULT_PHASE_TIMEOUT_MS = 15000  # grace on top of a phase's own duration

# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------

DEFAULT_MONITORING_INTERVAL_MS = 2000
MIN_MONITORING_INTERVAL_MS = 250
DEFAULT_MAX_DATA_POINTS = 50
DEFAULT_THROUGHPUT_REFRESH_MS = 30000
MONITOR_TRANSFER_DURATION_MS = 3000
MONITOR_CONNECTIONS = 2
MONITOR_LATENCY_TIMEOUT_MS = 3000
MONITOR_SPEED_VARIATION = 0.10   # +/-5 % around the last measurement
MONITOR_WINDOW = 10              # recent probes used for jitter / loss

# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

HISTORY_KEY = "netpulse_test_history"
DEFAULT_HISTORY_LIMIT = 50

# ---------------------------------------------------------------------------
# Quality thresholds (inclusive on the better side)
# ---------------------------------------------------------------------------

# excellent, good, fair, poor -- anything past "poor" is very-poor
LATENCY_THRESHOLDS = (20.0, 50.0, 100.0, 200.0)
DOWNLOAD_THRESHOLDS = (100.0, 50.0, 25.0, 10.0)
UPLOAD_THRESHOLDS = (50.0, 25.0, 10.0, 5.0)
JITTER_THRESHOLDS = (5.0, 10.0, 20.0, 50.0)
PACKET_LOSS_THRESHOLDS = (0.0, 1.0, 3.0, 5.0)

QUALITY_WEIGHTS = {
    "latency": 0.3,
    "download": 0.3,
    "upload": 0.2,
    "jitter": 0.1,
    "packet_loss": 0.1,
}

# minimum weighted score for excellent, good, fair, poor
SCORE_THRESHOLDS = (80.0, 60.0, 40.0, 20.0)

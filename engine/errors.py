"""
Error taxonomy for the measurement engine.

Components raise these instead of leaking transport-level exceptions, so
callers only ever have to handle one family.
"""
from __future__ import annotations


class NetPulseError(Exception):
    """Base class for all engine errors."""


class ConnectivityError(NetPulseError):
    """Every latency probing strategy failed."""


class TransferError(NetPulseError):
    """Every concurrent connection of a throughput measurement failed."""


class MeasurementTimeoutError(NetPulseError, TimeoutError):
    """A phase exceeded its maximum duration without settling."""


class RunCancelledError(NetPulseError):
    """The caller stopped the run before it completed."""


class ConfigError(NetPulseError, ValueError):
    """A configuration value is out of range."""

"""Progress events shared by the prober, the throughput engine and the orchestrator."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class Phase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LATENCY = "latency"
    TRANSITION = "transition"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.ERROR, Phase.CANCELLED)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update; ``percentage`` never decreases within a phase."""

    phase: Phase
    percentage: float
    label: str = ""
    speed: Optional[float] = None
    latency: Optional[float] = None
    bytes_transferred: int = 0

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "percentage": round(self.percentage, 2),
            "label": self.label,
            "speed": None if self.speed is None else round(self.speed, 2),
            "latency": None if self.latency is None else round(self.latency, 2),
            "bytes": self.bytes_transferred,
        }


ProgressCallback = Callable[[ProgressEvent], None]

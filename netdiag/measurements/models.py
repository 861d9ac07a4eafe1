"""Shared dataclasses for measurements."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class TestPhase(str, Enum):
    IDLE = "idle"
    PING = "ping"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    COMPLETED = "completed"


class HopMethod(str, Enum):
    TTL_PROBE = "ttl-probe"
    TCP_PROBE = "tcp-probe"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class TestTarget:
    name: str
    country: str
    city: str
    download_url: str
    upload_url: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "country": self.country,
            "city": self.city,
            "download_url": self.download_url,
            "upload_url": self.upload_url,
        }


@dataclass(frozen=True)
class MeasurementState:
    """Snapshot of a throughput run. Replaced as a whole, never mutated."""

    status: RunStatus = RunStatus.IDLE
    phase: TestPhase = TestPhase.IDLE
    download_mbps: float = 0.0
    upload_mbps: float = 0.0
    latency_ms: int = 0
    jitter_ms: int = 0
    latency_synthetic: bool = False
    upload_simulated: bool = True
    progress_pct: float = 0.0
    error: Optional[str] = None
    target: Optional[TestTarget] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.DONE, RunStatus.ERROR)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "phase": self.phase.value,
            "download_mbps": round(self.download_mbps, 2),
            "upload_mbps": round(self.upload_mbps, 2),
            "latency_ms": self.latency_ms,
            "jitter_ms": self.jitter_ms,
            "latency_synthetic": self.latency_synthetic,
            "upload_simulated": self.upload_simulated,
            "progress_pct": round(self.progress_pct, 1),
            "error": self.error,
            "target": self.target.to_dict() if self.target else None,
        }


@dataclass(frozen=True)
class Sample:
    cumulative_bytes: int
    timestamp_ms: float


@dataclass(frozen=True)
class HopResult:
    hop: int
    address: Optional[str]
    rtt_ms: Optional[float]
    method: HopMethod
    port: Optional[int] = None
    label: Optional[str] = None
    reached: bool = False

    def format_line(self) -> str:
        address = self.address or "*"
        rtt = f"{self.rtt_ms:.1f} ms" if self.rtt_ms is not None else "*"
        line = f"{self.hop:2d}  {address}  {rtt}"
        if self.port is not None:
            line += f"  (tcp/{self.port})"
        if self.label:
            line += f"  {self.label}"
        return line


@dataclass(frozen=True)
class TraceState:
    status: RunStatus = RunStatus.IDLE
    host: Optional[str] = None
    lines: Tuple[str, ...] = ()
    method: Optional[HopMethod] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.DONE, RunStatus.ERROR)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "host": self.host,
            "lines": list(self.lines),
            "method": self.method.value if self.method else None,
            "error": self.error,
        }

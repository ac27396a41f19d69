"""Shared dataclasses for measurements."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ErrorKind, SpeedprobeError, ZeroMeasurementError


class MeasurementKind(str, Enum):
    PING = "ping"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class SessionState(str, Enum):
    IDLE = "idle"
    PINGING = "pinging"
    DOWNLOADING_INITIAL = "downloading_initial"
    DOWNLOADING_EXTENDED = "downloading_extended"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.FAILED)


NO_ESCALATION = "none"


@dataclass(frozen=True)
class MeasurementError:
    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: SpeedprobeError) -> "MeasurementError":
        return cls(kind=exc.kind, message=str(exc))


@dataclass(frozen=True)
class PingSample:
    """One probe attempt. ``round_trip_ms`` is None when the attempt failed."""

    round_trip_ms: Optional[float]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.round_trip_ms is not None


@dataclass
class PingSeries:
    samples: List[PingSample] = field(default_factory=list)

    @property
    def successful(self) -> List[float]:
        return [sample.round_trip_ms for sample in self.samples if sample.ok]

    @property
    def avg_ms(self) -> Optional[float]:
        times = self.successful
        if not times:
            return None
        return sum(times) / len(times)

    @property
    def min_ms(self) -> Optional[float]:
        times = self.successful
        return min(times) if times else None

    @property
    def max_ms(self) -> Optional[float]:
        times = self.successful
        return max(times) if times else None

    @property
    def jitter_ms(self) -> Optional[float]:
        times = self.successful
        if not times:
            return None
        if len(times) == 1:
            return 0.0
        diffs = [abs(times[i + 1] - times[i]) for i in range(len(times) - 1)]
        return sum(diffs) / len(diffs)


def compute_rate_mbps(bytes_transferred: int, duration_seconds: float) -> float:
    """Throughput in megabits per second (10^6 bits)."""
    if duration_seconds <= 0 or bytes_transferred <= 0:
        raise ZeroMeasurementError(
            f"Cannot compute a rate from {bytes_transferred} bytes in {duration_seconds:.6f}s"
        )
    rate = bytes_transferred * 8 / (duration_seconds * 1_000_000)
    if not math.isfinite(rate):
        raise ZeroMeasurementError(f"Non-finite rate from {bytes_transferred} bytes in {duration_seconds}s")
    return rate


@dataclass
class MeasurementResult:
    kind: MeasurementKind
    bytes_transferred: int = 0
    duration_seconds: float = 0.0
    rate_mbps: Optional[float] = None
    error: Optional[MeasurementError] = None
    label: Optional[str] = None
    latency_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    samples: List[PingSample] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(
        cls,
        kind: MeasurementKind,
        exc: SpeedprobeError,
        bytes_transferred: int = 0,
        duration_seconds: float = 0.0,
        label: Optional[str] = None,
    ) -> "MeasurementResult":
        return cls(
            kind=kind,
            bytes_transferred=bytes_transferred,
            duration_seconds=duration_seconds,
            error=MeasurementError.from_exception(exc),
            label=label,
        )

    @classmethod
    def from_transfer(
        cls,
        kind: MeasurementKind,
        bytes_transferred: int,
        duration_seconds: float,
        label: Optional[str] = None,
    ) -> "MeasurementResult":
        """Build a throughput result, or a zero-measurement failure."""
        try:
            rate = compute_rate_mbps(bytes_transferred, duration_seconds)
        except ZeroMeasurementError as exc:
            return cls.failure(kind, exc, bytes_transferred, max(duration_seconds, 0.0), label)
        return cls(
            kind=kind,
            bytes_transferred=bytes_transferred,
            duration_seconds=duration_seconds,
            rate_mbps=rate,
            label=label,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "label": self.label,
            "bytes_transferred": self.bytes_transferred,
            "duration_seconds": self.duration_seconds,
            "rate_mbps": round(self.rate_mbps, 2) if self.rate_mbps is not None else None,
            "error": None,
        }
        if self.kind is MeasurementKind.PING:
            payload["latency_ms"] = round(self.latency_ms, 2) if self.latency_ms is not None else None
            payload["jitter_ms"] = round(self.jitter_ms, 2) if self.jitter_ms is not None else None
            payload["attempts"] = len(self.samples)
            payload["successful"] = sum(1 for sample in self.samples if sample.ok)
        if self.error is not None:
            payload["error"] = {"kind": self.error.kind.value, "message": self.error.message}
        return payload


@dataclass
class ProgressEvent:
    state: SessionState
    percent: float
    status: str


@dataclass
class TestSession:
    state: SessionState = SessionState.IDLE
    results: List[MeasurementResult] = field(default_factory=list)
    escalation: str = NO_ESCALATION
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def _by_kind(self, kind: MeasurementKind) -> List[MeasurementResult]:
        return [result for result in self.results if result.kind is kind]

    @property
    def ping(self) -> Optional[MeasurementResult]:
        matches = self._by_kind(MeasurementKind.PING)
        return matches[-1] if matches else None

    @property
    def download(self) -> Optional[MeasurementResult]:
        """Latest successful download, else the latest download attempted."""
        downloads = self._by_kind(MeasurementKind.DOWNLOAD)
        for result in reversed(downloads):
            if result.ok:
                return result
        return downloads[-1] if downloads else None

    @property
    def upload(self) -> Optional[MeasurementResult]:
        matches = self._by_kind(MeasurementKind.UPLOAD)
        return matches[-1] if matches else None

    @property
    def total_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        def summary(result: Optional[MeasurementResult]) -> Optional[Dict[str, Any]]:
            return result.to_dict() if result is not None else None

        return {
            "state": self.state.value,
            "escalation": self.escalation,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total_seconds": self.total_seconds,
            "failure_reason": self.failure_reason,
            "ping": summary(self.ping),
            "download": summary(self.download),
            "upload": summary(self.upload),
            "results": [result.to_dict() for result in self.results],
        }

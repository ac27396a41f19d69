"""Adaptive speed test session orchestration.

A session runs ping, an initial download, an optional larger download when
the first one was fast, and an upload. Stages never overlap. Progress is
published to subscribers as ``ProgressEvent`` objects; nothing here knows
about rendering.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import requests

from ..config import MIB, ClientConfig, EscalationTier
from .latency import LatencyProbe
from .models import (
    NO_ESCALATION,
    MeasurementResult,
    ProgressEvent,
    SessionState,
    TestSession,
)
from .throughput import ThroughputMeasurer

LOGGER = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

_IN_PROGRESS = frozenset(
    {
        SessionState.PINGING,
        SessionState.DOWNLOADING_INITIAL,
        SessionState.DOWNLOADING_EXTENDED,
        SessionState.UPLOADING,
    }
)

TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.PINGING}),
    SessionState.PINGING: frozenset({SessionState.DOWNLOADING_INITIAL, SessionState.FAILED}),
    SessionState.DOWNLOADING_INITIAL: frozenset(
        {SessionState.DOWNLOADING_EXTENDED, SessionState.UPLOADING, SessionState.FAILED}
    ),
    SessionState.DOWNLOADING_EXTENDED: frozenset({SessionState.UPLOADING, SessionState.FAILED}),
    SessionState.UPLOADING: frozenset({SessionState.COMPLETE, SessionState.FAILED}),
    SessionState.COMPLETE: frozenset({SessionState.IDLE}),
    SessionState.FAILED: frozenset({SessionState.IDLE}),
}

# Share of the overall progress bar owned by each stage.
PROGRESS_BANDS: Dict[SessionState, Tuple[float, float]] = {
    SessionState.PINGING: (0.0, 15.0),
    SessionState.DOWNLOADING_INITIAL: (15.0, 45.0),
    SessionState.DOWNLOADING_EXTENDED: (45.0, 75.0),
    SessionState.UPLOADING: (75.0, 100.0),
}


def select_escalation(
    rate_mbps: Optional[float], tiers: Sequence[EscalationTier]
) -> Optional[EscalationTier]:
    """Return the tier whose threshold ``rate_mbps`` strictly exceeds, highest first."""
    if rate_mbps is None:
        return None
    for tier in sorted(tiers, key=lambda t: t.rate_mbps, reverse=True):
        if rate_mbps > tier.rate_mbps:
            return tier
    return None


def _size_label(size_bytes: int) -> str:
    return f"{size_bytes / MIB:g}MB"


class AdaptiveTestController:
    def __init__(
        self,
        config: ClientConfig,
        latency_probe: LatencyProbe,
        measurer: ThroughputMeasurer,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.latency_probe = latency_probe
        self.measurer = measurer
        self._sleep = sleep
        self._state = SessionState.IDLE
        self._listeners: List[ProgressListener] = []
        self.session: Optional[TestSession] = None

    @classmethod
    def from_config(
        cls, config: ClientConfig, session: Optional[requests.Session] = None
    ) -> "AdaptiveTestController":
        http = session or requests.Session()
        http.headers.update({"Cache-Control": "no-cache", "Pragma": "no-cache"})
        return cls(
            config,
            LatencyProbe.from_config(config, http),
            ThroughputMeasurer.from_config(config, http),
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state in _IN_PROGRESS

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a progress listener; the returned callable removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, percent: float, status: str) -> None:
        event = ProgressEvent(state=self._state, percent=max(0.0, min(100.0, percent)), status=status)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Progress listener %r failed on %s event", listener, event.state.value)

    def _transition(self, target: SessionState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal session transition {self._state.value} -> {target.value}")
        LOGGER.debug("Session state %s -> %s", self._state.value, target.value)
        self._state = target
        if self.session is not None:
            self.session.state = target

    def _band_progress(self, stage: SessionState, label: str) -> Callable[[int, int], None]:
        low, high = PROGRESS_BANDS[stage]

        def report(done: int, total: int) -> None:
            fraction = min(1.0, done / total) if total > 0 else 0.0
            self._emit(low + (high - low) * fraction, f"Testing {label}...")

        return report

    def _pause(self) -> None:
        if self.config.stage_pause_ms:
            self._sleep(self.config.stage_pause_ms / 1000)

    def _fail(self, reason: str) -> None:
        LOGGER.error("Speed test session failed: %s", reason)
        self.session.failure_reason = reason
        if self._state in _IN_PROGRESS:
            self._transition(SessionState.FAILED)
        else:
            self._state = SessionState.FAILED
            self.session.state = SessionState.FAILED
        self._emit(100.0, f"Error: {reason}")

    def choose_escalation(self, initial: MeasurementResult) -> Optional[EscalationTier]:
        if not initial.ok:
            return None
        return select_escalation(initial.rate_mbps, self.config.escalation_thresholds)

    def run(self) -> TestSession:
        """Run one complete session. Stage failures are recorded, never raised."""
        if self.is_running:
            raise RuntimeError("A speed test session is already in progress")
        if self._state.is_terminal:
            self._transition(SessionState.IDLE)

        self.session = TestSession(started_at=datetime.utcnow())
        try:
            self._run_stages()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected error during speed test session")
            self._fail(str(exc) or exc.__class__.__name__)
        finally:
            self.session.finished_at = datetime.utcnow()
        return self.session

    def _run_stages(self) -> None:
        session = self.session
        config = self.config

        self._transition(SessionState.PINGING)
        self._emit(0.0, "Testing ping...")
        low, high = PROGRESS_BANDS[SessionState.PINGING]
        ping = self.latency_probe.run(
            on_attempt=lambda done, total: self._emit(low + (high - low) * done / total, "Testing ping...")
        )
        session.results.append(ping)
        if ping.ok:
            self._emit(high, f"Ping {ping.latency_ms:.2f} ms")
        elif config.skip_on_ping_failure:
            self._fail("Ping test failed")
            return
        else:
            LOGGER.warning("Ping failed, continuing with throughput tests")
            self._emit(high, "Error: Ping test failed, continuing")

        self._pause()
        self._transition(SessionState.DOWNLOADING_INITIAL)
        label = f"Initial Download ({_size_label(config.initial_download_size)})"
        self._emit(PROGRESS_BANDS[SessionState.DOWNLOADING_INITIAL][0], f"Testing {label}...")
        initial = self.measurer.measure_download(
            config.initial_download_size,
            label=label,
            progress=self._band_progress(SessionState.DOWNLOADING_INITIAL, label),
        )
        session.results.append(initial)

        tier = self.choose_escalation(initial)
        session.escalation = tier.name if tier else NO_ESCALATION
        if tier is not None:
            LOGGER.info(
                "Initial download %.2f Mbps exceeds %.2f Mbps, escalating to %s (%d bytes)",
                initial.rate_mbps,
                tier.rate_mbps,
                tier.name,
                tier.size_bytes,
            )
            self._pause()
            self._transition(SessionState.DOWNLOADING_EXTENDED)
            label = f"Extended Download ({_size_label(tier.size_bytes)})"
            self._emit(PROGRESS_BANDS[SessionState.DOWNLOADING_EXTENDED][0], f"Testing {label}...")
            extended = self.measurer.measure_download(
                tier.size_bytes,
                label=label,
                progress=self._band_progress(SessionState.DOWNLOADING_EXTENDED, label),
            )
            session.results.append(extended)
            if not extended.ok:
                LOGGER.warning("Extended download failed, keeping the initial download result")

        download = session.download
        if download is not None and download.ok:
            self._emit(PROGRESS_BANDS[SessionState.UPLOADING][0], "Download test complete.")
        else:
            self._emit(PROGRESS_BANDS[SessionState.UPLOADING][0], "Error: Download test failed")

        self._pause()
        self._transition(SessionState.UPLOADING)
        label = f"Upload ({_size_label(config.upload_size)})"
        self._emit(PROGRESS_BANDS[SessionState.UPLOADING][0], f"Testing {label}...")
        upload = self.measurer.measure_upload(
            config.upload_size,
            label=label,
            progress=self._band_progress(SessionState.UPLOADING, label),
        )
        session.results.append(upload)

        self._transition(SessionState.COMPLETE)
        failed = [result.label or result.kind.value for result in session.results if not result.ok]
        if failed:
            self._emit(100.0, f"Test complete with errors: {', '.join(failed)}")
        else:
            self._emit(100.0, "Test Complete!")

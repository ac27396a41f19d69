"""Round-trip latency probe against the ``/ping`` endpoint."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional

import requests

from ..config import ClientConfig
from .errors import TransportError
from .models import MeasurementKind, MeasurementResult, PingSample, PingSeries

LOGGER = logging.getLogger(__name__)

AttemptCallback = Callable[[int, int], None]


def cache_busting_params() -> dict:
    return {"r": f"{random.random():.12f}", "t": int(time.time() * 1000)}


class LatencyProbe:
    """
    Issues ``iterations`` independent GET requests and averages the
    successful round trips. Failed attempts are left out of the average.
    """

    def __init__(
        self,
        session: requests.Session,
        base_url: str,
        iterations: int = 5,
        inter_delay_ms: int = 300,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.url = f"{base_url.rstrip('/')}/ping"
        self.iterations = iterations
        self.inter_delay_ms = inter_delay_ms
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ClientConfig, session: requests.Session) -> "LatencyProbe":
        return cls(
            session,
            config.base_url,
            iterations=config.ping_iterations,
            inter_delay_ms=config.ping_inter_delay_ms,
            timeout=config.request_timeout,
        )

    def probe_once(self) -> PingSample:
        start = self._clock()
        try:
            response = self.session.get(self.url, params=cache_busting_params(), timeout=self.timeout)
            response.content  # the round trip ends once the body is in
        except requests.RequestException as exc:
            LOGGER.debug("Ping attempt failed: %s", exc)
            return PingSample(round_trip_ms=None, error=str(exc))
        elapsed_ms = (self._clock() - start) * 1000
        if not response.ok:
            LOGGER.debug("Ping attempt returned HTTP %s", response.status_code)
            return PingSample(round_trip_ms=None, error=f"HTTP {response.status_code}")
        return PingSample(round_trip_ms=elapsed_ms)

    def run(self, on_attempt: Optional[AttemptCallback] = None) -> MeasurementResult:
        series = PingSeries()
        for attempt in range(self.iterations):
            series.samples.append(self.probe_once())
            if on_attempt is not None:
                on_attempt(attempt + 1, self.iterations)
            if attempt < self.iterations - 1 and self.inter_delay_ms:
                self._sleep(self.inter_delay_ms / 1000)

        avg_ms = series.avg_ms
        if avg_ms is None:
            LOGGER.warning("All %d ping attempts failed", self.iterations)
            result = MeasurementResult.failure(
                MeasurementKind.PING,
                TransportError(f"All {self.iterations} ping attempts failed"),
                label="Ping",
            )
            result.samples = list(series.samples)
            return result

        LOGGER.info(
            "Ping %.2f ms (jitter %.2f ms, %d/%d successful)",
            avg_ms,
            series.jitter_ms,
            len(series.successful),
            self.iterations,
        )
        return MeasurementResult(
            kind=MeasurementKind.PING,
            label="Ping",
            latency_ms=avg_ms,
            jitter_ms=series.jitter_ms,
            samples=list(series.samples),
        )

"""Single download/upload throughput measurements over HTTP."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, Optional

import requests

from ..config import ClientConfig
from ..streams import build_payload
from .errors import TransportError
from .latency import cache_busting_params
from .models import MeasurementKind, MeasurementResult

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class PayloadReader:
    """File-like view over a prebuilt upload body.

    requests sends objects with ``__len__`` and ``read`` as a streamed body
    with a Content-Length, so each block read doubles as a progress tick.
    """

    def __init__(self, payload: bytes, progress: Optional[ProgressCallback] = None):
        self._view = memoryview(payload)
        self._offset = 0
        self._progress = progress

    def __len__(self) -> int:
        return len(self._view) - self._offset

    def __iter__(self) -> Iterator[bytes]:
        while True:
            block = self.read(64 * 1024)
            if not block:
                return
            yield block

    def read(self, size: int = -1) -> bytes:
        end = len(self._view) if size is None or size < 0 else min(self._offset + size, len(self._view))
        block = self._view[self._offset:end].tobytes()
        self._offset = end
        if self._progress is not None and block:
            self._progress(self._offset, len(self._view))
        return block


class ThroughputMeasurer:
    """Times one transfer and turns the observed byte count into a rate."""

    def __init__(
        self,
        session: requests.Session,
        base_url: str,
        chunk_size: int = 64 * 1024,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._clock = clock

    @classmethod
    def from_config(cls, config: ClientConfig, session: requests.Session) -> "ThroughputMeasurer":
        return cls(
            session,
            config.base_url,
            chunk_size=config.chunk_size,
            timeout=config.request_timeout,
        )

    def measure(
        self,
        kind: MeasurementKind,
        size_bytes: int,
        label: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MeasurementResult:
        if kind is MeasurementKind.DOWNLOAD:
            return self.measure_download(size_bytes, label=label, progress=progress)
        if kind is MeasurementKind.UPLOAD:
            return self.measure_upload(size_bytes, label=label, progress=progress)
        raise ValueError(f"ThroughputMeasurer cannot measure {kind.value}")

    def measure_download(
        self,
        size_bytes: int,
        label: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MeasurementResult:
        label = label or "Download"
        params = {"size": size_bytes, **cache_busting_params()}
        received = 0
        start = self._clock()
        try:
            with self.session.get(
                f"{self.base_url}/download", params=params, stream=True, timeout=self.timeout
            ) as response:
                if not response.ok:
                    raise TransportError(
                        f"Server error for {label}: {response.status_code} {response.reason}"
                    )
                expected = int(response.headers.get("Content-Length") or size_bytes)
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    received += len(chunk)
                    if progress is not None:
                        progress(received, expected)
            duration = self._clock() - start
        except (requests.RequestException, TransportError, ValueError) as exc:
            elapsed = self._clock() - start
            LOGGER.error("%s failed after %d bytes: %s", label, received, exc)
            error = exc if isinstance(exc, TransportError) else TransportError(str(exc))
            return MeasurementResult.failure(MeasurementKind.DOWNLOAD, error, received, elapsed, label)

        if received != expected:
            LOGGER.warning("%s: server declared %d bytes but %d arrived", label, expected, received)
        result = MeasurementResult.from_transfer(MeasurementKind.DOWNLOAD, received, duration, label)
        self._log_result(result)
        return result

    def measure_upload(
        self,
        size_bytes: int,
        label: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MeasurementResult:
        label = label or "Upload"
        # Payload is built before the timer starts so local compute is not timed.
        payload = build_payload(size_bytes, self.chunk_size)
        body = PayloadReader(payload, progress)
        duration = None
        start = self._clock()
        try:
            response = self.session.post(
                f"{self.base_url}/upload",
                params=cache_busting_params(),
                data=body,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout,
            )
            duration = self._clock() - start
            if not response.ok:
                raise TransportError(f"Upload failed: {response.status_code} {response.reason}")
            received = int(response.json()["bytesReceived"])
        except (requests.RequestException, TransportError, ValueError, KeyError, TypeError) as exc:
            elapsed = duration if duration is not None else self._clock() - start
            LOGGER.error("%s failed: %s", label, exc)
            error = exc if isinstance(exc, TransportError) else TransportError(str(exc))
            return MeasurementResult.failure(MeasurementKind.UPLOAD, error, 0, elapsed, label)

        if received != len(payload):
            LOGGER.warning("%s: sent %d bytes but server counted %d", label, len(payload), received)
        result = MeasurementResult.from_transfer(MeasurementKind.UPLOAD, received, duration, label)
        self._log_result(result)
        return result

    @staticmethod
    def _log_result(result: MeasurementResult) -> None:
        if result.ok:
            LOGGER.info(
                "%s: %d bytes in %.3fs (%.2f Mbps)",
                result.label,
                result.bytes_transferred,
                result.duration_seconds,
                result.rate_mbps,
            )
        else:
            LOGGER.warning("%s: %s", result.label, result.error.message)

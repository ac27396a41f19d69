"""Server-side byte stream generation and consumption.

The download body is produced by a pure step function over an explicit
``GeneratorState`` so the byte accounting can be exercised without a socket.
Payload bytes come from a pooled fill block; no per-chunk randomness.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import BinaryIO, Iterator, Optional, Tuple, Union

from werkzeug.exceptions import ClientDisconnected

from .config import ServerConfig, parse_size
from .measurements.errors import ValidationError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferSpec:
    size_bytes: int
    chunk_size_bytes: int

    @classmethod
    def build(cls, size_bytes: int, chunk_size_bytes: int) -> "TransferSpec":
        if size_bytes <= 0:
            raise ValidationError(f"Transfer size must be positive, got {size_bytes}")
        if chunk_size_bytes <= 0:
            raise ValidationError(f"Chunk size must be positive, got {chunk_size_bytes}")
        return cls(size_bytes=size_bytes, chunk_size_bytes=min(chunk_size_bytes, size_bytes))


@dataclass(frozen=True)
class GeneratorState:
    remaining: int
    sent: int = 0

    @property
    def done(self) -> bool:
        return self.remaining <= 0


@dataclass(frozen=True)
class SinkOutcome:
    ok: bool
    bytes_received: int = 0
    error: Optional[str] = None


@lru_cache(maxsize=8)
def fill_block(size: int) -> bytes:
    """Deterministic, cheap filler pattern of ``size`` bytes."""
    return bytes((i * 17 + 31) % 256 for i in range(size))


def build_payload(size: int, block_size: int = 64 * 1024) -> bytes:
    """Upload body of exactly ``size`` bytes built by repeating a fill block."""
    if size <= 0:
        return b""
    block = fill_block(min(block_size, size))
    repeats, tail = divmod(size, len(block))
    return block * repeats + block[:tail]


def resolve_download_spec(raw_size: Union[str, int, None], server: ServerConfig) -> TransferSpec:
    """Turn the ``size`` query parameter into a TransferSpec.

    Missing, malformed or out-of-range sizes fall back to
    ``server.default_download_size``.
    """
    size = parse_size(raw_size)
    if size is None or not server.min_download_size <= size <= server.max_download_size:
        if raw_size not in (None, ""):
            LOGGER.warning(
                "Invalid or out-of-range download size %r, using default of %d bytes",
                raw_size,
                server.default_download_size,
            )
        size = server.default_download_size
    return TransferSpec.build(size, server.chunk_size)


def next_chunk(
    state: GeneratorState, spec: TransferSpec, block: bytes
) -> Tuple[Optional[bytes], GeneratorState]:
    """Produce the next chunk and the advanced state; ``None`` once exhausted."""
    if state.done:
        return None, state
    length = min(spec.chunk_size_bytes, state.remaining, len(block))
    chunk = block if length == len(block) else block[:length]
    return chunk, GeneratorState(remaining=state.remaining - length, sent=state.sent + length)


def generate_stream(spec: TransferSpec, block: Optional[bytes] = None) -> Iterator[bytes]:
    """Yield exactly ``spec.size_bytes`` bytes.

    Closing the generator (the WSGI server does this when the client goes
    away) stops production at the current chunk.
    """
    if block is None:
        block = fill_block(spec.chunk_size_bytes)
    state = GeneratorState(remaining=spec.size_bytes)
    try:
        while True:
            chunk, state = next_chunk(state, spec, block)
            if chunk is None:
                break
            yield chunk
    except GeneratorExit:
        LOGGER.info(
            "Download cancelled by client after %d of %d bytes",
            state.sent,
            spec.size_bytes,
        )
        raise
    LOGGER.debug("Download stream complete: %d bytes", state.sent)


def drain_stream(stream: BinaryIO, chunk_size: int) -> SinkOutcome:
    """Read ``stream`` to the end, counting and discarding the bytes."""
    received = 0
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            received += len(chunk)
    except (ClientDisconnected, OSError) as exc:
        LOGGER.warning("Upload stream failed after %d bytes: %s", received, exc)
        return SinkOutcome(ok=False, bytes_received=received, error=str(exc) or exc.__class__.__name__)
    LOGGER.debug("Upload stream complete: %d bytes", received)
    return SinkOutcome(ok=True, bytes_received=received)

"""Exceptions raised by the measurement primitives."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSPORT = "transport"
    ZERO_MEASUREMENT = "zero_measurement"
    INTERNAL = "internal"


class SpeedprobeError(Exception):
    """Base class for all speedprobe errors."""

    kind = ErrorKind.INTERNAL


class ValidationError(SpeedprobeError):
    """A request parameter or configuration value is malformed or out of range."""

    kind = ErrorKind.VALIDATION


class TransportError(SpeedprobeError):
    """Network failure, disconnect or non-2xx response during a measurement."""

    kind = ErrorKind.TRANSPORT


class ZeroMeasurementError(SpeedprobeError):
    """A transfer completed with zero duration or zero bytes."""

    kind = ErrorKind.ZERO_MEASUREMENT

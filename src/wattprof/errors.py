"""Exception hierarchy shared by the sensor, sampling and attribution layers.

Fatal conditions (an unsupported host, or an energy counter that stops being
readable once monitoring started) propagate as exceptions and end the run
with exit code 1. Recoverable conditions never raise: the component that hits
them substitutes a zero reading and logs a warning.
"""

from __future__ import annotations

from typing import Final

__all__ = [
    "AccumulatorFrozenError",
    "EXIT_FAILURE",
    "EXIT_SUCCESS",
    "HelperStartError",
    "MeasurementNotStartedError",
    "RaplNotAvailableError",
    "SensorError",
    "SensorReadError",
    "UnsupportedPlatformError",
    "WattprofError",
    "is_fatal",
]

EXIT_SUCCESS: Final[int] = 0
EXIT_FAILURE: Final[int] = 1


class WattprofError(RuntimeError):
    """Base class for all wattprof errors."""


class UnsupportedPlatformError(WattprofError):
    """Raised when no energy sensor can be used on the current host."""


class SensorError(WattprofError):
    """Base class for energy sensor failures."""


class SensorReadError(SensorError):
    """Raised when an energy counter becomes unreadable after initialisation."""


class RaplNotAvailableError(SensorError, UnsupportedPlatformError):
    """Raised when the host does not expose any usable RAPL counter."""


class HelperStartError(SensorError):
    """Raised when the external power monitor program cannot be started."""


class MeasurementNotStartedError(SensorError):
    """Raised when a measurement is ended before it was started."""


class AccumulatorFrozenError(WattprofError):
    """Raised when energy is added after the final results were flushed."""


_FATAL_TYPES: Final[tuple[type[BaseException], ...]] = (
    UnsupportedPlatformError,
    SensorReadError,
    HelperStartError,
)


def is_fatal(exc: BaseException) -> bool:
    """Return whether ``exc`` must terminate the monitoring run."""

    return isinstance(exc, _FATAL_TYPES)

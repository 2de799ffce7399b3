"""Abstract energy sensor capability."""

from __future__ import annotations

import abc
import threading
import time
from types import TracebackType
from typing import Callable

from wattprof.errors import MeasurementNotStartedError
from wattprof.sensor.load import CpuLoadReader
from wattprof.sensor.measurement import EnergyMeasurement


class EnergySensor(abc.ABC):
    """Produce one :class:`EnergyMeasurement` per start/end pair.

    Window boundaries are stored per calling thread, so two threads sharing
    one sensor can measure overlapping windows without interfering.
    """

    def __init__(
        self,
        load_reader: CpuLoadReader,
        *,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.load_reader = load_reader
        self._clock = clock
        self._local = threading.local()

    @abc.abstractmethod
    def start_measurement(self) -> None:
        """Mark the beginning of a window for the calling thread."""

    @abc.abstractmethod
    def end_measurement(self) -> EnergyMeasurement:
        """Close the calling thread's window and return its measurement."""

    def close(self) -> None:
        """Release any resources held by the sensor."""

    def _mark_start(self, **state: float) -> None:
        self._local.started_at = self._clock()
        for key, value in state.items():
            setattr(self._local, key, value)

    def _take_start(self, key: str | None = None) -> tuple[float, float]:
        """Pop the calling thread's start timestamp (and optional state)."""

        started_at = getattr(self._local, "started_at", None)
        if started_at is None:
            raise MeasurementNotStartedError(
                "end_measurement() called without start_measurement()"
            )
        value = float(getattr(self._local, key, 0.0)) if key else 0.0
        self._local.started_at = None
        return float(started_at), value

    def __enter__(self) -> EnergySensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

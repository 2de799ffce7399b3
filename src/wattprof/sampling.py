"""Fixed-duration stack sampling windows.

A window brackets one sensor measurement and, between its two ends, samples
every application thread's stack at a fixed cadence (100 ticks of 10 ms by
default). Each tick contributes at most one count per thread to each table:
the innermost frame to the unfiltered table, the innermost frame matching
the filter to the filtered table.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from wattprof.filtering import MethodFilter
from wattprof.sensor.base import EnergySensor
from wattprof.sensor.measurement import EnergyMeasurement
from wattprof.threads import FunctionId, ThreadId, ThreadSource, ThreadState

LOGGER = logging.getLogger("wattprof.sampling")

SampleTable = dict[ThreadId, dict[FunctionId, int]]

DEFAULT_WINDOW_SECONDS = 1.0
DEFAULT_TICK_SECONDS = 0.01


class WindowState(enum.Enum):
    """Lifecycle of a sampling window."""

    IDLE = "idle"
    MEASURING = "measuring"
    DRAINING = "draining"
    DONE = "done"


@dataclass(slots=True, frozen=True)
class WindowResult:
    """Everything one window observed."""

    measurement: EnergyMeasurement
    samples: SampleTable
    filtered_samples: SampleTable
    thread_ids: tuple[ThreadId, ...]
    ticks: int


def _count(table: SampleTable, thread_id: ThreadId, function: FunctionId) -> None:
    counts = table[thread_id]
    counts[function] = counts.get(function, 0) + 1


@dataclass(slots=True)
class SamplingWindow:
    """Run one measurement window; instances are single use.

    Attributes:
        sensor: Energy sensor bracketing the window.
        threads: Source of thread ids and stack snapshots.
        method_filter: Predicate selecting filtered frames.
        ticks: Number of stack samples in the window.
        tick_seconds: Interval between two samples.
        sleep: Sleep function, replaceable in tests.
        clock: Monotonic clock used to pace ticks.
    """

    sensor: EnergySensor
    threads: ThreadSource
    method_filter: MethodFilter = field(default_factory=MethodFilter)
    ticks: int = int(round(DEFAULT_WINDOW_SECONDS / DEFAULT_TICK_SECONDS))
    tick_seconds: float = DEFAULT_TICK_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.perf_counter, repr=False)
    state: WindowState = field(init=False, default=WindowState.IDLE)

    def run(self) -> WindowResult:
        """Measure, sample for the window's duration, then close the measurement.

        Raises:
            RuntimeError: If the window was already run.
            SensorReadError: If the sensor fails; the error is fatal.
        """

        if self.state is not WindowState.IDLE:
            raise RuntimeError(f"Sampling window already {self.state.value}")

        self.state = WindowState.MEASURING
        self.sensor.start_measurement()
        thread_ids = tuple(self.threads.thread_ids())
        samples: SampleTable = {thread_id: {} for thread_id in thread_ids}
        filtered: SampleTable = {thread_id: {} for thread_id in thread_ids}

        self.state = WindowState.DRAINING
        for _ in range(self.ticks):
            tick_started = self.clock()
            self._sample_tick(thread_ids, samples, filtered)
            remaining = self.tick_seconds - (self.clock() - tick_started)
            if remaining > 0:
                self._pause(remaining)

        measurement = self.sensor.end_measurement()
        self.state = WindowState.DONE
        LOGGER.debug(
            "Sampling window complete",
            extra={
                "threads": len(thread_ids),
                "ticks": self.ticks,
                "cpu_energy_joules": measurement.cpu_energy_joules,
            },
        )
        return WindowResult(
            measurement=measurement,
            samples=samples,
            filtered_samples=filtered,
            thread_ids=thread_ids,
            ticks=self.ticks,
        )

    def _sample_tick(
        self,
        thread_ids: tuple[ThreadId, ...],
        samples: SampleTable,
        filtered: SampleTable,
    ) -> None:
        for snapshot in self.threads.snapshot(thread_ids):
            if snapshot.thread_id not in samples:
                samples[snapshot.thread_id] = {}
                filtered[snapshot.thread_id] = {}
            if snapshot.state is not ThreadState.RUNNABLE:
                continue
            top = snapshot.innermost
            if top is None:
                continue
            _count(samples, snapshot.thread_id, top)
            match = self.method_filter.first_match(snapshot.frames)
            if match is not None:
                _count(filtered, snapshot.thread_id, match)

    def _pause(self, seconds: float) -> None:
        """Sleep between ticks.

        ``time.sleep`` resumes by itself after a signal handler returns, so
        ``InterruptedError`` only reaches here from an injected ``sleep``
        callable such as an event wait wrapper; the tick is then cut short.
        """

        try:
            self.sleep(seconds)
        except InterruptedError:
            LOGGER.warning("Sampling sleep interrupted; continuing with next tick")

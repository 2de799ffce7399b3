"""Background attribution loop and the once-only shutdown handler."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from logging.handlers import QueueListener

from wattprof.accumulator import Accumulator
from wattprof.attribution import AttributionResult, CpuTimeTracker
from wattprof.errors import (
    EXIT_FAILURE,
    AccumulatorFrozenError,
    SensorError,
    is_fatal,
)
from wattprof.filtering import MethodFilter
from wattprof.logging_pipeline import shutdown_listeners
from wattprof.results import ResultWriter
from wattprof.sampling import (
    DEFAULT_TICK_SECONDS,
    DEFAULT_WINDOW_SECONDS,
    SamplingWindow,
)
from wattprof.sensor.base import EnergySensor
from wattprof.threads import ThreadSource

LOGGER = logging.getLogger("wattprof.loop")

LOOP_THREAD_NAME = "wattprof-attribution"


def terminate_process(exit_code: int) -> None:
    """Exit immediately, skipping ``atexit`` handlers and the final flush."""

    os._exit(exit_code)


class AttributionLoop:
    """Drive sampling windows and fold their attribution into an accumulator.

    The loop polls its termination condition once per window boundary: a
    stop request, or the monitored application no longer running code.
    A fatal sensor failure freezes the accumulator and hands control to
    ``on_fatal`` (process exit with code 1 by default).
    """

    def __init__(
        self,
        sensor: EnergySensor,
        threads: ThreadSource,
        accumulator: Accumulator,
        *,
        method_filter: MethodFilter | None = None,
        writer: ResultWriter | None = None,
        ticks: int = int(round(DEFAULT_WINDOW_SECONDS / DEFAULT_TICK_SECONDS)),
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        pause_seconds: float = 0.01,
        on_fatal: Callable[[int], None] = terminate_process,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sensor = sensor
        self.threads = threads
        self.accumulator = accumulator
        self.method_filter = method_filter if method_filter is not None else MethodFilter()
        self.writer = writer
        self.ticks = ticks
        self.tick_seconds = tick_seconds
        self.pause_seconds = pause_seconds
        self.on_fatal = on_fatal
        self._sleep = sleep
        self._tracker = CpuTimeTracker()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.exit_code: int | None = None
        self.last_result: AttributionResult | None = None

    @property
    def window_seconds(self) -> float:
        return self.ticks * self.tick_seconds

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> threading.Thread:
        """Run the loop on a daemon thread and return that thread."""

        if self._thread is not None:
            raise RuntimeError("Attribution loop already started")
        self._thread = threading.Thread(
            target=self.run, name=LOOP_THREAD_NAME, daemon=True
        )
        self._thread.start()
        return self._thread

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self, timeout: float | None = None) -> bool:
        """Request a stop and wait for the current window to finish.

        Returns:
            ``True`` when the loop thread has exited.
        """

        self._stop.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(self.window_seconds + 1.0 if timeout is None else timeout)
        return not thread.is_alive()

    def run_window(self) -> AttributionResult:
        """Run one window, attribute it and update the accumulator."""

        window = SamplingWindow(
            sensor=self.sensor,
            threads=self.threads,
            method_filter=self.method_filter,
            ticks=self.ticks,
            tick_seconds=self.tick_seconds,
            sleep=self._sleep,
        )
        observed = window.run()
        cpu_times = self.threads.cpu_times_ns(observed.thread_ids)
        result = self._tracker.attribute(
            observed.measurement,
            cpu_times,
            observed.samples,
            observed.filtered_samples,
        )
        self.accumulator.apply(result)
        self.last_result = result
        if self.writer is not None:
            self.writer.write_window(result, self.accumulator)
        return result

    def run(self) -> None:
        """Loop until stopped, the application exits, or the sensor fails."""

        LOGGER.info("Started monitoring application", extra={"pid": os.getpid()})
        while not self._stop.is_set():
            if not self.threads.application_alive():
                LOGGER.info("Monitored application finished; stopping loop")
                break
            try:
                self.run_window()
            except AccumulatorFrozenError:
                LOGGER.debug("Accumulator flushed during window; stopping loop")
                break
            except SensorError as exc:
                if not is_fatal(exc):
                    raise
                self._fail(exc)
                return
            self._stop.wait(self.pause_seconds)
        self.exit_code = 0

    def _fail(self, exc: SensorError) -> None:
        self.accumulator.freeze()
        self.exit_code = EXIT_FAILURE
        LOGGER.critical(
            "Energy sensor failed; measurements can no longer be trusted",
            exc_info=exc,
        )
        self.on_fatal(EXIT_FAILURE)


@dataclass(slots=True)
class ShutdownHandler:
    """Stop monitoring and flush the final totals, exactly once.

    Registered with :mod:`atexit` by the agent, and also callable directly.
    """

    loop: AttributionLoop
    sensor: EnergySensor
    accumulator: Accumulator
    writer: ResultWriter | None = None
    listeners: Sequence[QueueListener] = ()
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _done: bool = field(init=False, default=False)

    @property
    def done(self) -> bool:
        return self._done

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True

        if not self.loop.stop():
            LOGGER.warning("Attribution loop did not stop in time; flushing anyway")
        try:
            self.sensor.close()
        except OSError:
            LOGGER.warning("Failed to close energy sensor", exc_info=True)

        if self.accumulator.frozen:
            # A fatal sensor failure already ended the run; nothing to flush.
            shutdown_listeners(self.listeners)
            return

        self.accumulator.freeze()
        if self.writer is not None:
            self.writer.write_final(self.accumulator)
        LOGGER.info(
            "Finished monitoring application; program consumed %.2f joules",
            self.accumulator.total_process_energy,
            extra=dict(self.accumulator.summary()),
        )
        shutdown_listeners(self.listeners)

"""Agent wiring the sensor, sampling loop, accumulator and result writer."""

from __future__ import annotations

import atexit
import logging
import os
from logging.handlers import QueueListener
from types import TracebackType
from uuid import uuid4

from wattprof.accumulator import Accumulator
from wattprof.errors import EXIT_FAILURE
from wattprof.filtering import MethodFilter
from wattprof.logging_pipeline import configure_structured_logging, shutdown_listeners
from wattprof.loop import AttributionLoop, ShutdownHandler, terminate_process
from wattprof.results import CsvResultWriter, ResultWriter
from wattprof.sensor.base import EnergySensor
from wattprof.sensor.factory import HostPlatform, create_energy_sensor
from wattprof.settings import WattprofSettings, get_settings
from wattprof.threads import PythonThreadSource, ThreadSource

LOGGER = logging.getLogger("wattprof.agent")


class Agent:
    """Attribute this process's CPU energy to its functions while it runs.

    The agent owns every long-lived component. :meth:`start` selects the
    energy sensor (which raises :class:`UnsupportedPlatformError` on hosts
    without RAPL or a power monitor helper), starts the background loop and
    registers the shutdown handler with :mod:`atexit`. :meth:`stop` runs the
    same handler on demand; it only ever flushes once.

    Attributes:
        settings: Effective configuration.
        accumulator: Running energy totals, readable at any time.
    """

    def __init__(
        self,
        settings: WattprofSettings | None = None,
        *,
        sensor: EnergySensor | None = None,
        thread_source: ThreadSource | None = None,
        writer: ResultWriter | None = None,
        host: HostPlatform | None = None,
        configure_logging: bool = True,
        run_id: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.run_id = run_id or str(uuid4())
        self.accumulator = Accumulator()
        self.method_filter = MethodFilter.from_names(self.settings.filter_method_names)
        self._sensor = sensor
        self._thread_source = thread_source
        self._writer = writer
        self._host = host
        self._configure_logging = configure_logging
        self._listeners: list[QueueListener] = []
        self.loop: AttributionLoop | None = None
        self._shutdown: ShutdownHandler | None = None

    @property
    def started(self) -> bool:
        return self.loop is not None

    @property
    def sensor(self) -> EnergySensor | None:
        return self._sensor

    def start(self) -> None:
        """Initialise the sensor and start monitoring in the background."""

        if self.loop is not None:
            raise RuntimeError("Agent already started")
        if self._configure_logging:
            self._listeners.append(
                configure_structured_logging(
                    run_id=self.run_id, level=self.settings.log_level
                )
            )

        LOGGER.info("Initialising energy attribution", extra={"pid": os.getpid()})
        try:
            sensor = self._sensor or create_energy_sensor(self.settings, host=self._host)
        except Exception:
            shutdown_listeners(self._listeners)
            raise
        self._sensor = sensor

        writer = self._writer or CsvResultWriter(
            output_dir=self.settings.output_dir,
            write_window_files=self.settings.write_window_files,
        )
        self._writer = writer
        tick_seconds = self.settings.tick_ms / 1000.0
        self.loop = AttributionLoop(
            sensor,
            self._thread_source or PythonThreadSource(),
            self.accumulator,
            method_filter=self.method_filter,
            writer=writer,
            ticks=self.settings.ticks_per_window,
            tick_seconds=tick_seconds,
            pause_seconds=self.settings.pause_ms / 1000.0,
            on_fatal=self._on_fatal,
        )
        self._shutdown = ShutdownHandler(
            loop=self.loop,
            sensor=sensor,
            accumulator=self.accumulator,
            writer=writer,
            listeners=tuple(self._listeners),
        )
        atexit.register(self._shutdown)
        self.loop.start()
        LOGGER.info(
            "Initialization finished",
            extra={"filters": list(self.method_filter.prefixes)},
        )

    def stop(self) -> float:
        """Stop monitoring, flush results and return the total joules."""

        if self._shutdown is not None:
            self._shutdown()
            atexit.unregister(self._shutdown)
        return self.accumulator.total_process_energy

    def _on_fatal(self, exit_code: int) -> None:
        if self._sensor is not None:
            try:
                self._sensor.close()
            except OSError:
                LOGGER.debug("Sensor close failed during fatal exit", exc_info=True)
        shutdown_listeners(self._listeners)
        terminate_process(exit_code if exit_code else EXIT_FAILURE)

    def __enter__(self) -> Agent:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

"""Energy sensor fed by an external power monitor program.

The helper is a long-lived subprocess printing one power reading in watts
per line on its standard output, roughly once per second. A daemon thread
drains the pipe into a queue so a stalled helper can never block a window
for longer than ``read_timeout``.
"""

from __future__ import annotations

import logging
import queue
import shlex
import subprocess  # nosec B404: the helper command comes from local configuration
import threading
import time
from collections.abc import Sequence
from typing import IO, Callable, Final

from wattprof.errors import HelperStartError
from wattprof.sensor.base import EnergySensor
from wattprof.sensor.load import CpuLoadReader
from wattprof.sensor.measurement import EnergyMeasurement

LOGGER = logging.getLogger("wattprof.sensor.helper")

_EOF: Final[object] = object()


def parse_power_line(line: str) -> float:
    """Parse one helper line into a power value in watts.

    Plain decimal values are accepted, as are CSV rows in the
    ``date,utilisation,power`` layout, where the last field is the power.

    Raises:
        ValueError: If the line holds no parseable, non-negative number.
    """

    text = line.strip()
    if not text:
        raise ValueError("empty helper line")
    candidate = text.rsplit(",", 1)[-1].strip() if "," in text else text
    watts = float(candidate)
    if watts != watts or watts < 0.0 or watts == float("inf"):
        raise ValueError(f"implausible power value: {candidate!r}")
    return watts


def _split_command(command: str | Sequence[str]) -> list[str]:
    if isinstance(command, str):
        return shlex.split(command, posix=True)
    return list(command)


class HelperEnergySensor(EnergySensor):
    """Energy sensor backed by a power-reporting helper subprocess."""

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        load_reader: CpuLoadReader | None = None,
        warmup_reads: int = 2,
        warmup_interval: float = 0.5,
        read_timeout: float = 2.0,
        clock: Callable[[], float] = time.perf_counter,
        popen: Callable[..., subprocess.Popen[str]] = subprocess.Popen,
    ) -> None:
        super().__init__(load_reader or CpuLoadReader(), clock=clock)
        self.command = _split_command(command)
        if not self.command:
            raise HelperStartError("Power monitor command is empty")
        self.read_timeout = read_timeout
        self._lines: queue.Queue[object] = queue.Queue()
        self._closed = False
        try:
            self.process = popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise HelperStartError(
                f"Can't start power monitor {self.command[0]!r}"
            ) from exc
        if self.process.stdout is None:
            self.process.kill()
            raise HelperStartError("Power monitor stdout is not a pipe")

        self._reader = threading.Thread(
            target=self._pump, args=(self.process.stdout,), name="wattprof-helper-reader",
            daemon=True,
        )
        self._reader.start()
        self.load_reader.warm_up(warmup_reads, warmup_interval)
        LOGGER.info("Power monitor helper started", extra={"command": self.command})

    def _pump(self, stream: IO[str]) -> None:
        try:
            for line in stream:
                self._lines.put(line)
        except (OSError, ValueError):
            LOGGER.debug("Helper output stream closed", exc_info=True)
        finally:
            self._lines.put(_EOF)

    def _drain_stale(self) -> None:
        """Drop readings emitted before the current window started."""

        while True:
            try:
                item = self._lines.get_nowait()
            except queue.Empty:
                return
            if item is _EOF:
                self._lines.put(_EOF)
                return

    def start_measurement(self) -> None:
        self._drain_stale()
        self._mark_start()

    def next_power_watts(self) -> float:
        """Return the next helper reading, or ``0.0`` when none is usable."""

        try:
            item = self._lines.get(timeout=self.read_timeout)
        except queue.Empty:
            LOGGER.warning(
                "Power monitor produced no reading in time",
                extra={"timeout": self.read_timeout},
            )
            return 0.0
        if item is _EOF:
            self._lines.put(_EOF)
            LOGGER.warning("Power monitor output ended; reporting zero energy")
            return 0.0
        try:
            return parse_power_line(str(item))
        except ValueError as exc:
            LOGGER.warning(
                "Unparseable power monitor line",
                extra={"line": str(item).strip(), "error": str(exc)},
            )
            return 0.0

    def end_measurement(self) -> EnergyMeasurement:
        watts = self.next_power_watts()
        end_time = self._clock()
        started_at, _ = self._take_start()
        duration = max(end_time - started_at, 0.0)
        system_load, process_load = self.load_reader.read()
        return EnergyMeasurement(
            duration_seconds=duration,
            cpu_energy_joules=watts * duration,
            system_cpu_load=system_load,
            process_cpu_load=process_load,
        )

    def close(self) -> None:
        """Terminate the helper subprocess; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                LOGGER.warning("Power monitor ignored terminate; killing it")
                self.process.kill()
                self.process.wait(timeout=1.0)
        LOGGER.info("Power monitor helper stopped")

"""Counter-based energy sensor reading Intel RAPL through powercap.

The kernel exposes each RAPL domain as a monotonically increasing microjoule
counter (``energy_uj``) that wraps at ``max_energy_range_uj``. The sensor
picks the widest domain available once, at construction:

* ``psys`` (whole platform, ``intel-rapl:1``) when present,
* otherwise the package (``intel-rapl:0``) plus its DRAM sub-domain
  (``intel-rapl:0:2``) when that exists.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Callable, Final

from wattprof.errors import RaplNotAvailableError, SensorReadError
from wattprof.sensor.base import EnergySensor
from wattprof.sensor.load import CpuLoadReader
from wattprof.sensor.measurement import EnergyMeasurement

LOGGER = logging.getLogger("wattprof.sensor.rapl")

DEFAULT_RAPL_PATH: Final[Path] = Path("/sys/class/powercap/intel-rapl")
MICROJOULES_IN_JOULE: Final[float] = 1e6
UINT32_RANGE_UJ: Final[int] = (2**32) - 1

PACKAGE_DOMAIN: Final[str] = "intel-rapl:0"
PSYS_DOMAIN: Final[str] = "intel-rapl:1"
DRAM_DOMAIN: Final[str] = "intel-rapl:0/intel-rapl:0:2"


def _read_int_file(path: Path) -> int:
    """Return the integer stored in ``path``.

    Raises:
        SensorReadError: If the file is missing, unreadable, or non-numeric.
    """

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise SensorReadError(f"Failed to read RAPL file: {path}") from exc
    try:
        return int(text, 10)
    except ValueError as exc:
        raise SensorReadError(f"Invalid integer in RAPL file {path}: {text!r}") from exc


@dataclass(slots=True)
class RaplCounter:
    """Track one RAPL counter file with wrap-around compensation."""

    name: str
    energy_path: Path
    max_energy_range_uj: int = UINT32_RANGE_UJ
    _accumulated_uj: int = field(init=False, default=0)
    _last_raw_uj: int = field(init=False)
    _wrap_events: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.max_energy_range_uj <= 0:
            raise ValueError(
                f"max_energy_range_uj must be positive, got {self.max_energy_range_uj}"
            )
        self._last_raw_uj = _read_int_file(self.energy_path)

    @property
    def total_energy_uj(self) -> int:
        """Return the energy accumulated since construction, in microjoules."""

        return self._accumulated_uj

    @property
    def wrap_events(self) -> int:
        return self._wrap_events

    def advance(self) -> int:
        """Read the counter and fold the delta into the running total.

        Returns:
            The delta since the previous read in microjoules.

        Raises:
            SensorReadError: If the counter file cannot be read.
        """

        current = _read_int_file(self.energy_path)
        delta = current - self._last_raw_uj
        if delta < 0:
            delta += self.max_energy_range_uj
            self._wrap_events += 1
            LOGGER.debug(
                "RAPL wrap detected",
                extra={"domain": self.name, "wrap_events": self._wrap_events},
            )
        self._last_raw_uj = current
        self._accumulated_uj += max(delta, 0)
        return delta


def _open_counter(domain_dir: Path, name: str) -> RaplCounter:
    try:
        max_range = _read_int_file(domain_dir / "max_energy_range_uj")
    except SensorReadError:
        LOGGER.debug("Falling back to UINT32 max range", extra={"domain": name})
        max_range = UINT32_RANGE_UJ
    return RaplCounter(
        name=name,
        energy_path=domain_dir / "energy_uj",
        max_energy_range_uj=max_range if max_range > 0 else UINT32_RANGE_UJ,
    )


def discover_counters(base_path: Path = DEFAULT_RAPL_PATH) -> list[RaplCounter]:
    """Select the RAPL counters to trust on this host.

    Args:
        base_path: Root of the ``intel-rapl`` powercap hierarchy.

    Returns:
        Either ``[psys]`` or ``[package]`` / ``[package, dram]``.

    Raises:
        RaplNotAvailableError: If neither psys nor package can be read.
    """

    psys_dir = base_path / PSYS_DOMAIN
    if (psys_dir / "energy_uj").is_file():
        try:
            return [_open_counter(psys_dir, "psys")]
        except SensorReadError:
            LOGGER.warning(
                "psys counter unreadable; falling back to package domain",
                exc_info=True,
            )

    package_dir = base_path / PACKAGE_DOMAIN
    if not (package_dir / "energy_uj").is_file():
        raise RaplNotAvailableError(f"No RAPL package counter under {base_path}")
    try:
        counters = [_open_counter(package_dir, "package")]
    except SensorReadError as exc:
        raise RaplNotAvailableError(
            "Failed to get RAPL energy readings. Is the agent running with "
            "elevated privileges?"
        ) from exc

    dram_dir = base_path / DRAM_DOMAIN
    if (dram_dir / "energy_uj").is_file():
        try:
            counters.append(_open_counter(dram_dir, "dram"))
        except SensorReadError:
            LOGGER.warning("DRAM counter unreadable; using package only", exc_info=True)
    return counters


class RaplEnergySensor(EnergySensor):
    """Energy sensor backed by powercap RAPL counters."""

    def __init__(
        self,
        base_path: Path = DEFAULT_RAPL_PATH,
        *,
        load_reader: CpuLoadReader | None = None,
        warmup_reads: int = 2,
        warmup_interval: float = 0.5,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        super().__init__(load_reader or CpuLoadReader(), clock=clock)
        self.base_path = base_path
        self.counters = discover_counters(base_path)
        self._lock = Lock()
        self.load_reader.warm_up(warmup_reads, warmup_interval)
        LOGGER.info(
            "RAPL energy sensor ready",
            extra={"domains": [counter.name for counter in self.counters]},
        )

    @property
    def domain_names(self) -> list[str]:
        return [counter.name for counter in self.counters]

    def read_energy_joules(self) -> float:
        """Return the energy consumed since construction, in joules.

        Raises:
            SensorReadError: If any selected counter became unreadable.
        """

        with self._lock:
            for counter in self.counters:
                counter.advance()
            total_uj = sum(counter.total_energy_uj for counter in self.counters)
        return total_uj / MICROJOULES_IN_JOULE

    def start_measurement(self) -> None:
        self._mark_start(start_energy=self.read_energy_joules())

    def end_measurement(self) -> EnergyMeasurement:
        end_energy = self.read_energy_joules()
        end_time = self._clock()
        started_at, start_energy = self._take_start("start_energy")
        system_load, process_load = self.load_reader.read()
        return EnergyMeasurement(
            duration_seconds=max(end_time - started_at, 0.0),
            cpu_energy_joules=max(end_energy - start_energy, 0.0),
            system_cpu_load=system_load,
            process_cpu_load=process_load,
        )

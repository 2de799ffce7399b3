"""CPU utilisation ratios sampled through psutil."""

from __future__ import annotations

import importlib
import logging
import time
from dataclasses import dataclass, field
from types import ModuleType
from typing import Callable, Protocol, cast

LOGGER = logging.getLogger("wattprof.sensor.load")

_PSUTIL_MODULE: ModuleType = importlib.import_module("psutil")


class ProcessProtocol(Protocol):
    """Subset of :class:`psutil.Process` used for load sampling."""

    def cpu_percent(self, interval: float | None = None) -> float:
        """Return the process CPU utilisation percentage."""


class PsutilProtocol(Protocol):
    """Subset of psutil APIs used by the load reader."""

    def cpu_percent(self, interval: float | None = None) -> float:
        """Return the system-wide CPU utilisation percentage."""

    def cpu_count(self, logical: bool = True) -> int | None:
        """Return the number of CPUs."""

    def Process(self, pid: int | None = None) -> ProcessProtocol:  # noqa: N802
        """Return a handle on a process."""


def _default_psutil() -> PsutilProtocol:
    """Return the psutil module cast to the internal protocol."""

    return cast(PsutilProtocol, _PSUTIL_MODULE)


def _clamp_ratio(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(value, 1.0))


@dataclass(slots=True)
class CpuLoadReader:
    """Report whole-system and this-process CPU load as ratios.

    psutil computes utilisation relative to the previous call, so the very
    first reads after start-up carry no information. :meth:`warm_up` issues
    those throwaway reads; sensors call it from their constructors.

    Attributes:
        psutil_module: Injected psutil-compatible module.
        pid: Process whose load is reported; ``None`` means this process.
        sleep: Sleep function used between warm-up reads.
    """

    psutil_module: PsutilProtocol = field(default_factory=_default_psutil, repr=False)
    pid: int | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    _process: ProcessProtocol = field(init=False, repr=False)
    _cpu_count: int = field(init=False, default=1)
    _warmed_up: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._process = self.psutil_module.Process(self.pid)
        self._cpu_count = max(1, int(self.psutil_module.cpu_count() or 1))

    @property
    def warmed_up(self) -> bool:
        """Return whether readings can be trusted yet."""

        return self._warmed_up

    def warm_up(self, reads: int = 2, interval: float = 0.5) -> None:
        """Discard the first ``reads`` load readings, ``interval`` seconds apart."""

        for _ in range(max(1, reads)):
            self.psutil_module.cpu_percent(interval=None)
            self._process.cpu_percent(interval=None)
            self.sleep(max(0.0, interval))
        self._warmed_up = True
        LOGGER.debug("CPU load reader warmed up", extra={"reads": reads})

    def read(self) -> tuple[float, float]:
        """Return ``(system_load, process_load)`` ratios in ``[0, 1]``.

        The process figure from psutil is relative to one core, so it is
        divided by the CPU count to share the system figure's scale.
        """

        if not self._warmed_up:
            LOGGER.warning("CPU load read before warm-up; value is unreliable")
        system = float(self.psutil_module.cpu_percent(interval=None)) / 100.0
        process = float(self._process.cpu_percent(interval=None)) / (
            100.0 * self._cpu_count
        )
        return _clamp_ratio(system), _clamp_ratio(process)

"""One-time energy sensor selection from the host platform."""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal

from wattprof.errors import UnsupportedPlatformError
from wattprof.sensor.base import EnergySensor
from wattprof.sensor.helper import HelperEnergySensor
from wattprof.sensor.load import CpuLoadReader
from wattprof.sensor.rapl import DEFAULT_RAPL_PATH, PACKAGE_DOMAIN, RaplEnergySensor
from wattprof.settings import WattprofSettings

LOGGER = logging.getLogger("wattprof.sensor.factory")

SensorKind = Literal["rapl", "helper"]

_X86_MACHINES = frozenset({"x86_64", "amd64", "i386", "i486", "i586", "i686", "x86"})


@dataclass(slots=True, frozen=True)
class HostPlatform:
    """Operating system and CPU architecture of the host."""

    system: str
    machine: str

    @classmethod
    def current(cls) -> HostPlatform:
        return cls(system=platform.system(), machine=platform.machine())

    @property
    def is_linux_x86(self) -> bool:
        return self.system.lower() == "linux" and self.machine.lower() in _X86_MACHINES

    @property
    def is_windows(self) -> bool:
        return self.system.lower() == "windows"


def select_sensor_kind(
    host: HostPlatform,
    *,
    rapl_base_path: Path = DEFAULT_RAPL_PATH,
    helper_command: str | None = None,
    preference: Literal["auto", "rapl", "helper"] = "auto",
) -> SensorKind:
    """Decide which sensor variant the host supports.

    Args:
        host: Platform identification.
        rapl_base_path: Root of the powercap RAPL hierarchy.
        helper_command: Configured power monitor command, if any.
        preference: ``auto`` follows the platform rules; ``rapl`` or
            ``helper`` force a variant, still subject to its prerequisites.

    Returns:
        ``"rapl"`` or ``"helper"``.

    Raises:
        UnsupportedPlatformError: If no variant can run on this host.
    """

    rapl_present = (rapl_base_path / PACKAGE_DOMAIN).exists()

    if preference == "helper":
        if not helper_command:
            raise UnsupportedPlatformError(
                "Helper sensor requested but no power monitor path is configured"
            )
        return "helper"
    if preference == "rapl":
        if not (host.is_linux_x86 and rapl_present):
            raise UnsupportedPlatformError(
                f"RAPL sensor requested but unavailable on {host.system}/{host.machine}"
            )
        return "rapl"

    if host.is_linux_x86 and rapl_present:
        return "rapl"
    if host.is_windows and helper_command:
        return "helper"
    raise UnsupportedPlatformError(
        f"Platform not supported: {host.system}/{host.machine}"
    )


def create_energy_sensor(
    settings: WattprofSettings,
    *,
    host: HostPlatform | None = None,
    load_reader_factory: Callable[[], CpuLoadReader] = CpuLoadReader,
) -> EnergySensor:
    """Build the energy sensor matching the host and settings.

    Raises:
        UnsupportedPlatformError: If no sensor is usable here.
        HelperStartError: If the helper program cannot be spawned.
    """

    kind = select_sensor_kind(
        host or HostPlatform.current(),
        rapl_base_path=settings.rapl_base_path,
        helper_command=settings.powermonitor_path,
        preference=settings.sensor,
    )
    LOGGER.info("Selected energy sensor", extra={"sensor": kind})
    if kind == "rapl":
        return RaplEnergySensor(
            settings.rapl_base_path,
            load_reader=load_reader_factory(),
            warmup_reads=settings.warmup_reads,
            warmup_interval=settings.warmup_interval,
        )
    if not settings.powermonitor_path:
        raise UnsupportedPlatformError(
            "Helper sensor selected but no power monitor path is configured"
        )
    return HelperEnergySensor(
        settings.powermonitor_path,
        load_reader=load_reader_factory(),
        warmup_reads=settings.warmup_reads,
        warmup_interval=settings.warmup_interval,
        read_timeout=settings.helper_timeout,
    )

"""Value type describing one window's raw energy facts."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class EnergyMeasurement:
    """Energy and load observed over one measurement window.

    Attributes:
        duration_seconds: Wall-clock length of the window.
        cpu_energy_joules: Energy drawn by the measured CPU domain(s) over
            the window.
        system_cpu_load: Whole-system CPU utilisation ratio in ``[0, 1]``.
        process_cpu_load: Utilisation ratio of the monitored process in
            ``[0, 1]``.
    """

    duration_seconds: float
    cpu_energy_joules: float
    system_cpu_load: float
    process_cpu_load: float

    @property
    def process_cpu_energy(self) -> float:
        """Return the share of the window's energy owed to this process.

        ``duration * (process_load * cpu_energy) / system_load``. An idle
        system (zero load) attributes nothing rather than dividing by zero.
        """

        if self.system_cpu_load <= 0.0:
            return 0.0
        return (
            self.duration_seconds
            * (self.process_cpu_load * self.cpu_energy_joules)
            / self.system_cpu_load
        )

    @property
    def load_share_exceeds_system(self) -> bool:
        """Flag samples where the process load exceeds the system load.

        Such samples are a data-quality issue in the OS counters, not a
        logic error; they are reported but still attributed.
        """

        return self.process_cpu_load > self.system_cpu_load

    @classmethod
    def empty(cls, duration_seconds: float = 0.0) -> EnergyMeasurement:
        """Return a zero-energy measurement for a window of the given length."""

        return cls(
            duration_seconds=duration_seconds,
            cpu_energy_joules=0.0,
            system_cpu_load=0.0,
            process_cpu_load=0.0,
        )

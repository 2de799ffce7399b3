"""Pytest configuration and shared fakes."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

import pytest

# Ensure src/ is on sys.path so tests run against the src layout.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from wattprof.errors import SensorReadError  # noqa: E402
from wattprof.sensor.load import CpuLoadReader  # noqa: E402
from wattprof.sensor.measurement import EnergyMeasurement  # noqa: E402
from wattprof.threads import ThreadSnapshot, ThreadState  # noqa: E402


class FakeProcess:
    """Stub for :class:`psutil.Process` load sampling."""

    def __init__(self, percent: float) -> None:
        self.percent = percent
        self.calls = 0

    def cpu_percent(self, interval: float | None = None) -> float:
        self.calls += 1
        return self.percent


class FakePsutil:
    """Stub psutil module returning fixed utilisation figures."""

    def __init__(
        self, system_percent: float = 50.0, process_percent: float = 100.0, cpus: int = 4
    ) -> None:
        self.system_percent = system_percent
        self.process = FakeProcess(process_percent)
        self.cpus = cpus
        self.calls = 0

    def cpu_percent(self, interval: float | None = None) -> float:
        self.calls += 1
        return self.system_percent

    def cpu_count(self, logical: bool = True) -> int | None:
        return self.cpus

    def Process(self, pid: int | None = None) -> FakeProcess:  # noqa: N802
        return self.process


class SteppingClock:
    """Clock returning scripted values, repeating the last one."""

    def __init__(self, values: Sequence[float]) -> None:
        self._values = list(values)

    def __call__(self) -> float:
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


class FakeSensor:
    """Energy sensor returning a fixed measurement per window."""

    def __init__(
        self,
        measurement: EnergyMeasurement | None = None,
        *,
        fail_on_window: int | None = None,
    ) -> None:
        self.measurement = measurement or EnergyMeasurement(
            duration_seconds=1.0,
            cpu_energy_joules=10.0,
            system_cpu_load=0.5,
            process_cpu_load=0.25,
        )
        self.fail_on_window = fail_on_window
        self.started = 0
        self.ended = 0
        self.closed = 0

    def start_measurement(self) -> None:
        self.started += 1

    def end_measurement(self) -> EnergyMeasurement:
        self.ended += 1
        if self.fail_on_window is not None and self.ended >= self.fail_on_window:
            raise SensorReadError("energy counter vanished")
        return self.measurement

    def close(self) -> None:
        self.closed += 1


class ScriptedThreadSource:
    """Thread source replaying scripted stacks, one list per tick.

    ``ticks`` is a list of tick scripts; each script maps thread id to
    ``(state, frames)``. Once exhausted the last script repeats.
    """

    def __init__(
        self,
        ticks: list[dict[int, tuple[ThreadState, tuple[str, ...]]]],
        *,
        cpu_step_ns: dict[int, int] | None = None,
        alive_checks: int | None = None,
    ) -> None:
        self._ticks = ticks
        self._index = 0
        self.cpu_step_ns = cpu_step_ns or {}
        self._cpu: dict[int, int] = {}
        self._alive_checks = alive_checks

    def thread_ids(self) -> list[int]:
        ids: list[int] = []
        for script in self._ticks:
            for thread_id in script:
                if thread_id not in ids:
                    ids.append(thread_id)
        return ids

    def snapshot(self, thread_ids: Iterable[int]) -> list[ThreadSnapshot]:
        script = self._ticks[min(self._index, len(self._ticks) - 1)]
        self._index += 1
        wanted = set(thread_ids)
        return [
            ThreadSnapshot(thread_id=thread_id, state=state, frames=frames)
            for thread_id, (state, frames) in script.items()
            if thread_id in wanted
        ]

    def cpu_times_ns(self, thread_ids: Iterable[int]) -> dict[int, int]:
        times: dict[int, int] = {}
        for thread_id in thread_ids:
            self._cpu[thread_id] = self._cpu.get(thread_id, 0) + self.cpu_step_ns.get(
                thread_id, 1_000_000
            )
            times[thread_id] = self._cpu[thread_id]
        return times

    def application_alive(self) -> bool:
        if self._alive_checks is None:
            return True
        self._alive_checks -= 1
        return self._alive_checks >= 0


def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def fake_psutil() -> FakePsutil:
    return FakePsutil()


@pytest.fixture
def load_reader(fake_psutil: FakePsutil) -> CpuLoadReader:
    """CPU load reader backed by stubbed psutil and a no-op sleep."""

    return CpuLoadReader(psutil_module=fake_psutil, sleep=no_sleep)


@pytest.fixture
def rapl_tree(tmp_path: Path) -> Callable[..., Path]:
    """Build a fake powercap tree; returns a factory taking counter values."""

    def _build(
        package: int | str | None = 1_000_000,
        dram: int | str | None = None,
        psys: int | str | None = None,
        max_range: int | None = None,
    ) -> Path:
        base = tmp_path / "intel-rapl"
        layout = {
            "intel-rapl:0": package,
            "intel-rapl:0/intel-rapl:0:2": dram,
            "intel-rapl:1": psys,
        }
        for relative, value in layout.items():
            if value is None:
                continue
            domain = base / relative
            domain.mkdir(parents=True, exist_ok=True)
            (domain / "energy_uj").write_text(f"{value}\n", encoding="utf-8")
            if max_range is not None:
                (domain / "max_energy_range_uj").write_text(
                    str(max_range), encoding="utf-8"
                )
        base.mkdir(parents=True, exist_ok=True)
        return base

    return _build

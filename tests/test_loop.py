"""Tests for the attribution loop and the shutdown handler."""

from __future__ import annotations

import math
from pathlib import Path

import pytest
from conftest import FakeSensor, ScriptedThreadSource, no_sleep

from wattprof.accumulator import Accumulator
from wattprof.attribution import AttributionResult
from wattprof.errors import AccumulatorFrozenError
from wattprof.filtering import MethodFilter
from wattprof.loop import AttributionLoop, ShutdownHandler
from wattprof.results import CsvResultWriter, read_energy_csv
from wattprof.threads import ThreadState

RUN = ThreadState.RUNNABLE


class RecordingWriter:
    def __init__(self) -> None:
        self.windows: list[AttributionResult] = []
        self.finals = 0

    def write_window(self, result: AttributionResult, accumulator: Accumulator) -> None:
        self.windows.append(result)

    def write_final(self, accumulator: Accumulator) -> None:
        self.finals += 1


def _loop(
    source: ScriptedThreadSource,
    sensor: FakeSensor | None = None,
    **kwargs: object,
) -> AttributionLoop:
    kwargs.setdefault("ticks", 10)
    kwargs.setdefault("tick_seconds", 0.0)
    kwargs.setdefault("pause_seconds", 0.0)
    return AttributionLoop(
        sensor or FakeSensor(),
        source,
        Accumulator(),
        sleep=no_sleep,
        **kwargs,  # type: ignore[arg-type]
    )


def _two_threads() -> ScriptedThreadSource:
    return ScriptedThreadSource(
        [{1: (RUN, ("app.f", "app.main")), 2: (RUN, ("lib.g", "app.worker"))}],
        cpu_step_ns={1: 3_000_000, 2: 1_000_000},
    )


def test_run_window_attributes_and_accumulates() -> None:
    writer = RecordingWriter()
    loop = _loop(
        _two_threads(), writer=writer, method_filter=MethodFilter.from_names(["app."])
    )

    result = loop.run_window()

    assert math.isclose(result.process_energy, 5.0)
    assert math.isclose(result.thread_energy[1], 3.75)
    assert math.isclose(result.method_energy["app.f"], 3.75)
    assert math.isclose(result.method_energy["lib.g"], 1.25)
    assert math.isclose(result.method_energy_filtered["app.worker"], 1.25)
    assert loop.accumulator.total_process_energy == pytest.approx(5.0)
    assert writer.windows == [result]
    assert loop.last_result is result


def test_loop_stops_when_application_exits() -> None:
    source = ScriptedThreadSource([{1: (RUN, ("app.f",))}], alive_checks=2)
    sensor = FakeSensor()
    loop = _loop(source, sensor)

    loop.run()

    assert sensor.ended == 2
    assert loop.exit_code == 0
    assert loop.accumulator.total_process_energy == pytest.approx(10.0)


def test_fatal_sensor_error_freezes_and_exits() -> None:
    exits: list[int] = []
    loop = _loop(
        ScriptedThreadSource([{1: (RUN, ("app.f",))}]),
        FakeSensor(fail_on_window=2),
        on_fatal=exits.append,
    )

    loop.run()

    assert exits == [1]
    assert loop.exit_code == 1
    assert loop.accumulator.frozen
    assert loop.accumulator.total_process_energy == pytest.approx(5.0)
    with pytest.raises(AccumulatorFrozenError):
        loop.accumulator.add_process_energy(1.0)


def test_background_loop_stops_on_request() -> None:
    loop = _loop(
        ScriptedThreadSource([{1: (RUN, ("app.f",))}]),
        ticks=2,
        tick_seconds=0.001,
        pause_seconds=0.001,
    )
    thread = loop.start()
    assert thread.name == "wattprof-attribution"
    assert thread.daemon

    assert loop.stop(timeout=5.0) is True
    assert not loop.running
    with pytest.raises(RuntimeError):
        loop.start()


def test_shutdown_handler_flushes_once(tmp_path: Path) -> None:
    sensor = FakeSensor()
    loop = _loop(ScriptedThreadSource([{1: (RUN, ("app.f",))}]), sensor)
    loop.run_window()
    writer = CsvResultWriter(output_dir=tmp_path, pid=9)
    handler = ShutdownHandler(
        loop=loop, sensor=sensor, accumulator=loop.accumulator, writer=writer
    )

    handler()
    handler()

    assert handler.done
    assert sensor.closed == 1
    assert loop.accumulator.frozen
    assert read_energy_csv(writer.methods_energy_path) == {"app.f": 5.0}
    with pytest.raises(AccumulatorFrozenError):
        loop.run_window()


def test_shutdown_after_fatal_error_writes_nothing() -> None:
    sensor = FakeSensor(fail_on_window=1)
    loop = _loop(
        ScriptedThreadSource([{1: (RUN, ("app.f",))}]), sensor, on_fatal=lambda _: None
    )
    loop.run()
    writer = RecordingWriter()

    ShutdownHandler(
        loop=loop, sensor=sensor, accumulator=loop.accumulator, writer=writer
    )()

    assert writer.finals == 0
    assert sensor.closed == 1


def test_filtered_energy_never_exceeds_unfiltered_for_top_frames() -> None:
    """Filtered functions sampled on top of the stack get at most their full share."""

    ticks = [
        {1: (RUN, ("app.f", "app.main")), 2: (RUN, ("lib.io", "lib.run"))},
        {1: (RUN, ("lib.g", "app.main")), 2: (RUN, ("app.h", "lib.run"))},
        {1: (RUN, ("app.f", "app.main")), 2: (ThreadState.OTHER, ("app.h",))},
    ]
    loop = _loop(
        ScriptedThreadSource(ticks, cpu_step_ns={1: 2_000_000, 2: 5_000_000}),
        method_filter=MethodFilter.from_names(["app.f", "app.h"]),
        ticks=3,
    )

    for _ in range(4):
        loop.run_window()

    unfiltered = loop.accumulator.method_energy()
    filtered = loop.accumulator.method_energy_filtered()
    assert set(filtered) == {"app.f", "app.h"}
    for function, joules in filtered.items():
        assert joules <= unfiltered[function] + 1e-9

"""Integration tests for the agent wiring."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

import pytest
from conftest import FakeSensor, ScriptedThreadSource

from wattprof import agent as agent_module
from wattprof.agent import Agent
from wattprof.errors import UnsupportedPlatformError
from wattprof.sensor.factory import HostPlatform
from wattprof.settings import WattprofSettings
from wattprof.threads import ThreadState

RUN = ThreadState.RUNNABLE


def _settings(tmp_path: Path, **overrides: object) -> WattprofSettings:
    values: dict[str, object] = {
        "output_dir": tmp_path,
        "window_ms": 20,
        "tick_ms": 10,
        "pause_ms": 1,
        "filter_method_names": ["app."],
    }
    values.update(overrides)
    return WattprofSettings(**values)  # type: ignore[arg-type]


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


def test_agent_runs_windows_and_flushes_on_stop(tmp_path: Path) -> None:
    sensor = FakeSensor()
    agent = Agent(
        _settings(tmp_path),
        sensor=sensor,
        thread_source=ScriptedThreadSource(
            [{1: (RUN, ("json.dumps", "app.save"))}]
        ),
        configure_logging=False,
    )

    agent.start()
    assert agent.started
    _wait_for(lambda: agent.accumulator.windows_applied >= 2)
    total = agent.stop()

    assert total >= 10.0
    assert sensor.closed == 1
    energy_files = sorted(path.name for path in tmp_path.glob("wattprof-*-methods-energy*.csv"))
    assert len(energy_files) == 2
    assert set(agent.accumulator.method_energy()) == {"json.dumps"}
    assert set(agent.accumulator.method_energy_filtered()) == {"app.save"}
    assert agent.stop() == total


def test_agent_context_manager(tmp_path: Path) -> None:
    with Agent(
        _settings(tmp_path),
        sensor=FakeSensor(),
        thread_source=ScriptedThreadSource([{1: (RUN, ("app.f",))}]),
        configure_logging=False,
    ) as agent:
        _wait_for(lambda: agent.accumulator.windows_applied >= 1)
    assert agent.accumulator.frozen


def test_agent_on_unsupported_host(tmp_path: Path) -> None:
    agent = Agent(
        _settings(tmp_path, rapl_base_path=tmp_path / "missing"),
        host=HostPlatform(system="Darwin", machine="arm64"),
        configure_logging=False,
    )
    with pytest.raises(UnsupportedPlatformError):
        agent.start()
    assert not agent.started


def test_fatal_sensor_error_terminates(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    exits: list[int] = []
    monkeypatch.setattr(agent_module, "terminate_process", exits.append)
    sensor = FakeSensor(fail_on_window=1)
    agent = Agent(
        _settings(tmp_path),
        sensor=sensor,
        thread_source=ScriptedThreadSource([{1: (RUN, ("app.f",))}]),
        configure_logging=False,
    )

    agent.start()
    _wait_for(lambda: bool(exits))
    agent.stop()

    assert exits == [1]
    assert agent.accumulator.frozen
    assert sensor.closed >= 1
    assert not list(tmp_path.glob("wattprof-*-methods-energy*.csv"))

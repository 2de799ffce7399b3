"""Tests for psutil-backed CPU load ratios."""

from __future__ import annotations

import pytest
from conftest import FakePsutil, no_sleep

from wattprof.sensor.load import CpuLoadReader


def test_warm_up_discards_initial_reads(fake_psutil: FakePsutil) -> None:
    sleeps: list[float] = []
    reader = CpuLoadReader(psutil_module=fake_psutil, sleep=sleeps.append)

    reader.warm_up(reads=3, interval=0.25)

    assert reader.warmed_up
    assert fake_psutil.calls == 3
    assert fake_psutil.process.calls == 3
    assert sleeps == [0.25, 0.25, 0.25]


def test_process_load_is_normalised_by_cpu_count(load_reader: CpuLoadReader) -> None:
    load_reader.warm_up(reads=1, interval=0.0)
    assert load_reader.read() == (0.5, 0.25)


def test_ratios_are_clamped() -> None:
    reader = CpuLoadReader(
        psutil_module=FakePsutil(system_percent=130.0, process_percent=-5.0, cpus=1),
        sleep=no_sleep,
    )
    reader.warm_up(reads=1, interval=0.0)
    assert reader.read() == (1.0, 0.0)


def test_read_before_warm_up_warns(
    load_reader: CpuLoadReader, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level("WARNING", logger="wattprof.sensor.load"):
        load_reader.read()
    assert "before warm-up" in caplog.text

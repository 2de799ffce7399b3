"""Proportional attribution of one window's energy to threads and functions.

Energy is split hierarchically and conserved at each level:

1. process energy from the window measurement and the load ratio,
2. threads, weighted by the CPU time each consumed during the window,
3. functions, weighted by how often they were sampled on top of the
   thread's stack.

Every division guards its denominator; an idle system, a window without CPU
time or a thread without samples yields zero rather than an error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from wattprof.sensor.measurement import EnergyMeasurement
from wattprof.threads import FunctionId, ThreadId

LOGGER = logging.getLogger("wattprof.attribution")

__all__ = [
    "AttributionResult",
    "CpuTimeTracker",
    "attribute_window",
    "cpu_time_deltas",
    "split_by_cpu_time",
    "split_by_samples",
]


@dataclass(slots=True, frozen=True)
class AttributionResult:
    """Energy attributed during one window, in joules.

    Attributes:
        process_energy: Share of the measured energy owed to the process.
        thread_energy: Per-thread share of ``process_energy``.
        method_energy: Per-function share over the unfiltered samples.
        method_energy_filtered: Per-function share of the filtered samples,
            out of all samples taken on each thread.
        cpu_times: Cumulative CPU time per observed thread, to be used as
            the baseline of the next window.
    """

    process_energy: float
    thread_energy: Mapping[ThreadId, float]
    method_energy: Mapping[FunctionId, float]
    method_energy_filtered: Mapping[FunctionId, float]
    cpu_times: Mapping[ThreadId, int] = field(default_factory=dict)


def cpu_time_deltas(
    previous: Mapping[ThreadId, int], current: Mapping[ThreadId, int]
) -> dict[ThreadId, int]:
    """Return CPU time consumed per thread since the previous window.

    Threads seen for the first time are measured from zero. A counter that
    went backwards means the id was reused by a new thread; its delta is
    clamped to zero.
    """

    deltas: dict[ThreadId, int] = {}
    for thread_id, cumulative in current.items():
        delta = cumulative - previous.get(thread_id, 0)
        deltas[thread_id] = delta if delta > 0 else 0
    return deltas


def split_by_cpu_time(
    process_energy: float, deltas: Mapping[ThreadId, int]
) -> dict[ThreadId, float]:
    """Share ``process_energy`` across threads in proportion to CPU time."""

    total = sum(deltas.values())
    if total <= 0:
        return {thread_id: 0.0 for thread_id in deltas}
    return {
        thread_id: process_energy * (delta / total)
        for thread_id, delta in deltas.items()
    }


def split_by_samples(
    thread_energy: Mapping[ThreadId, float],
    samples: Mapping[ThreadId, Mapping[FunctionId, int]],
    totals: Mapping[ThreadId, int] | None = None,
) -> dict[FunctionId, float]:
    """Share each thread's energy across its sampled functions.

    Functions sampled on several threads receive the sum of their shares.
    Threads without samples, or without an energy share, contribute nothing.
    ``totals`` overrides the per-thread denominator; the filtered table is
    divided by the thread's unfiltered sample count.
    """

    energy: dict[FunctionId, float] = {}
    for thread_id, counts in samples.items():
        if totals is None:
            total_samples = sum(counts.values())
        else:
            total_samples = totals.get(thread_id, 0)
        if total_samples <= 0:
            continue
        share = thread_energy.get(thread_id, 0.0)
        for function, count in counts.items():
            energy[function] = energy.get(function, 0.0) + share * (
                count / total_samples
            )
    return energy


def attribute_window(
    measurement: EnergyMeasurement,
    previous_cpu_times: Mapping[ThreadId, int],
    current_cpu_times: Mapping[ThreadId, int],
    samples: Mapping[ThreadId, Mapping[FunctionId, int]],
    filtered_samples: Mapping[ThreadId, Mapping[FunctionId, int]],
) -> AttributionResult:
    """Attribute one window's measured energy to threads and functions.

    Args:
        measurement: The window's energy measurement.
        previous_cpu_times: Cumulative CPU ns per thread at the previous
            window boundary.
        current_cpu_times: Cumulative CPU ns per thread now; only these
            threads take part in the split.
        samples: Unfiltered sample table of the window.
        filtered_samples: Filtered sample table of the window.

    Returns:
        The window's attribution. Nothing is accumulated here.
    """

    if measurement.load_share_exceeds_system:
        LOGGER.debug(
            "Process load exceeds system load",
            extra={
                "process_cpu_load": measurement.process_cpu_load,
                "system_cpu_load": measurement.system_cpu_load,
            },
        )
    process_energy = max(measurement.process_cpu_energy, 0.0)
    deltas = cpu_time_deltas(previous_cpu_times, current_cpu_times)
    thread_energy = split_by_cpu_time(process_energy, deltas)
    return AttributionResult(
        process_energy=process_energy,
        thread_energy=thread_energy,
        method_energy=split_by_samples(thread_energy, samples),
        method_energy_filtered=split_by_samples(
            thread_energy,
            filtered_samples,
            {thread_id: sum(counts.values()) for thread_id, counts in samples.items()},
        ),
        cpu_times=dict(current_cpu_times),
    )


class CpuTimeTracker:
    """Remember cumulative CPU times between windows.

    Threads missing from the latest observation are forgotten, so a later
    thread reusing the same id starts again from zero.
    """

    def __init__(self) -> None:
        self._previous: dict[ThreadId, int] = {}

    @property
    def previous(self) -> Mapping[ThreadId, int]:
        return dict(self._previous)

    def attribute(
        self,
        measurement: EnergyMeasurement,
        current_cpu_times: Mapping[ThreadId, int],
        samples: Mapping[ThreadId, Mapping[FunctionId, int]],
        filtered_samples: Mapping[ThreadId, Mapping[FunctionId, int]],
    ) -> AttributionResult:
        result = attribute_window(
            measurement,
            self._previous,
            current_cpu_times,
            samples,
            filtered_samples,
        )
        self._previous = dict(result.cpu_times)
        return result

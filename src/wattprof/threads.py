"""Live thread enumeration, stack capture and per-thread CPU time.

Thread identifiers are Python thread idents (``threading.get_ident()``);
they are translated to native ids only to query the OS.
"""

from __future__ import annotations

import enum
import importlib
import logging
import sys
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import FrameType, ModuleType
from typing import Protocol, cast

LOGGER = logging.getLogger("wattprof.threads")

_PSUTIL_MODULE: ModuleType = importlib.import_module("psutil")

AGENT_THREAD_PREFIX = "wattprof-"
NANOS_IN_SECOND = 1_000_000_000

ThreadId = int
FunctionId = str


class ThreadState(enum.Enum):
    """Coarse scheduling state of a sampled thread."""

    RUNNABLE = "runnable"
    OTHER = "other"


@dataclass(slots=True, frozen=True)
class ThreadSnapshot:
    """One thread's state and call stack at a sampling instant."""

    thread_id: ThreadId
    state: ThreadState
    frames: tuple[FunctionId, ...]
    name: str = ""

    @property
    def innermost(self) -> FunctionId | None:
        return self.frames[0] if self.frames else None


class ThreadSource(Protocol):
    """Environment collaborator supplying thread facts to the sampler."""

    def thread_ids(self) -> list[ThreadId]:
        """Return the ids of live application threads, in a stable order."""

    def snapshot(self, thread_ids: Iterable[ThreadId]) -> list[ThreadSnapshot]:
        """Capture state and stack for the given threads still alive."""

    def cpu_times_ns(self, thread_ids: Iterable[ThreadId]) -> dict[ThreadId, int]:
        """Return cumulative CPU time per thread in nanoseconds."""

    def application_alive(self) -> bool:
        """Return whether the monitored application still runs code."""


def function_id(frame: FrameType) -> FunctionId:
    """Return the fully qualified name of the function executing ``frame``."""

    module = frame.f_globals.get("__name__") or "<unknown>"
    code = frame.f_code
    qualname = getattr(code, "co_qualname", code.co_name)
    return f"{module}.{qualname}"


def walk_stack(frame: FrameType | None, limit: int = 256) -> tuple[FunctionId, ...]:
    """Return function ids from ``frame`` outwards, innermost first."""

    names: list[FunctionId] = []
    while frame is not None and len(names) < limit:
        names.append(function_id(frame))
        frame = frame.f_back
    return tuple(names)


def is_agent_thread(thread: threading.Thread) -> bool:
    return thread.name.startswith(AGENT_THREAD_PREFIX)


class ProcTaskStateProbe:
    """Decide whether native threads are runnable from ``/proc/self/task``.

    A thread counts as runnable when the kernel reports it in state ``R`` or
    when it accumulated CPU time since the previous probe. The second rule
    catches interpreter threads that were running Python code but happened
    to be parked waiting for the GIL at the instant of the sample.
    """

    def __init__(self, task_root: Path = Path("/proc/self/task")) -> None:
        self.task_root = task_root
        self._last_ticks: dict[int, int] = {}

    @property
    def available(self) -> bool:
        return self.task_root.is_dir()

    def _read_stat(self, native_id: int) -> tuple[str, int] | None:
        try:
            data = (self.task_root / str(native_id) / "stat").read_text(
                encoding="utf-8"
            )
        except OSError:
            return None
        right = data.rfind(")")
        if right < 0:
            return None
        fields = data[right + 2 :].split()
        try:
            # Fields after the command: state, ..., utime (12th), stime (13th).
            return fields[0], int(fields[11]) + int(fields[12])
        except (IndexError, ValueError):
            return None

    def is_runnable(self, native_id: int) -> bool | None:
        """Return the runnable verdict, or ``None`` if the thread is gone."""

        stat = self._read_stat(native_id)
        if stat is None:
            self._last_ticks.pop(native_id, None)
            return None
        state, ticks = stat
        previous = self._last_ticks.get(native_id)
        self._last_ticks[native_id] = ticks
        return state == "R" or (previous is not None and ticks > previous)

    def retain(self, native_ids: Iterable[int]) -> None:
        """Forget tick history for every thread not in ``native_ids``."""

        keep = set(native_ids)
        for native_id in [tid for tid in self._last_ticks if tid not in keep]:
            del self._last_ticks[native_id]

    @property
    def tracked_threads(self) -> int:
        return len(self._last_ticks)


class PsutilProcessProtocol(Protocol):
    """Subset of :class:`psutil.Process` used for thread CPU times."""

    def threads(self) -> list[object]:
        """Return per-thread ``(id, user_time, system_time)`` tuples."""


class PythonThreadSource:
    """Thread source for the interpreter this agent runs in.

    Stacks come from :func:`sys._current_frames`; CPU times come from
    psutil's per-thread accounting, keyed by native thread id.
    """

    def __init__(
        self,
        *,
        exclude_agent_threads: bool = True,
        state_probe: ProcTaskStateProbe | None = None,
        process: PsutilProcessProtocol | None = None,
        stack_limit: int = 256,
    ) -> None:
        self.exclude_agent_threads = exclude_agent_threads
        probe = state_probe if state_probe is not None else ProcTaskStateProbe()
        self._probe: ProcTaskStateProbe | None = probe if probe.available else None
        self._process = process or cast(
            PsutilProcessProtocol, _PSUTIL_MODULE.Process()
        )
        self.stack_limit = stack_limit

    def _threads(self) -> dict[ThreadId, threading.Thread]:
        threads: dict[ThreadId, threading.Thread] = {}
        for thread in threading.enumerate():
            if thread.ident is None:
                continue
            if self.exclude_agent_threads and is_agent_thread(thread):
                continue
            threads[thread.ident] = thread
        return threads

    def thread_ids(self) -> list[ThreadId]:
        return list(self._threads())

    def _state(self, thread: threading.Thread) -> ThreadState:
        if self._probe is None or thread.native_id is None:
            return ThreadState.RUNNABLE
        runnable = self._probe.is_runnable(thread.native_id)
        return ThreadState.RUNNABLE if runnable else ThreadState.OTHER

    def snapshot(self, thread_ids: Iterable[ThreadId]) -> list[ThreadSnapshot]:
        frames = sys._current_frames()
        live = self._threads()
        snapshots: list[ThreadSnapshot] = []
        for thread_id in thread_ids:
            thread = live.get(thread_id)
            frame = frames.get(thread_id)
            if thread is None or frame is None:
                continue
            snapshots.append(
                ThreadSnapshot(
                    thread_id=thread_id,
                    state=self._state(thread),
                    frames=walk_stack(frame, self.stack_limit),
                    name=thread.name,
                )
            )
        del frames
        if self._probe is not None:
            self._probe.retain(
                thread.native_id
                for thread in live.values()
                if thread.native_id is not None
            )
        return snapshots

    def cpu_times_ns(self, thread_ids: Iterable[ThreadId]) -> dict[ThreadId, int]:
        wanted = set(thread_ids)
        native_to_ident = {
            thread.native_id: ident
            for ident, thread in self._threads().items()
            if ident in wanted and thread.native_id is not None
        }
        try:
            native_threads = self._process.threads()
        except (_PSUTIL_MODULE.Error, OSError) as exc:
            LOGGER.warning("Failed to read thread CPU times", extra={"error": str(exc)})
            return {}

        times: dict[ThreadId, int] = {}
        for entry in native_threads:
            native_id, user_time, system_time = cast(tuple[int, float, float], entry)[:3]
            ident = native_to_ident.get(native_id)
            if ident is None:
                continue
            times[ident] = int(round((user_time + system_time) * NANOS_IN_SECOND))
        return times

    def application_alive(self) -> bool:
        """Return ``True`` while the main thread or any non-daemon app thread runs."""

        for thread in self._threads().values():
            if not thread.is_alive():
                continue
            if thread is threading.main_thread() or not thread.daemon:
                return True
        return False


def sample_counts(samples: Mapping[ThreadId, Mapping[FunctionId, int]]) -> int:
    """Return the total number of samples in a sample table."""

    return sum(sum(counts.values()) for counts in samples.values())

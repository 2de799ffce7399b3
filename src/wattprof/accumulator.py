"""Concurrency-safe running totals of attributed energy."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from threading import Lock
from typing import TYPE_CHECKING

from wattprof.errors import AccumulatorFrozenError

if TYPE_CHECKING:
    from wattprof.attribution import AttributionResult

LOGGER = logging.getLogger("wattprof.accumulator")

__all__ = ["Accumulator", "AtomicFloat", "EnergyTable"]


class AtomicFloat:
    """A float supporting compare-and-set and lock-free style addition.

    CPython offers no hardware CAS on floats, so the compare-and-set step is
    a short critical section; :meth:`add` retries it until it wins, which
    keeps concurrent adders from losing updates.
    """

    __slots__ = ("_value", "_guard")

    def __init__(self, value: float = 0.0) -> None:
        self._value = float(value)
        self._guard = Lock()

    def get(self) -> float:
        return self._value

    def compare_and_set(self, expected: float, new: float) -> bool:
        """Set the value to ``new`` if it currently equals ``expected``."""

        with self._guard:
            # Identity, not equality: NaN never equals itself.
            if self._value is not expected and self._value != expected:
                return False
            self._value = new
            return True

    def add(self, delta: float) -> float:
        """Add ``delta`` and return the updated value."""

        while True:
            current = self._value
            updated = current + delta
            if self.compare_and_set(current, updated):
                return updated

    def __float__(self) -> float:
        return self._value

    def __repr__(self) -> str:
        return f"AtomicFloat({self._value!r})"


class EnergyTable:
    """Mapping of function name to cumulative energy in joules.

    Each entry is an independent :class:`AtomicFloat`; the table lock is
    only taken when a function is seen for the first time.
    """

    def __init__(self) -> None:
        self._entries: dict[str, AtomicFloat] = {}
        self._insert_lock = Lock()

    def _entry(self, name: str) -> AtomicFloat:
        entry = self._entries.get(name)
        if entry is None:
            with self._insert_lock:
                entry = self._entries.setdefault(name, AtomicFloat())
        return entry

    def add(self, name: str, joules: float) -> float:
        return self._entry(name).add(joules)

    def get(self, name: str) -> float:
        entry = self._entries.get(name)
        return entry.get() if entry is not None else 0.0

    def snapshot(self) -> dict[str, float]:
        """Return a point-in-time copy of every entry."""

        with self._insert_lock:
            items = list(self._entries.items())
        return {name: entry.get() for name, entry in items}

    def total(self) -> float:
        return sum(self.snapshot().values())

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class Accumulator:
    """Process-lifetime energy totals shared by the loop and the shutdown path.

    After :meth:`freeze` every mutator raises :class:`AccumulatorFrozenError`,
    which guarantees nothing is recorded once the final results are flushed.
    Mutators and :meth:`freeze` share one lock, so a window is applied either
    completely or not at all.
    """

    def __init__(self) -> None:
        self._total = AtomicFloat()
        self._methods = EnergyTable()
        self._methods_filtered = EnergyTable()
        self._frozen = False
        self._windows = 0
        self._state_lock = Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def total_process_energy(self) -> float:
        """Return the running total of process energy in joules."""

        return self._total.get()

    @property
    def windows_applied(self) -> int:
        return self._windows

    def freeze(self) -> None:
        """Refuse further updates; waits for an in-flight :meth:`apply`."""

        with self._state_lock:
            if not self._frozen:
                LOGGER.debug("Accumulator frozen", extra={"windows": self._windows})
            self._frozen = True

    def _check_open(self) -> None:
        if self._frozen:
            raise AccumulatorFrozenError("Accumulator already flushed; update refused")

    def add_process_energy(self, joules: float) -> float:
        with self._state_lock:
            self._check_open()
            return self._total.add(joules)

    def add_function_energy(self, function: str, joules: float) -> float:
        with self._state_lock:
            self._check_open()
            return self._methods.add(function, joules)

    def add_filtered_function_energy(self, function: str, joules: float) -> float:
        with self._state_lock:
            self._check_open()
            return self._methods_filtered.add(function, joules)

    def apply(self, result: AttributionResult) -> None:
        """Fold one window's attribution into the running totals."""

        with self._state_lock:
            self._check_open()
            self._total.add(result.process_energy)
            for function, joules in result.method_energy.items():
                self._methods.add(function, joules)
            for function, joules in result.method_energy_filtered.items():
                self._methods_filtered.add(function, joules)
            self._windows += 1

    def method_energy(self) -> dict[str, float]:
        return self._methods.snapshot()

    def method_energy_filtered(self) -> dict[str, float]:
        return self._methods_filtered.snapshot()

    def summary(self) -> Mapping[str, float | int]:
        return {
            "total_process_energy_joules": self.total_process_energy,
            "functions": len(self._methods),
            "filtered_functions": len(self._methods_filtered),
            "windows": self._windows,
        }

"""Function-name filter deciding which frames feed the filtered table."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from wattprof.threads import FunctionId


@dataclass(slots=True, frozen=True)
class MethodFilter:
    """Match fully qualified function names against configured prefixes.

    An empty filter matches nothing, so the filtered table stays empty.
    """

    prefixes: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> MethodFilter:
        cleaned = tuple(name.strip() for name in names if name and name.strip())
        return cls(prefixes=cleaned)

    def __call__(self, function: FunctionId) -> bool:
        return function.startswith(self.prefixes) if self.prefixes else False

    def first_match(self, frames: Sequence[FunctionId]) -> FunctionId | None:
        """Return the innermost frame whose name matches, if any."""

        if not self.prefixes:
            return None
        for name in frames:
            if name.startswith(self.prefixes):
                return name
        return None

    def __bool__(self) -> bool:
        return bool(self.prefixes)

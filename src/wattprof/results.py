"""CSV result files for per-window power and cumulative energy."""

from __future__ import annotations

import csv
import io
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from wattprof.accumulator import Accumulator
from wattprof.attribution import AttributionResult

LOGGER = logging.getLogger("wattprof.results")


class ResultWriter(Protocol):
    """Sink receiving window snapshots and the final flush."""

    def write_window(self, result: AttributionResult, accumulator: Accumulator) -> None:
        """Persist the latest window and the running total."""

    def write_final(self, accumulator: Accumulator) -> None:
        """Persist the cumulative per-function energy at shutdown."""


def _render_rows(values: Mapping[str, float]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for name, joules in sorted(values.items(), key=lambda item: item[1], reverse=True):
        writer.writerow([name, repr(float(joules))])
    return buffer.getvalue()


@dataclass(slots=True)
class CsvResultWriter:
    """Write ``name,joules`` CSV files into ``output_dir``.

    Per-window files are overwritten every window; the cumulative files are
    written once at shutdown. I/O failures are logged and never propagate,
    since losing a snapshot must not stop the measurement loop.
    """

    output_dir: Path = Path(".")
    pid: int = field(default_factory=os.getpid)
    write_window_files: bool = True

    def path_for(self, suffix: str) -> Path:
        return self.output_dir / f"wattprof-{self.pid}-{suffix}.csv"

    @property
    def methods_power_path(self) -> Path:
        return self.path_for("methods-power")

    @property
    def methods_filtered_power_path(self) -> Path:
        return self.path_for("methods-filtered-power")

    @property
    def methods_energy_path(self) -> Path:
        return self.path_for("methods-energy")

    @property
    def methods_energy_filtered_path(self) -> Path:
        return self.path_for("methods-energy-filtered")

    @property
    def total_energy_path(self) -> Path:
        return self.path_for("total-energy")

    def _write(self, path: Path, content: str) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            LOGGER.warning(
                "Failed to write result file",
                extra={"path": str(path), "error": str(exc)},
            )
            return False
        return True

    def write_total(self, total_joules: float) -> None:
        self._write(self.total_energy_path, f"total_joules\n{total_joules!r}\n")

    def write_window(self, result: AttributionResult, accumulator: Accumulator) -> None:
        self.write_total(accumulator.total_process_energy)
        if not self.write_window_files:
            return
        self._write(self.methods_power_path, _render_rows(result.method_energy))
        self._write(
            self.methods_filtered_power_path,
            _render_rows(result.method_energy_filtered),
        )

    def write_final(self, accumulator: Accumulator) -> None:
        self.write_total(accumulator.total_process_energy)
        written = self._write(
            self.methods_energy_path, _render_rows(accumulator.method_energy())
        ) & self._write(
            self.methods_energy_filtered_path,
            _render_rows(accumulator.method_energy_filtered()),
        )
        if written:
            LOGGER.info(
                "Energy consumption of methods written",
                extra={
                    "methods_file": str(self.methods_energy_path),
                    "filtered_methods_file": str(self.methods_energy_filtered_path),
                },
            )


def read_energy_csv(path: Path) -> dict[str, float]:
    """Load a ``name,joules`` CSV file written by :class:`CsvResultWriter`."""

    values: dict[str, float] = {}
    with path.open(encoding="utf-8", newline="") as handle:
        for row in csv.reader(handle):
            if len(row) != 2:
                continue
            values[row[0]] = float(row[1])
    return values

"""Command-line entry point: run a Python program under energy attribution."""

from __future__ import annotations

import argparse
import logging
import runpy
import sys
from pathlib import Path
from typing import Sequence

from wattprof.agent import Agent
from wattprof.errors import EXIT_FAILURE, EXIT_SUCCESS, WattprofError
from wattprof.settings import DEFAULT_CONFIG_FILE, load_settings

LOGGER = logging.getLogger("wattprof.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wattprof",
        description=(
            "Run a Python program and attribute its CPU energy consumption "
            "to threads and functions."
        ),
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help="Properties file with filter-method-names and powermonitor-path.",
    )
    parser.add_argument(
        "--filter",
        "-f",
        action="append",
        dest="filters",
        metavar="PREFIX",
        help="Function name prefix tracked separately (repeatable).",
    )
    parser.add_argument(
        "--powermonitor-path",
        help="Command of the external power monitor helper.",
    )
    parser.add_argument(
        "--sensor",
        choices=("auto", "rapl", "helper"),
        help="Force an energy sensor instead of selecting by platform.",
    )
    parser.add_argument("--output-dir", "-o", type=Path, help="Result directory.")
    parser.add_argument("--log-level", help="Logging level, for example DEBUG.")
    parser.add_argument(
        "-m",
        dest="module",
        action="store_true",
        help="Treat TARGET as a module name, like 'python -m'.",
    )
    parser.add_argument("target", help="Python script (or module with -m) to run.")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Program arguments.")
    return parser


def _run_target(target: str, args: Sequence[str], as_module: bool) -> int:
    """Execute the monitored program in this process's main thread."""

    saved_argv = sys.argv
    sys.argv = [target, *args]
    try:
        if as_module:
            runpy.run_module(target, run_name="__main__", alter_sys=True)
        else:
            runpy.run_path(target, run_name="__main__")
    except SystemExit as exc:
        if exc.code is None:
            return EXIT_SUCCESS
        if isinstance(exc.code, int):
            return exc.code
        print(exc.code, file=sys.stderr)
        return EXIT_FAILURE
    finally:
        sys.argv = saved_argv
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, start the agent, run the target and flush results."""

    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:  # pragma: no cover - argparse exit paths
        exit_code = int(exc.code) if isinstance(exc.code, int) else EXIT_FAILURE
        return EXIT_SUCCESS if exit_code == 0 else EXIT_FAILURE

    settings = load_settings(
        args.config,
        filter_method_names=args.filters,
        powermonitor_path=args.powermonitor_path,
        sensor=args.sensor,
        output_dir=args.output_dir,
        log_level=args.log_level,
    )

    agent = Agent(settings)
    try:
        agent.start()
    except WattprofError as exc:
        print(f"wattprof: {exc}. Exiting...", file=sys.stderr)
        return EXIT_FAILURE

    try:
        exit_code = _run_target(args.target, args.args, args.module)
    finally:
        total = agent.stop()
    print(f"wattprof: program consumed {total:.2f} joules", file=sys.stderr)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())

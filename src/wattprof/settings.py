"""Environment-backed settings primitives for :mod:`wattprof`."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "WattprofSettings",
    "get_settings",
    "load_settings",
    "read_properties_file",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config.properties")

# Keys understood in ``config.properties`` and the settings field they feed.
_PROPERTY_KEYS: dict[str, str] = {
    "filter-method-names": "filter_method_names",
    "powermonitor-path": "powermonitor_path",
    "sensor": "sensor",
    "output-dir": "output_dir",
}


class WattprofSettings(BaseSettings):
    """Expose configuration knobs for the energy attribution agent.

    Every attribute can be supplied through a ``WATTPROF_``-prefixed
    environment variable (for example ``WATTPROF_FILTER_METHOD_NAMES``).
    Malformed numeric values fall back to the defaults instead of aborting
    start-up.

    Attributes:
        filter_method_names: Function name prefixes tracked in the filtered
            energy table.
        powermonitor_path: Command line of the external power monitor helper.
        sensor: Sensor selection strategy; ``auto`` picks from the platform.
        rapl_base_path: Root of the powercap RAPL hierarchy.
        window_ms: Length of one sampling window in milliseconds.
        tick_ms: Interval between stack samples in milliseconds.
        pause_ms: Pause between two windows in milliseconds.
        warmup_reads: Number of discarded CPU load reads at start-up.
        warmup_interval: Delay between warm-up reads in seconds.
        helper_timeout: Maximum wait for one helper line in seconds.
        output_dir: Directory receiving the CSV result files.
        write_window_files: Whether per-window power files are rewritten.
        log_level: Verbosity of the structured logger.
    """

    filter_method_names: Annotated[list[str], NoDecode] = Field(default_factory=list)
    powermonitor_path: str | None = None
    sensor: Literal["auto", "rapl", "helper"] = "auto"
    rapl_base_path: Path = Path("/sys/class/powercap/intel-rapl")
    window_ms: int = 1000
    tick_ms: int = 10
    pause_ms: int = 10
    warmup_reads: int = 2
    warmup_interval: float = 0.5
    helper_timeout: float = 2.0
    output_dir: Path = Path(".")
    write_window_files: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="WATTPROF_", env_file=None, extra="ignore"
    )

    @field_validator("filter_method_names", mode="before")
    @classmethod
    def _split_prefixes(cls, value: object) -> list[str]:
        """Accept comma-separated strings as well as sequences."""

        if value is None:
            return []
        if isinstance(value, str):
            items: list[object] = list(value.split(","))
        elif isinstance(value, (list, tuple, set)):
            items = list(value)
        else:
            return []
        return [str(item).strip() for item in items if str(item).strip()]

    @field_validator("window_ms", "tick_ms", "pause_ms", "warmup_reads", mode="before")
    @classmethod
    def _parse_int(cls, value: object, info: ValidationInfo) -> int:
        """Parse integer fields, falling back to the declared default."""

        default = cls.model_fields[str(info.field_name)].default
        parsed: int | None = None
        if isinstance(value, bool):
            parsed = None
        elif isinstance(value, int):
            parsed = value
        elif isinstance(value, float) and value.is_integer():
            parsed = int(value)
        elif isinstance(value, str):
            try:
                parsed = int(value.strip())
            except ValueError:
                parsed = None
        if parsed is None or parsed < 0:
            return int(default)
        return parsed

    @field_validator("warmup_interval", "helper_timeout", mode="before")
    @classmethod
    def _parse_float(cls, value: object, info: ValidationInfo) -> float:
        """Parse float fields, falling back to the declared default."""

        default = cls.model_fields[str(info.field_name)].default
        parsed: float | None = None
        if isinstance(value, bool):
            parsed = None
        elif isinstance(value, (int, float)):
            parsed = float(value)
        elif isinstance(value, str):
            try:
                parsed = float(value.strip())
            except ValueError:
                parsed = None
        if parsed is None or parsed < 0:
            return float(default)
        return parsed

    @field_validator("powermonitor_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def ticks_per_window(self) -> int:
        """Return the number of stack samples taken in one window."""

        if self.tick_ms <= 0:
            return 1
        return max(1, self.window_ms // self.tick_ms)


def read_properties_file(path: Path) -> dict[str, str]:
    """Parse a Java-style ``.properties`` file into a flat mapping.

    Blank lines and lines starting with ``#`` or ``!`` are skipped. Both
    ``key=value`` and ``key: value`` separators are accepted.

    Args:
        path: Location of the properties file.

    Returns:
        Mapping of raw keys to stripped values.
    """

    properties: dict[str, str] = {}
    text = path.read_text(encoding="utf-8")
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line[0] in "#!":
            continue
        separators = [idx for idx in (line.find("="), line.find(":")) if idx >= 0]
        if not separators:
            properties[line] = ""
            continue
        split_at = min(separators)
        properties[line[:split_at].strip()] = line[split_at + 1 :].strip()
    return properties


def get_settings() -> WattprofSettings:
    """Return settings parsed from environment variables."""

    return WattprofSettings()


def load_settings(
    config_path: Path | None = None, **overrides: object
) -> WattprofSettings:
    """Build settings from a properties file, the environment and overrides.

    Precedence, lowest first: defaults, ``config_path`` entries, environment
    variables, then explicit ``overrides`` (typically CLI flags). A missing
    config file is not an error.

    Args:
        config_path: Optional ``config.properties`` file location.
        **overrides: Field values taking precedence over every other source.

    Returns:
        The merged settings object.
    """

    env_settings = WattprofSettings()
    merged: dict[str, object] = {}

    if config_path is not None and config_path.is_file():
        for key, value in read_properties_file(config_path).items():
            field_name = _PROPERTY_KEYS.get(key)
            if field_name is None:
                LOGGER.debug("Ignoring unknown property", extra={"key": key})
                continue
            merged[field_name] = value

    merged.update(env_settings.model_dump(exclude_unset=True))
    merged.update({key: value for key, value in overrides.items() if value is not None})
    return WattprofSettings.model_validate(merged)

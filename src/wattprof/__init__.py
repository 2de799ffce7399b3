"""wattprof - sampling-based energy attribution for Python programs."""

from __future__ import annotations

from importlib import import_module
from typing import Any, TYPE_CHECKING

__all__ = [
    "Accumulator",
    "Agent",
    "AttributionResult",
    "EnergyMeasurement",
    "WattprofSettings",
    "attribute_window",
]

if TYPE_CHECKING:
    from .accumulator import Accumulator
    from .agent import Agent
    from .attribution import AttributionResult, attribute_window
    from .sensor.measurement import EnergyMeasurement
    from .settings import WattprofSettings


def __getattr__(name: str) -> Any:
    """Lazily import modules so importing the package stays cheap."""

    module_map = {
        "Accumulator": "accumulator",
        "Agent": "agent",
        "AttributionResult": "attribution",
        "attribute_window": "attribution",
        "EnergyMeasurement": "sensor.measurement",
        "WattprofSettings": "settings",
    }

    if name not in module_map:
        raise AttributeError(name)

    module = import_module(f".{module_map[name]}", __name__)
    return getattr(module, name)

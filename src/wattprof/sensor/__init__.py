"""Energy sensors producing one measurement per sampling window."""

from __future__ import annotations

from wattprof.sensor.base import EnergySensor
from wattprof.sensor.factory import HostPlatform, create_energy_sensor, select_sensor_kind
from wattprof.sensor.helper import HelperEnergySensor, parse_power_line
from wattprof.sensor.load import CpuLoadReader
from wattprof.sensor.measurement import EnergyMeasurement
from wattprof.sensor.rapl import RaplCounter, RaplEnergySensor, discover_counters

__all__ = [
    "CpuLoadReader",
    "EnergyMeasurement",
    "EnergySensor",
    "HelperEnergySensor",
    "HostPlatform",
    "RaplCounter",
    "RaplEnergySensor",
    "create_energy_sensor",
    "discover_counters",
    "parse_power_line",
    "select_sensor_kind",
]

# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated owserver bus for running the bridge without hardware.

MockBus holds the simulated sensors of every configured server; each
connect() hands out a MockOwServer connection bound to one server, the same
way a real owserver connection is opened per poll.
"""

import logging
import math
import random
import time

from .binding_config import ServerConfig, TemperatureScale
from .owserver import BusProtocolError

logger = logging.getLogger(__name__)

# family.id -> {unit: kind}
DEFAULT_SENSORS = {
    "10.67C6697351FF": {"temperature": "temperature"},
    "26.AF9C32000000": {"temperature": "temperature", "humidity": "humidity"},
    "12.4AEC29CDBAAB": {"PIO.A": "pio", "sensed.A": "sensed"},
}


def _convert_temperature(celsius: float, scale: TemperatureScale) -> float:
    if scale is TemperatureScale.FAHRENHEIT:
        return celsius * 9 / 5 + 32
    if scale is TemperatureScale.KELVIN:
        return celsius + 273.15
    if scale is TemperatureScale.RANKINE:
        return (celsius + 273.15) * 9 / 5
    return celsius


class MockBus:
    """Simulated sensors, shared by all mock connections."""

    def __init__(self, sensors: dict[str, dict[str, str]] | None = None):
        self._sensors = sensors if sensors is not None else dict(DEFAULT_SENSORS)
        self._pio: dict[str, str] = {}
        self._start_time = time.time()
        self.connects = 0

    async def connect(self, server: ServerConfig,
                      scale: TemperatureScale = TemperatureScale.CELSIUS) -> "MockOwServer | None":
        if not server.host or server.port <= 0:
            logger.warning("Mock: server %s has no connection parameters", server.server_id)
            return None
        self.connects += 1
        return MockOwServer(self, server, scale)

    def has_sensor(self, sensor_id: str) -> bool:
        return sensor_id in self._sensors

    def value(self, sensor_id: str, unit: str, scale: TemperatureScale) -> str | None:
        kind = self._sensors.get(sensor_id, {}).get(unit)
        if kind is None:
            return None

        elapsed = time.time() - self._start_time
        if kind == "temperature":
            # Slow drift around room temperature
            celsius = 21.0 + 2.0 * math.sin(elapsed / 600.0) + random.uniform(-0.1, 0.1)
            return f"{_convert_temperature(celsius, scale):12.4f}"
        if kind == "humidity":
            return f"{45.0 + 5.0 * math.sin(elapsed / 900.0):12.4f}"
        if kind in ("pio", "sensed"):
            return self._pio.get(sensor_id, "0")
        return None

    def write(self, sensor_id: str, unit: str, value: str):
        if self._sensors.get(sensor_id, {}).get(unit) != "pio":
            raise ValueError(f"{sensor_id}/{unit} is read-only")
        self._pio[sensor_id] = "1" if value.strip() == "1" else "0"
        logger.info("Mock: %s/%s set to %s", sensor_id, unit, self._pio[sensor_id])


class MockOwServer:
    """BusConnection backed by a MockBus."""

    def __init__(self, bus: MockBus, server: ServerConfig, scale: TemperatureScale):
        self._bus = bus
        self.server = server
        self._scale = scale
        self.closed = False

    async def exists(self, path: str) -> bool:
        return self._bus.has_sensor(path.strip("/").split("/")[0])

    async def read(self, path: str) -> str | None:
        sensor_id, _, unit = path.strip("/").partition("/")
        return self._bus.value(sensor_id, unit, self._scale)

    async def write(self, path: str, value: str) -> None:
        sensor_id, _, unit = path.strip("/").partition("/")
        try:
            self._bus.write(sensor_id, unit, value)
        except ValueError as e:
            raise BusProtocolError(str(e)) from e

    async def disconnect(self) -> None:
        self.closed = True

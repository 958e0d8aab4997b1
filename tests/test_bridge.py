# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Bridge wiring and end-to-end cycles against the simulated bus."""

import json
import os
import sys
import tempfile
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from onewire_bridge.binding_config import (
    BindingConfigurator,
    ConfigurationError,
    ServerConfig,
    TemperatureScale,
)
from onewire_bridge.commands import CommandDispatcher
from onewire_bridge.engine import RefreshService
from onewire_bridge.items import ItemRegistry, OnOff, OpenClosed
from onewire_bridge.main import MOCK_ITEMS, BridgeManager
from onewire_bridge.mock_owserver import MockBus
from onewire_bridge.owserver import BusProtocolError


def make_config(**overrides):
    config = MagicMock()
    config.bridge_id = "test"
    config.mqtt_broker = "localhost"
    config.mqtt_port = 1883
    config.mqtt_username = ""
    config.mqtt_password = ""
    config.config_file = overrides.get("config_file", "/nonexistent/onewire.cfg")
    config.items_file = overrides.get("items_file", "/nonexistent/items.json")
    config.mock_mode = overrides.get("mock_mode", True)
    config.web_port = 0
    return config


# ---------------------------------------------------------------------------
# MockBus
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mock_bus_reads_sensors():
    bus = MockBus()
    conn = await bus.connect(ServerConfig("1", "127.0.0.1"))

    assert await conn.exists("/10.67C6697351FF")
    assert not await conn.exists("/28.000000000000")
    temp = float(await conn.read("10.67C6697351FF/temperature"))
    assert 18.0 < temp < 24.0
    assert await conn.read("10.67C6697351FF/humidity") is None


@pytest.mark.asyncio
async def test_mock_bus_temperature_scale():
    bus = MockBus()
    conn = await bus.connect(ServerConfig("1", "127.0.0.1"), TemperatureScale.KELVIN)
    assert float(await conn.read("26.AF9C32000000/temperature")) > 290.0


@pytest.mark.asyncio
async def test_mock_bus_write_pio():
    bus = MockBus()
    conn = await bus.connect(ServerConfig("1", "127.0.0.1"))
    await conn.write("12.4AEC29CDBAAB/PIO.A", "1")
    assert await conn.read("12.4AEC29CDBAAB/sensed.A") == "1"
    with pytest.raises(BusProtocolError, match="read-only"):
        await conn.write("10.67C6697351FF/temperature", "1")


@pytest.mark.asyncio
async def test_mock_bus_without_host():
    bus = MockBus()
    assert await bus.connect(ServerConfig("1")) is None
    assert bus.connects == 0


# ---------------------------------------------------------------------------
# End-to-end cycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_refresh_and_command_against_mock_bus():
    bus = MockBus()
    configurator = BindingConfigurator()
    configurator.updated({"1.host": "127.0.0.1", "retry": "2"})
    items = ItemRegistry()
    for name, item_type, binding in MOCK_ITEMS:
        items.add_item(name, item_type, binding)
    publisher = MagicMock()
    engine = RefreshService(configurator, [items], publisher, bus.connect)
    dispatcher = CommandDispatcher(configurator, [items], bus.connect)

    await engine.execute()
    published = {c.args[0]: c.args[1] for c in publisher.post_update.call_args_list}
    assert set(published) == {name for name, _, _ in MOCK_ITEMS}
    assert published["Pump"] is OnOff.OFF
    assert published["Pump_Sensed"] is OpenClosed.OPEN

    assert await dispatcher.receive_command("Pump", OnOff.ON)
    publisher.reset_mock()
    await engine.execute()
    published = {c.args[0]: c.args[1] for c in publisher.post_update.call_args_list}
    assert published["Pump"] is OnOff.ON
    assert published["Pump_Sensed"] is OpenClosed.CLOSED
    assert configurator.registry.get("1").last_update > 0


# ---------------------------------------------------------------------------
# BridgeManager
# ---------------------------------------------------------------------------

@patch("paho.mqtt.client.Client")
def test_manager_mock_defaults(MockClient):
    manager = BridgeManager(make_config())
    assert manager.configurator.registry.get("1").host == "127.0.0.1"
    assert manager.items.item_names() == [name for name, _, _ in MOCK_ITEMS]
    assert manager.mqtt._command_callback == manager.dispatcher.receive_command


@patch("paho.mqtt.client.Client")
def test_manager_loads_files(MockClient):
    with tempfile.TemporaryDirectory() as tmp:
        cfg_path = os.path.join(tmp, "onewire.cfg")
        items_path = os.path.join(tmp, "items.json")
        with open(cfg_path, "w") as f:
            f.write("onewire:garage.host=10.0.0.7:4305\nonewire:refresh=5000\n")
        with open(items_path, "w") as f:
            json.dump({"items": [
                {"name": "Temp", "type": "Number", "binding": "10.67C6697351FF#temperature#garage"},
            ]}, f)

        manager = BridgeManager(make_config(
            config_file=cfg_path, items_file=items_path, mock_mode=False,
        ))

    server = manager.configurator.registry.get("garage")
    assert (server.host, server.port) == ("10.0.0.7", 4305)
    assert manager.engine.refresh_interval == 5.0
    assert manager.items.item_names() == ["Temp"]
    assert manager.mock_bus is None


@patch("paho.mqtt.client.Client")
def test_manager_rejects_bad_binding_config(MockClient):
    with tempfile.NamedTemporaryFile(mode="w", suffix=".cfg", delete=False) as f:
        f.write("onewire:tempscale=celsius\n")
        path = f.name
    try:
        with pytest.raises(ConfigurationError):
            BridgeManager(make_config(config_file=path))
    finally:
        os.unlink(path)

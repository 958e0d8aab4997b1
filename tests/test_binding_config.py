# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for the binding configuration — key parsing, registry, settings."""

import json
import os
import sys
import tempfile
import threading

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from onewire_bridge.binding_config import (
    BindingConfigurator,
    ConfigurationError,
    GlobalSetting,
    GlobalSettings,
    IgnoredKey,
    ServerHostEntry,
    ServerRegistry,
    TemperatureScale,
    UnknownKey,
    load_binding_config,
    parse_config_key,
)


# ---------------------------------------------------------------------------
# parse_config_key
# ---------------------------------------------------------------------------

def test_parse_host_with_port():
    assert parse_config_key("1.host", "10.0.0.5:4305") == ServerHostEntry("1", "10.0.0.5", 4305)


def test_parse_host_default_port():
    assert parse_config_key("garage.host", "10.0.0.7") == ServerHostEntry("garage", "10.0.0.7", 4304)


def test_parse_host_dotted_server_id():
    assert parse_config_key("garage.east.host", "10.0.0.9:4305") == ServerHostEntry(
        "garage.east", "10.0.0.9", 4305
    )


def test_parse_host_empty_server_id():
    with pytest.raises(ConfigurationError, match="empty server id"):
        parse_config_key(".host", "10.0.0.9")


def test_parse_host_bad_port_names_key():
    with pytest.raises(ConfigurationError, match="invalid port") as exc:
        parse_config_key("2.host", "10.0.0.5:abc")
    assert exc.value.key == "2.host"


def test_parse_empty_host_is_none():
    assert parse_config_key("3.host", "").host is None


def test_parse_reserved_key_ignored():
    assert parse_config_key("service.pid", "org.openhab.onewire") == IgnoredKey("service.pid")


def test_parse_unknown_server_subkey():
    assert parse_config_key("1.user", "admin") == UnknownKey("1.user")


def test_parse_unknown_top_level_ignored():
    assert parse_config_key("something", "x") == IgnoredKey("something")
    assert parse_config_key("a.b.c", "x") == IgnoredKey("a.b.c")


def test_parse_globals():
    assert parse_config_key("refresh", "30000") == GlobalSetting("refresh_interval_ms", 30000)
    assert parse_config_key("retry", "5") == GlobalSetting("retry_count", 5)
    assert parse_config_key("tempscale", "KELVIN") == GlobalSetting(
        "temperature_scale", TemperatureScale.KELVIN
    )


def test_parse_blank_global_ignored():
    assert parse_config_key("refresh", "  ") == IgnoredKey("refresh")


@pytest.mark.parametrize("key,value", [
    ("refresh", "abc"), ("refresh", "0"), ("retry", "-1"), ("retry", "1.5"),
])
def test_parse_bad_integer(key, value):
    with pytest.raises(ConfigurationError) as exc:
        parse_config_key(key, value)
    assert exc.value.key == key


def test_parse_tempscale_case_sensitive():
    with pytest.raises(ConfigurationError, match="CELSIUS, FAHRENHEIT, KELVIN, RANKINE"):
        parse_config_key("tempscale", "celsius")


# ---------------------------------------------------------------------------
# ServerRegistry
# ---------------------------------------------------------------------------

def test_registry_upsert_and_get():
    reg = ServerRegistry()
    reg.upsert("1", "10.0.0.5", 4304)
    server = reg.get("1")
    assert server.host == "10.0.0.5"
    assert server.port == 4304
    assert server.last_update == 0


def test_registry_get_missing():
    assert ServerRegistry().get("9") is None


def test_registry_overwrite_keeps_last_update():
    reg = ServerRegistry()
    reg.upsert("1", "10.0.0.5")
    reg.touch("1", 1234.0)
    reg.upsert("1", "10.0.0.6", 5000)
    server = reg.get("1")
    assert (server.host, server.port, server.last_update) == ("10.0.0.6", 5000, 1234.0)


def test_registry_get_returns_copy():
    reg = ServerRegistry()
    reg.upsert("1", "10.0.0.5")
    reg.get("1").host = "mutated"
    assert reg.get("1").host == "10.0.0.5"


def test_registry_accepts_int_ids():
    reg = ServerRegistry()
    reg.upsert("1", "10.0.0.5")
    assert reg.get(1) is not None
    assert 1 in reg


def test_registry_concurrent_upserts():
    reg = ServerRegistry()

    def worker(n):
        for i in range(200):
            reg.upsert(str(i % 20), f"10.0.{n}.{i}")
            reg.get(str(i % 20))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(reg) == 20


# ---------------------------------------------------------------------------
# BindingConfigurator.updated
# ---------------------------------------------------------------------------

def test_updated_end_to_end_example():
    cfg = BindingConfigurator()
    cfg.updated({"1.host": "10.0.0.5:4304", "refresh": "30000", "retry": "2"})
    server = cfg.registry.get("1")
    assert (server.host, server.port) == ("10.0.0.5", 4304)
    assert cfg.settings.refresh_interval_ms == 30000
    assert cfg.settings.retry_count == 2
    assert cfg.settings.temperature_scale is TemperatureScale.CELSIUS
    assert cfg.properly_configured


def test_updated_defaults():
    cfg = BindingConfigurator()
    assert cfg.settings == GlobalSettings(60000, 3, TemperatureScale.CELSIUS)
    assert not cfg.properly_configured


def test_updated_none_is_noop():
    cfg = BindingConfigurator()
    cfg.updated(None)
    assert len(cfg.registry) == 0
    assert not cfg.properly_configured


def test_updated_many_hosts_any_order():
    entries = {f"{i}.host": f"10.0.0.{i}" for i in range(10, 0, -1)}
    entries["service.pid"] = "org.openhab.multionewire"
    cfg = BindingConfigurator()
    cfg.updated(entries)
    assert len(cfg.registry) == 10
    for i in range(1, 11):
        assert cfg.registry.get(str(i)).host == f"10.0.0.{i}"
        assert cfg.registry.get(str(i)).port == 4304


def test_updated_registers_dotted_server_id():
    cfg = BindingConfigurator()
    cfg.updated({"garage.east.host": "10.0.0.9:4304", "1.host": "10.0.0.1"})
    assert "garage.east" in cfg.registry
    assert cfg.registry.get("garage.east").host == "10.0.0.9"
    assert len(cfg.registry) == 2


def test_updated_is_additive():
    cfg = BindingConfigurator()
    cfg.updated({"1.host": "10.0.0.1"})
    cfg.updated({"2.host": "10.0.0.2"})
    assert cfg.registry.get("1") is not None
    assert cfg.registry.get("2") is not None


def test_updated_unknown_subkey_raises():
    cfg = BindingConfigurator()
    with pytest.raises(ConfigurationError, match="'port' is unknown") as exc:
        cfg.updated({"1.port": "4304"})
    assert exc.value.key == "1.port"


def test_updated_aborts_at_first_error_keeping_prior_keys():
    cfg = BindingConfigurator()
    with pytest.raises(ConfigurationError):
        cfg.updated({
            "1.host": "10.0.0.1",
            "tempscale": "PLANCK",
            "2.host": "10.0.0.2",
            "retry": "7",
        })
    assert cfg.registry.get("1") is not None
    assert cfg.registry.get("2") is None
    assert cfg.settings.retry_count == 3
    assert cfg.settings.temperature_scale is TemperatureScale.CELSIUS


def test_updated_bad_value_leaves_field_unmodified():
    cfg = BindingConfigurator()
    cfg.updated({"refresh": "1000"})
    with pytest.raises(ConfigurationError):
        cfg.updated({"refresh": "soon"})
    assert cfg.settings.refresh_interval_ms == 1000


# ---------------------------------------------------------------------------
# load_binding_config
# ---------------------------------------------------------------------------

def test_load_cfg_file():
    text = (
        "# owservers\n"
        "onewire:1.host=192.168.1.10:4304\n"
        "garage.host = 10.0.0.7\n"
        "\n"
        "onewire:refresh=30000\n"
        "this line is junk\n"
    )
    with tempfile.NamedTemporaryFile(mode="w", suffix=".cfg", delete=False) as f:
        f.write(text)
        path = f.name
    try:
        entries = load_binding_config(path)
    finally:
        os.unlink(path)
    assert entries == {
        "1.host": "192.168.1.10:4304",
        "garage.host": "10.0.0.7",
        "refresh": "30000",
    }


def test_load_json_file():
    with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
        json.dump({"1.host": "10.0.0.5", "retry": 4}, f)
        path = f.name
    try:
        entries = load_binding_config(path)
    finally:
        os.unlink(path)
    assert entries == {"1.host": "10.0.0.5", "retry": "4"}


def test_load_json_must_be_object():
    with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
        json.dump(["1.host"], f)
        path = f.name
    try:
        with pytest.raises(ConfigurationError):
            load_binding_config(path)
    finally:
        os.unlink(path)


def test_load_missing_file():
    assert load_binding_config("/nonexistent/onewire.cfg") == {}

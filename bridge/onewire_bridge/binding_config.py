# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Binding configuration — owserver registry and global refresh settings.

The binding is configured from a flat key/value map::

    1.host = 192.168.1.10:4304
    garage.host = 10.0.0.7
    refresh = 60000
    retry = 3
    tempscale = CELSIUS

Each key is classified by :func:`parse_config_key` (a pure function) and the
result is applied by :class:`BindingConfigurator`.  Keys are processed in map
order and the first invalid key aborts the update; keys applied before it
stay applied.
"""

import copy
import dataclasses
import enum
import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/data/onewire.cfg"
DEFAULT_OWSERVER_PORT = 4304
DEFAULT_REFRESH_INTERVAL_MS = 60000
DEFAULT_RETRY_COUNT = 3

# Framework keys that are always present in the map and never ours
RESERVED_KEYS = frozenset({"service.pid"})

# Optional prefix used in openHAB style .cfg files ("onewire:refresh=60000")
CFG_PREFIX = "onewire:"


class ConfigurationError(Exception):
    """Raised when a binding configuration key or value is invalid."""

    def __init__(self, key: str, message: str):
        super().__init__(message)
        self.key = key


class TemperatureScale(enum.Enum):
    CELSIUS = "CELSIUS"
    FAHRENHEIT = "FAHRENHEIT"
    KELVIN = "KELVIN"
    RANKINE = "RANKINE"


@dataclass
class ServerConfig:
    """Connection parameters for one owserver."""
    server_id: str
    host: str | None = None
    port: int = DEFAULT_OWSERVER_PORT
    last_update: float = 0              # wall clock of last successful read

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "host": self.host,
            "port": self.port,
            "last_update": self.last_update,
        }

    def __str__(self) -> str:
        return f"OwServer[{self.server_id} {self.host}:{self.port} last={self.last_update}]"


@dataclass(frozen=True)
class GlobalSettings:
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    retry_count: int = DEFAULT_RETRY_COUNT
    temperature_scale: TemperatureScale = TemperatureScale.CELSIUS

    def to_dict(self) -> dict:
        return {
            "refresh_interval_ms": self.refresh_interval_ms,
            "retry_count": self.retry_count,
            "temperature_scale": self.temperature_scale.value,
        }


# ---------------------------------------------------------------------------
# Key classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerHostEntry:
    server_id: str
    host: str | None
    port: int


@dataclass(frozen=True)
class GlobalSetting:
    name: str                           # GlobalSettings field name
    value: object


@dataclass(frozen=True)
class UnknownKey:
    key: str


@dataclass(frozen=True)
class IgnoredKey:
    key: str


ParsedKey = ServerHostEntry | GlobalSetting | UnknownKey | IgnoredKey


def _positive_int(key: str, raw: str) -> int:
    try:
        val = int(raw.strip())
    except (ValueError, TypeError):
        raise ConfigurationError(key, f"{key}={raw!r} is not a valid integer")
    if val < 1:
        raise ConfigurationError(key, f"{key}={val} must be a positive integer")
    return val


def _temperature_scale(key: str, raw: str) -> TemperatureScale:
    try:
        return TemperatureScale[raw.strip()]
    except KeyError:
        allowed = ", ".join(s.value for s in TemperatureScale)
        raise ConfigurationError(
            key, f"Unknown temperature scale {raw!r}. Valid values are {allowed}"
        )


def _host_entry(key: str, server_id: str, value: str) -> ServerHostEntry:
    host, sep, port_str = value.strip().partition(":")
    if not server_id:
        raise ConfigurationError(key, f"{key!r} has an empty server id")
    port = DEFAULT_OWSERVER_PORT
    if sep:
        try:
            port = int(port_str)
        except ValueError:
            raise ConfigurationError(
                key, f"{key}={value!r} has an invalid port {port_str!r}"
            )
    return ServerHostEntry(server_id=server_id, host=host or None, port=port)


# Global keys -> (GlobalSettings field, value parser)
GLOBAL_KEYS = {
    "refresh": ("refresh_interval_ms", _positive_int),
    "retry": ("retry_count", _positive_int),
    "tempscale": ("temperature_scale", _temperature_scale),
}


def parse_config_key(key: str, value) -> ParsedKey:
    """Classify one configuration entry.

    Raises ConfigurationError when the key is recognised but its value is
    malformed.  Unknown per-server keys are returned as UnknownKey so the
    caller decides how to report them.
    """
    if key in RESERVED_KEYS:
        return IgnoredKey(key)

    if key in GLOBAL_KEYS:
        if value is None or not str(value).strip():
            return IgnoredKey(key)
        name, parser = GLOBAL_KEYS[key]
        return GlobalSetting(name, parser(key, str(value)))

    # Server ids may themselves contain dots ("garage.east.host")
    server_id, sep, field = key.rpartition(".")
    if sep and field == "host":
        return _host_entry(key, server_id, str(value or ""))
    if key.count(".") == 1 and server_id:
        return UnknownKey(key)

    return IgnoredKey(key)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ServerRegistry:
    """Thread-safe map of server id -> ServerConfig.

    Entries are only ever added or overwritten.  :meth:`get` hands out copies
    so callers never observe an entry mid-update.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._servers: dict[str, ServerConfig] = {}

    def upsert(self, server_id: str, host: str | None,
               port: int = DEFAULT_OWSERVER_PORT) -> ServerConfig:
        with self._lock:
            server = self._servers.get(server_id)
            if server is None:
                server = ServerConfig(server_id=server_id)
                self._servers[server_id] = server
            server.host = host
            server.port = port
            return copy.copy(server)

    def get(self, server_id) -> ServerConfig | None:
        with self._lock:
            server = self._servers.get(str(server_id))
            return copy.copy(server) if server else None

    def touch(self, server_id: str, when: float | None = None):
        """Record a successful read from *server_id*."""
        with self._lock:
            server = self._servers.get(str(server_id))
            if server is not None:
                server.last_update = when if when is not None else time.time()

    def snapshot(self) -> list[ServerConfig]:
        with self._lock:
            return [copy.copy(s) for s in self._servers.values()]

    def __contains__(self, server_id) -> bool:
        with self._lock:
            return str(server_id) in self._servers

    def __len__(self) -> int:
        with self._lock:
            return len(self._servers)


# ---------------------------------------------------------------------------
# Configurator
# ---------------------------------------------------------------------------

class BindingConfigurator:
    """Applies flat configuration maps to the registry and global settings."""

    def __init__(self, registry: ServerRegistry | None = None):
        self.registry = registry if registry is not None else ServerRegistry()
        self._lock = threading.RLock()
        self._settings = GlobalSettings()
        self._configured = False

    @property
    def settings(self) -> GlobalSettings:
        with self._lock:
            return self._settings

    @property
    def properly_configured(self) -> bool:
        return self._configured

    def updated(self, config: dict | None):
        """Apply a configuration map.

        Raises ConfigurationError on the first bad key.  Entries processed
        before that key remain applied.
        """
        if config is None:
            return

        with self._lock:
            for key, value in config.items():
                parsed = parse_config_key(key, value)

                if isinstance(parsed, ServerHostEntry):
                    self.registry.upsert(parsed.server_id, parsed.host, parsed.port)
                    logger.debug("Added owserver %s -> %s:%d",
                                 parsed.server_id, parsed.host, parsed.port)
                elif isinstance(parsed, GlobalSetting):
                    self._settings = dataclasses.replace(
                        self._settings, **{parsed.name: parsed.value}
                    )
                elif isinstance(parsed, UnknownKey):
                    field = key.rsplit(".", 1)[-1]
                    raise ConfigurationError(
                        key, f"The given owserver config key {field!r} is unknown ({key})"
                    )
                else:
                    logger.debug("Ignoring config key %s", key)

            self._configured = True

        logger.info(
            "Binding config: %d server(s) refresh=%dms retry=%d tempscale=%s",
            len(self.registry), self._settings.refresh_interval_ms,
            self._settings.retry_count, self._settings.temperature_scale.value,
        )


def _parse_cfg_text(text: str) -> dict[str, str]:
    entries: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            logger.warning("Skipping malformed config line: %r", line)
            continue
        key = key.strip()
        if key.startswith(CFG_PREFIX):
            key = key[len(CFG_PREFIX):]
        entries[key] = value.strip()
    return entries


def load_binding_config(path: str = DEFAULT_CONFIG_FILE) -> dict[str, str]:
    """Load the flat key map from a JSON object or a ``key=value`` file.

    A missing file yields an empty map.
    """
    p = Path(path)
    if not p.exists():
        logger.warning("Binding config %s not found, using defaults", p)
        return {}

    text = p.read_text()
    if p.suffix == ".json":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ConfigurationError(str(p), f"{p} must contain a JSON object")
        return {str(k): "" if v is None else str(v) for k, v in data.items()}
    return _parse_cfg_text(text)

# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Items, item states and sensor bindings.

An item binds to a sensor with a ``sensor#unit#server`` string, e.g.
``26.AF9C32000000#temperature#1`` reads ``26.AF9C32000000/temperature`` from
owserver ``1``.  The ItemRegistry answers address lookups for the refresh
loop and command dispatcher, and owns each item's last known state.
"""

import asyncio
import enum
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_ITEMS_FILE = "/data/items.json"


class BindingConfigError(ValueError):
    """Raised when an item binding or the items file is invalid."""


class ConversionError(ValueError):
    """Raised when a raw bus value cannot be converted for an item."""


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

class UnDefType(enum.Enum):
    UNDEF = "UNDEF"

    def __str__(self) -> str:
        return self.value


UNDEF = UnDefType.UNDEF


class OpenClosed(enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"

    def __str__(self) -> str:
        return self.value


class OnOff(enum.Enum):
    ON = "ON"
    OFF = "OFF"

    def __str__(self) -> str:
        return self.value


State = UnDefType | OpenClosed | OnOff | float


class ItemType(enum.Enum):
    CONTACT = "Contact"
    SWITCH = "Switch"
    NUMBER = "Number"
    UNSUPPORTED = "Unsupported"

    @classmethod
    def from_name(cls, name: str) -> "ItemType":
        for t in cls:
            if t is not cls.UNSUPPORTED and t.value.lower() == str(name).lower():
                return t
        return cls.UNSUPPORTED


def convert_reading(item_name: str, item_type: ItemType, raw: str) -> State:
    """Convert a raw owserver value into the item's state type."""
    match item_type:
        case ItemType.CONTACT:
            return OpenClosed.CLOSED if raw.strip() == "1" else OpenClosed.OPEN
        case ItemType.SWITCH:
            return OnOff.ON if raw.strip() == "1" else OnOff.OFF
        case ItemType.NUMBER:
            try:
                value = float(raw) if "_" not in raw else math.nan
            except ValueError:
                value = math.nan
            # Only finite decimal readings are valid states
            if not math.isfinite(value):
                raise ConversionError(f"{item_name}: {raw!r} is not a valid number")
            return value
        case _:
            raise ConversionError(f"The item with name {item_name} is not a valid type")


def command_to_wire(command) -> str:
    """Render a command for owserver: ON/OFF as 1/0, anything else as text."""
    if command is OnOff.ON:
        return "1"
    if command is OnOff.OFF:
        return "0"
    return str(command)


def parse_command(payload: str):
    """Parse a textual command (MQTT payload / REST body)."""
    text = payload.strip()
    upper = text.upper()
    if upper in OnOff.__members__:
        return OnOff[upper]
    return text


def format_state(state: State) -> str:
    if isinstance(state, float):
        return repr(state)
    return str(state)


# ---------------------------------------------------------------------------
# Items and bindings
# ---------------------------------------------------------------------------

@dataclass
class SensorBinding:
    sensor_id: str
    unit_id: str
    server_id: str

    def __str__(self) -> str:
        return f"{self.sensor_id}#{self.unit_id}#{self.server_id}"


@dataclass
class SensorAddress:
    sensor_id: str | None
    unit_id: str | None
    server_id: str | None

    @property
    def complete(self) -> bool:
        return bool(self.sensor_id and self.unit_id and self.server_id is not None)

    @property
    def sensor_path(self) -> str:
        return f"/{self.sensor_id}"

    @property
    def value_path(self) -> str:
        return f"{self.sensor_id}/{self.unit_id}"


@dataclass
class Item:
    name: str
    item_type: ItemType
    state: State = UNDEF
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


def parse_binding(binding: str) -> SensorBinding:
    parts = binding.strip().split("#")
    if len(parts) != 3:
        raise BindingConfigError(
            f"OneWire sensor binding {binding!r} must consist of three parts "
            "separated by '#'"
        )
    sensor_id, unit_id, server_id = (p.strip() for p in parts)
    if not sensor_id or not unit_id or not server_id:
        raise BindingConfigError(f"OneWire sensor binding {binding!r} has an empty part")
    return SensorBinding(sensor_id, unit_id, server_id)


class ItemRegistry:
    """Item bindings and last known states; the sensor address resolver."""

    def __init__(self):
        self._items: dict[str, Item] = {}
        self._bindings: dict[str, SensorBinding] = {}

    def add_item(self, name: str, item_type: str | ItemType, binding: str) -> Item:
        """Register an item and its binding string.

        Only Number, Contact and Switch items can be bound.
        """
        if not isinstance(item_type, ItemType):
            item_type = ItemType.from_name(item_type)
        if item_type is ItemType.UNSUPPORTED:
            raise BindingConfigError(
                f"item {name!r} is of an unsupported type, only Number, Contact "
                "and Switch items are allowed"
            )
        self._bindings[name] = parse_binding(binding)
        item = Item(name=name, item_type=item_type)
        self._items[name] = item
        return item

    # -- resolver interface -------------------------------------------------

    def item_names(self) -> list[str]:
        return list(self._bindings)

    def get_item(self, name: str) -> Item | None:
        return self._items.get(name)

    def get_sensor_id(self, name: str) -> str | None:
        b = self._bindings.get(name)
        return b.sensor_id if b else None

    def get_unit_id(self, name: str) -> str | None:
        b = self._bindings.get(name)
        return b.unit_id if b else None

    def get_server_id(self, name: str) -> str | None:
        b = self._bindings.get(name)
        return b.server_id if b else None

    def resolve(self, name: str) -> SensorAddress:
        return SensorAddress(
            sensor_id=self.get_sensor_id(name),
            unit_id=self.get_unit_id(name),
            server_id=self.get_server_id(name),
        )

    def to_list(self) -> list[dict]:
        out = []
        for name, item in self._items.items():
            out.append({
                "name": name,
                "type": item.item_type.value,
                "binding": str(self._bindings[name]),
                "state": format_state(item.state),
            })
        return out

    def __len__(self) -> int:
        return len(self._bindings)


def load_items(path: str = DEFAULT_ITEMS_FILE) -> ItemRegistry:
    """Load item bindings from a JSON file.

    Format: ``{"items": [{"name": ..., "type": ..., "binding": ...}]}``.
    A missing file yields an empty registry.
    """
    registry = ItemRegistry()
    p = Path(path)
    if not p.exists():
        logger.warning("Items file %s not found, no items bound", p)
        return registry

    try:
        data = json.loads(p.read_text())
    except json.JSONDecodeError as e:
        raise BindingConfigError(f"{p} is not valid JSON: {e}") from e

    for entry in data.get("items", []):
        try:
            registry.add_item(entry["name"], entry.get("type", ""), entry["binding"])
        except KeyError as e:
            raise BindingConfigError(f"{p}: item entry missing {e}") from None
    logger.info("Loaded %d item binding(s) from %s", len(registry), p)
    return registry

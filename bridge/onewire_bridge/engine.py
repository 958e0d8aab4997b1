# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Refresh service — polls every bound sensor and publishes changed states.

One cycle walks all items of all providers sequentially.  Per item:

    resolve address -> connect -> exists? -> read (up to retry_count)
        -> convert -> compare with last state -> publish on change

Every failure is isolated to its item: the item keeps its last known state
and the cycle moves on to the next item.
"""

import asyncio
import logging
import time
from typing import Iterable

from .binding_config import BindingConfigurator
from .items import (
    UNDEF,
    ConversionError,
    Item,
    ItemRegistry,
    SensorAddress,
    State,
    convert_reading,
)
from .owserver import (
    BusConnectionError,
    BusProtocolError,
    ConnectFactory,
    ServerNotFoundError,
    connect,
    open_server_connection,
)

logger = logging.getLogger(__name__)


class RefreshService:
    """Timer-driven poll loop over all bound OneWire items."""

    def __init__(
        self,
        configurator: BindingConfigurator,
        providers: Iterable[ItemRegistry],
        publisher,
        connect_factory: ConnectFactory = connect,
    ):
        self.configurator = configurator
        self.providers = list(providers)
        self.publisher = publisher          # anything with post_update(name, state)
        self._connect = connect_factory
        self._running = False

        # Cycle health tracking
        self._cycle_count = 0
        self._publish_count = 0
        self._last_cycle_duration: float | None = None
        self._last_cycle_time: float | None = None
        self._errors: dict[str, int] = {
            "address": 0, "server": 0, "connection": 0,
            "protocol": 0, "conversion": 0, "unexpected": 0,
        }
        self._item_failures: dict[str, int] = {}

    @property
    def name(self) -> str:
        return "OneWire Refresh Service"

    @property
    def refresh_interval(self) -> float:
        """Current refresh interval in seconds."""
        return self.configurator.settings.refresh_interval_ms / 1000.0

    # -- Poll loop --------------------------------------------------------

    async def run(self):
        """Execute refresh cycles until :meth:`stop` is called.

        The interval is re-read after every cycle so configuration updates
        take effect on the next tick.  Cycles never overlap.
        """
        self._running = True
        logger.info("%s started (interval %.1fs)", self.name, self.refresh_interval)
        while self._running:
            try:
                await self.execute()
            except Exception:
                logger.exception("Error in refresh cycle %d", self._cycle_count)
            await asyncio.sleep(self.refresh_interval)

    def stop(self):
        self._running = False

    async def execute(self):
        """Run one refresh cycle over every bound item."""
        start = time.monotonic()
        published = 0
        for provider in self.providers:
            for item_name in provider.item_names():
                try:
                    if await self.refresh_item(provider, item_name):
                        published += 1
                except Exception:
                    self._record_failure(item_name, "unexpected")
                    logger.exception("[%s] Unexpected error while refreshing", item_name)

        self._cycle_count += 1
        self._publish_count += published
        self._last_cycle_duration = time.monotonic() - start
        self._last_cycle_time = time.time()
        logger.debug("Refresh cycle #%d done: %d update(s) in %.0fms",
                     self._cycle_count, published, self._last_cycle_duration * 1000)

    async def refresh_item(self, provider: ItemRegistry, item_name: str) -> bool:
        """Poll one item.  Returns True if a state update was published."""
        address = provider.resolve(item_name)
        if not address.complete:
            self._record_failure(item_name, "address")
            logger.warning(
                "sensorId, unitId or serverId isn't configured properly for %s "
                "[sensorId=%s, unitId=%s, serverId=%s] => querying bus aborted",
                item_name, address.sensor_id, address.unit_id, address.server_id,
            )
            return False

        item = provider.get_item(item_name)
        if item is None:
            logger.debug("[%s] No item registered, skipping", item_name)
            return False

        async with item.lock:
            try:
                value = await self._read_value(item, address)
            except ServerNotFoundError as e:
                self._record_failure(item_name, "server", str(e))
                return False
            except BusConnectionError as e:
                self._record_failure(
                    item_name, "connection",
                    f"couldn't establish network connection while reading "
                    f"{address.sensor_id}: {e}",
                )
                return False
            except BusProtocolError as e:
                self._record_failure(
                    item_name, "protocol", f"couldn't read from path {address.sensor_id}: {e}",
                )
                return False
            except ConversionError as e:
                self._record_failure(item_name, "conversion", str(e))
                return False

            if value is None:
                return False

            self._item_failures.pop(item_name, None)
            if item.state != value:
                # State only advances once the update went out
                self.publisher.post_update(item_name, value)
                item.state = value
                return True
            return False

    async def _read_value(self, item: Item, address: SensorAddress) -> State | None:
        """Read and convert the item's sensor value.

        Returns None when the sensor could not be queried at all (no
        connection, sensor missing on the bus), UNDEF when every attempt
        returned nothing.
        """
        settings = self.configurator.settings
        registry = self.configurator.registry

        conn = await open_server_connection(
            registry, address.server_id, settings.temperature_scale, self._connect,
        )
        if conn is None:
            logger.warning("[%s] No connection to owserver %s", item.name, address.server_id)
            return None

        try:
            if not await conn.exists(address.sensor_path):
                logger.info("There is no sensor for path %s", address.sensor_path)
                return None

            value: State = UNDEF
            attempt = 1
            while value is UNDEF and attempt <= settings.retry_count:
                raw = await conn.read(address.value_path)
                logger.debug("%s: read %r from %s at server %s, attempt=%d",
                             item.name, raw, address.value_path, address.server_id, attempt)
                if raw is not None:
                    value = convert_reading(item.name, item.item_type, raw)
                    registry.touch(address.server_id)
                attempt += 1
            return value
        finally:
            await conn.disconnect()

    # -- Health -----------------------------------------------------------

    def _record_failure(self, item_name: str, kind: str, msg: str | None = None):
        self._errors[kind] += 1
        if msg is None:
            return
        count = self._item_failures.get(item_name, 0) + 1
        self._item_failures[item_name] = count
        # First few failures per item, then every 30th
        if count <= 3 or count % 30 == 0:
            if kind in ("connection", "server"):
                logger.error("[%s] %s (failure %d)", item_name, msg, count)
            else:
                logger.warning("[%s] %s (failure %d)", item_name, msg, count)

    def get_status_detail(self) -> dict:
        now = time.time()
        return {
            "name": self.name,
            "running": self._running,
            "cycle_count": self._cycle_count,
            "publish_count": self._publish_count,
            "refresh_interval_s": self.refresh_interval,
            "last_cycle_duration_ms": (
                round(self._last_cycle_duration * 1000, 1)
                if self._last_cycle_duration is not None else None
            ),
            "last_cycle": self._last_cycle_time,
            "seconds_since_last_cycle": (
                round(now - self._last_cycle_time, 1) if self._last_cycle_time else None
            ),
            "errors": dict(self._errors),
            "failing_items": sorted(self._item_failures),
        }

# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Outbound write commands for writable sensors (PIO switches etc.)."""

import contextlib
import logging
from typing import Iterable

from .binding_config import BindingConfigurator
from .items import ItemRegistry, command_to_wire
from .owserver import (
    BusConnectionError,
    BusProtocolError,
    ConnectFactory,
    ServerNotFoundError,
    connect,
    open_server_connection,
)

logger = logging.getLogger(__name__)


class CommandDispatcher:
    def __init__(
        self,
        configurator: BindingConfigurator,
        providers: Iterable[ItemRegistry],
        connect_factory: ConnectFactory = connect,
    ):
        self.configurator = configurator
        self.providers = list(providers)
        self._connect = connect_factory
        self._total_commands = 0
        self._failed_writes = 0

    async def receive_command(self, item_name: str, command) -> bool:
        """Write *command* to every sensor bound to *item_name*.

        Failures are logged per binding and never raised.  Returns True if at
        least one write went through.
        """
        logger.debug("Working on item %s", item_name)
        self._total_commands += 1
        value = command_to_wire(command)
        written = False

        for provider in self.providers:
            address = provider.resolve(item_name)
            if not address.complete:
                continue

            item = provider.get_item(item_name)
            # Hold the item lock so the write never interleaves with that
            # item's read-compare-publish in the refresh loop.
            lock = item.lock if item is not None else contextlib.nullcontext()
            async with lock:
                try:
                    written |= await self._write(item_name, address, value)
                except ServerNotFoundError as e:
                    self._failed_writes += 1
                    logger.error("[%s] %s", item_name, e)
                except BusConnectionError as e:
                    self._failed_writes += 1
                    logger.error(
                        "Couldn't establish network connection while writing to %s: %s",
                        address.sensor_id, e,
                    )
                except BusProtocolError as e:
                    self._failed_writes += 1
                    logger.warning("Couldn't write to path %s", address.sensor_id)
                    logger.debug("Writing to path %s raised", address.sensor_id, exc_info=e)

        return written

    async def _write(self, item_name: str, address, value: str) -> bool:
        settings = self.configurator.settings
        conn = await open_server_connection(
            self.configurator.registry, address.server_id,
            settings.temperature_scale, self._connect,
        )
        if conn is None:
            logger.warning("[%s] No connection to owserver %s, write skipped",
                           item_name, address.server_id)
            return False

        try:
            if not await conn.exists(address.sensor_path):
                logger.info("There is no sensor for path %s", address.sensor_path)
                return False
            logger.debug("%s: writing value %r to %s", item_name, value, address.value_path)
            await conn.write(address.value_path, value)
            return True
        finally:
            await conn.disconnect()

    def get_status(self) -> dict:
        return {
            "total_commands": self._total_commands,
            "failed_writes": self._failed_writes,
        }

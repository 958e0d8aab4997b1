# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Entry point -- owserver->MQTT bridge.

Architecture
------------
BridgeManager     -- loads binding config and item bindings, wires MQTT, the
                     REST API, the refresh service and the command dispatcher.
RefreshService    -- polls every bound sensor on the refresh interval.
CommandDispatcher -- writes inbound commands to writable sensors.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys

from .binding_config import BindingConfigurator, ConfigurationError, load_binding_config
from .commands import CommandDispatcher
from .config import Config, ConfigError
from .engine import RefreshService
from .items import BindingConfigError, load_items
from .mock_owserver import MockBus
from .mqtt_handler import MQTTHandler
from .owserver import connect
from .web import RingBufferHandler, WebServer

logger = logging.getLogger("onewire_bridge")

MOCK_ITEMS = [
    ("Temp_Hall", "Number", "10.67C6697351FF#temperature#1"),
    ("Temp_Cellar", "Number", "26.AF9C32000000#temperature#1"),
    ("Humidity_Cellar", "Number", "26.AF9C32000000#humidity#1"),
    ("Pump", "Switch", "12.4AEC29CDBAAB#PIO.A#1"),
    ("Pump_Sensed", "Contact", "12.4AEC29CDBAAB#sensed.A#1"),
]


class BridgeManager:
    """Top-level orchestrator."""

    def __init__(self, config: Config | None = None):
        self.config = config or Config()
        self._running = False
        self._engine_task: asyncio.Task | None = None

        self.configurator = BindingConfigurator()
        self.configurator.updated(load_binding_config(self.config.config_file))
        self.items = load_items(self.config.items_file)

        if self.config.mock_mode:
            logger.info("Mock mode — using simulated owserver bus")
            self.mock_bus = MockBus()
            connect_factory = self.mock_bus.connect
            self._apply_mock_defaults()
        else:
            self.mock_bus = None
            connect_factory = connect

        self.mqtt = MQTTHandler(self.config)
        self.engine = RefreshService(
            self.configurator, [self.items], self.mqtt, connect_factory,
        )
        self.dispatcher = CommandDispatcher(
            self.configurator, [self.items], connect_factory,
        )
        self.mqtt.set_command_callback(self.dispatcher.receive_command)
        self.web = WebServer(
            self.config.web_port,
            configurator=self.configurator,
            items=self.items,
            engine=self.engine,
            dispatcher=self.dispatcher,
            mqtt=self.mqtt,
        )

        logger.info("Bridge configured: %d server(s), %d item(s)",
                    len(self.configurator.registry), len(self.items))

    def _apply_mock_defaults(self):
        if "1" not in self.configurator.registry:
            self.configurator.registry.upsert("1", "127.0.0.1")
        if not len(self.items):
            for name, item_type, binding in MOCK_ITEMS:
                self.items.add_item(name, item_type, binding)

    async def run(self):
        """Start MQTT, the REST API and the refresh service."""
        self._running = True
        self.mqtt.connect()
        await self.web.start()

        self._engine_task = asyncio.get_event_loop().create_task(
            self.engine.run(), name="refresh-service",
        )
        await asyncio.gather(self._engine_task, return_exceptions=True)

    async def _async_stop(self):
        await self.web.stop()

    def stop(self):
        if not self._running:
            return
        self._running = False

        self.engine.stop()
        if self._engine_task and not self._engine_task.done():
            self._engine_task.cancel()

        try:
            loop = asyncio.get_event_loop()
            if loop.is_running():
                loop.create_task(self._async_stop())
            else:
                loop.run_until_complete(self._async_stop())
        except Exception:
            logger.debug("Error stopping REST API", exc_info=True)

        self.mqtt.disconnect()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # Set up ring buffer for the REST log viewer
    log_buffer = RingBufferHandler(1000)
    log_buffer.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(log_buffer)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        manager = BridgeManager(config)
    except (ConfigurationError, BindingConfigError) as e:
        print(f"Binding configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    manager.web.set_log_buffer(log_buffer)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        manager.stop()
        loop.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    except RuntimeError:
        # loop.stop() from the signal handler interrupts run_until_complete
        logger.debug("Event loop stopped")
    finally:
        manager.stop()
        loop.close()
        logger.info("Bridge stopped.")


if __name__ == "__main__":
    main()

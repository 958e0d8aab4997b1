# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""MQTT pub/sub handler — the event bus for item states and commands.

Topics (``{prefix}`` is ``onewire/{bridge_id}``)::

    {prefix}/bridge/status                   online / offline (retained, LWT)
    {prefix}/item/{name}/state               item state (retained)
    {prefix}/item/{name}/command             inbound commands
    {prefix}/item/{name}/command/response    command result JSON
"""

import asyncio
import json
import logging
import time
from typing import Callable, Awaitable

import paho.mqtt.client as mqtt

from .config import Config
from .items import State, format_state, parse_command

logger = logging.getLogger(__name__)

CommandCallback = Callable[[str, object], Awaitable[bool]]


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.prefix = f"onewire/{config.bridge_id}"
        self._command_callback: CommandCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._commands_received: int = 0

        # Pending publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=f"onewire-bridge-{config.bridge_id}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(
            f"{self.prefix}/bridge/status", "offline", qos=1, retain=True
        )
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    def set_command_callback(self, callback: CommandCallback):
        """Set the coroutine invoked as ``callback(item_name, command)``."""
        self._command_callback = callback

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        self._loop = asyncio.get_event_loop()

        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(f"{self.prefix}/bridge/status", "online", qos=1, retain=True)

        topic = f"{self.prefix}/item/+/command"
        client.subscribe(topic, qos=1)
        logger.info("Subscribed to %s", topic)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropping pending publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "commands_received": self._commands_received,
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues retained messages on failure."""
        self._total_publishes += 1

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                if retain and len(self._pending_publishes) < self._max_pending:
                    self._pending_publishes.append((topic, str(payload), retain, qos))
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            if retain and len(self._pending_publishes) < self._max_pending:
                self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Incoming commands
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        """Route ``{prefix}/item/{name}/command`` onto the event loop."""
        try:
            head = f"{self.prefix}/item/"
            if not (msg.topic.startswith(head) and msg.topic.endswith("/command")):
                return
            item_name = msg.topic[len(head):-len("/command")]
            if not item_name or "/" in item_name:
                return
            command = parse_command(msg.payload.decode("utf-8"))
            self._commands_received += 1
            logger.info("Command received: item=%s -> %s", item_name, command)

            if not self._loop:
                logger.warning("Event loop not set — cannot dispatch command")
                return
            if not self._command_callback:
                logger.warning("No command handler registered, dropping command for %s", item_name)
                return

            asyncio.run_coroutine_threadsafe(
                self._dispatch(item_name, command), self._loop
            )
        except Exception:
            logger.exception("Error handling MQTT message on %s", msg.topic)

    async def _dispatch(self, item_name: str, command):
        try:
            ok = await self._command_callback(item_name, command)
            error = None if ok else "write failed"
        except Exception as e:
            logger.exception("Command handler failed for %s", item_name)
            ok, error = False, str(e)
        self.publish_command_response(item_name, str(command), ok, error)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def post_update(self, item_name: str, state: State):
        """Publish a changed item state (retained)."""
        self._publish(
            f"{self.prefix}/item/{item_name}/state", format_state(state), retain=True,
        )

    def publish_command_response(self, item_name: str, command: str, success: bool,
                                 error: str | None = None):
        resp = {
            "success": success,
            "command": command,
            "item": item_name,
            "error": error,
            "ts": time.time(),
        }
        self._publish(
            f"{self.prefix}/item/{item_name}/command/response",
            json.dumps(resp),
            qos=1,
        )

    def disconnect(self):
        """Publish offline status and disconnect."""
        self._publish(f"{self.prefix}/bridge/status", "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)

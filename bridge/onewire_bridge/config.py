# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Process configuration from environment variables with validation.

Binding settings (owservers, refresh, retry, tempscale) live in the binding
config file named by BRIDGE_CONFIG_FILE; see binding_config.py.
"""

import logging
import os

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        self.bridge_id = os.environ.get("BRIDGE_ID", "onewire")

        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")

        self.config_file = os.environ.get("BRIDGE_CONFIG_FILE", "/data/onewire.cfg")
        self.items_file = os.environ.get("BRIDGE_ITEMS_FILE", "/data/items.json")

        self.mock_mode = os.environ.get("BRIDGE_MOCK_MODE", "false").lower() in ("true", "1", "yes")
        self.log_level = os.environ.get("BRIDGE_LOG_LEVEL", "INFO").upper()
        self.web_port = self._int("BRIDGE_WEB_PORT", "8080", 1, 65535)

        if any(c in self.bridge_id for c in "/#+ "):
            raise ConfigError(
                f"BRIDGE_ID contains invalid characters: {self.bridge_id!r}"
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"BRIDGE_LOG_LEVEL={self.log_level!r} is not a log level")

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    def _log_config(self):
        logger.info(
            "Config: bridge=%s mock=%s mqtt=%s:%d config=%s items=%s web=%d",
            self.bridge_id, self.mock_mode, self.mqtt_broker, self.mqtt_port,
            self.config_file, self.items_file, self.web_port,
        )

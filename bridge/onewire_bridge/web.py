# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""REST API — health, item states, commands and live binding config updates."""

import collections
import json
import logging
import time

from aiohttp import web

from .binding_config import BindingConfigurator, ConfigurationError
from .commands import CommandDispatcher
from .engine import RefreshService
from .items import ItemRegistry, parse_command

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# RingBufferHandler: in-memory log capture for the web viewer
# ---------------------------------------------------------------------------

class RingBufferHandler(logging.Handler):
    """Logging handler that stores records in a bounded deque for web access."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self._records: collections.deque = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self._records.append({
                "ts": record.created,
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)

    def get_records(self, level: str | None = None, limit: int = 200,
                    search: str | None = None) -> list[dict]:
        """Return filtered log records, newest first."""
        level_num = getattr(logging, level.upper(), 0) if level else 0
        results = []
        for rec in reversed(self._records):
            if level_num and getattr(logging, rec["level"], 0) < level_num:
                continue
            if search and search.lower() not in rec["message"].lower():
                continue
            results.append(rec)
            if len(results) >= limit:
                break
        return results


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


class WebServer:
    def __init__(self, port: int = 8080, *,
                 configurator: BindingConfigurator,
                 items: ItemRegistry,
                 engine: RefreshService | None = None,
                 dispatcher: CommandDispatcher | None = None,
                 mqtt=None):
        self._port = port
        self._configurator = configurator
        self._items = items
        self._engine = engine
        self._dispatcher = dispatcher
        self._mqtt = mqtt
        self._log_buffer: RingBufferHandler | None = None
        self._start_time = time.time()

        self._app = web.Application(middlewares=[cors_middleware])
        self._runner: web.AppRunner | None = None
        self._setup_routes()

    def set_log_buffer(self, handler: RingBufferHandler):
        self._log_buffer = handler

    def _setup_routes(self):
        self._app.router.add_get("/api/health", self._handle_health)
        self._app.router.add_get("/api/status", self._handle_status)
        self._app.router.add_get("/api/items", self._handle_list_items)
        self._app.router.add_post("/api/items/{name}/command", self._handle_item_command)
        self._app.router.add_get("/api/config", self._handle_get_config)
        self._app.router.add_post("/api/config", self._handle_update_config)
        self._app.router.add_get("/api/system/logs", self._handle_system_logs)

    def _json(self, data, status=200):
        return web.Response(
            text=json.dumps(data),
            content_type="application/json",
            status=status,
        )

    def _config_dict(self) -> dict:
        return {
            "settings": self._configurator.settings.to_dict(),
            "servers": [s.to_dict() for s in self._configurator.registry.snapshot()],
        }

    # --- Health / status ---

    async def _handle_health(self, request):
        """Health check endpoint for Docker HEALTHCHECK and monitoring."""
        issues = []
        engine = self._engine.get_status_detail() if self._engine else None

        if engine is None:
            issues.append("Refresh service not running")
        elif engine["last_cycle"] is None:
            issues.append("No refresh cycle completed yet")
        else:
            # Allow up to three missed ticks before reporting stale data
            max_age = 3 * self._configurator.settings.refresh_interval_ms / 1000.0
            if engine["seconds_since_last_cycle"] > max_age:
                issues.append(
                    f"Last refresh cycle {engine['seconds_since_last_cycle']:.0f}s ago"
                )

        mqtt_status = self._mqtt.get_status() if self._mqtt else {"status": "unavailable"}
        if self._mqtt and not mqtt_status.get("connected"):
            issues.append("MQTT disconnected")

        healthy = not issues
        result = {
            "status": "healthy" if healthy else "degraded",
            "issues": issues,
            "item_count": len(self._items),
            "server_count": len(self._configurator.registry),
            "subsystems": {"mqtt": mqtt_status},
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
        return self._json(result, 200 if healthy else 503)

    async def _handle_status(self, request):
        result = self._config_dict()
        result["engine"] = self._engine.get_status_detail() if self._engine else None
        result["commands"] = self._dispatcher.get_status() if self._dispatcher else None
        result["mqtt"] = self._mqtt.get_status() if self._mqtt else None
        return self._json(result)

    # --- Items ---

    async def _handle_list_items(self, request):
        items = self._items.to_list()
        return self._json({"items": items, "count": len(items)})

    async def _handle_item_command(self, request):
        name = request.match_info["name"]
        if self._items.get_item(name) is None:
            return self._json({"error": f"unknown item: {name}"}, 404)
        try:
            body = await request.json()
            raw = str(body["command"])
        except Exception:
            return self._json({"error": "invalid JSON body, expected {\"command\": ...}"}, 400)

        if not self._dispatcher:
            return self._json({"error": "command handler not available"}, 503)

        command = parse_command(raw)
        ok = await self._dispatcher.receive_command(name, command)
        return self._json({"item": name, "command": str(command), "ok": ok},
                          200 if ok else 502)

    # --- Binding config ---

    async def _handle_get_config(self, request):
        return self._json(self._config_dict())

    async def _handle_update_config(self, request):
        """POST /api/config — apply a flat key map to the binding config."""
        try:
            body = await request.json()
        except Exception:
            return self._json({"error": "invalid JSON body"}, 400)
        if not isinstance(body, dict):
            return self._json({"error": "expected a JSON object of config keys"}, 400)

        try:
            # JSON null counts as a blank value
            entries = {str(k): "" if v is None else str(v) for k, v in body.items()}
            self._configurator.updated(entries)
        except ConfigurationError as e:
            logger.warning("Rejected binding config update at %s: %s", e.key, e)
            return self._json({"error": str(e), "key": e.key}, 400)
        return self._json(self._config_dict())

    # --- System ---

    async def _handle_system_logs(self, request):
        """GET /api/system/logs — retrieve log records from ring buffer."""
        if not self._log_buffer:
            return self._json({"error": "log buffer not available"}, 503)

        level = request.query.get("level")
        try:
            limit = min(int(request.query.get("limit", "200")), 1000)
        except ValueError:
            return self._json({"error": "invalid limit"}, 400)
        search = request.query.get("search")

        records = self._log_buffer.get_records(level=level, limit=limit, search=search)
        return self._json({"logs": records, "count": len(records)})

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        logger.info("REST API started on http://0.0.0.0:%d", self._port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()

# OneWire Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""owserver connections for the refresh loop and command writes.

Defines the BusConnection interface that the pyownet-backed
OwServerConnection and the MockOwServer both implement.  A connection is
opened for a single read or write cycle and always released afterwards;
connections are never cached across polls.

pyownet is a blocking client, so the async methods run each request in the
loop's default executor.
"""

import asyncio
import functools
import logging
from typing import Callable, Awaitable, Protocol, runtime_checkable

from pyownet import protocol

from .binding_config import ServerConfig, ServerRegistry, TemperatureScale

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 5.0                   # seconds

TEMPERATURE_FLAGS = {
    TemperatureScale.CELSIUS: protocol.FLG_TEMP_C,
    TemperatureScale.FAHRENHEIT: protocol.FLG_TEMP_F,
    TemperatureScale.KELVIN: protocol.FLG_TEMP_K,
    TemperatureScale.RANKINE: protocol.FLG_TEMP_R,
}

# f.i device display format and bus-return on; persistence comes from the
# persistent proxy itself.
BASE_FLAGS = protocol.FLG_FORMAT_FDI | protocol.FLG_BUS_RET


class BusError(Exception):
    """Base class for owserver failures."""


class BusConnectionError(BusError):
    """Network-level failure: refused, unreachable or timed out."""


class BusProtocolError(BusError):
    """owserver answered with an error for a read/write/exists request."""


class ServerNotFoundError(BusError):
    """An item references a server id that is not configured."""


@runtime_checkable
class BusConnection(Protocol):
    """Protocol for one open owserver connection.

    Implementations: OwServerConnection, MockOwServer.
    """

    async def exists(self, path: str) -> bool:
        """Return True if *path* is present on the bus."""
        ...

    async def read(self, path: str) -> str | None:
        """Read *path*; None when owserver returned no data."""
        ...

    async def write(self, path: str, value: str) -> None:
        """Write *value* to *path*."""
        ...

    async def disconnect(self) -> None:
        """Release the connection."""
        ...


ConnectFactory = Callable[[ServerConfig, TemperatureScale], Awaitable[BusConnection | None]]


class OwServerConnection:
    """BusConnection backed by a persistent pyownet proxy."""

    def __init__(self, proxy, server: ServerConfig, timeout: float = CONNECT_TIMEOUT):
        self._proxy = proxy
        self.server = server
        self.timeout = timeout

    async def exists(self, path: str) -> bool:
        return await self._call("exists", path, self._proxy.present, path,
                                timeout=self.timeout)

    async def read(self, path: str) -> str | None:
        data = await self._call("read", path, self._proxy.read, path,
                                timeout=self.timeout)
        if not data:
            return None
        return data.decode("ascii", errors="replace")

    async def write(self, path: str, value: str) -> None:
        await self._call("write", path, self._proxy.write, path,
                         value.encode("ascii"), timeout=self.timeout)

    async def disconnect(self) -> None:
        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, self._proxy.close_connection)
        except Exception:
            logger.debug("Error closing owserver connection to %s",
                         self.server, exc_info=True)

    async def _call(self, op: str, path: str, func, *args, **kwargs):
        try:
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(
                None, functools.partial(func, *args, **kwargs),
            )
        except protocol.ConnError as e:
            raise BusConnectionError(
                f"{op} {path} on {self.server.host}:{self.server.port}: {e}"
            ) from e
        except protocol.Error as e:
            raise BusProtocolError(
                f"{op} {path} on {self.server.host}:{self.server.port}: {e}"
            ) from e


def _open_proxy(host: str, port: int, flags: int):
    return protocol.proxy(host, port, flags=flags, persistent=True)


def _close_abandoned_proxy(future: asyncio.Future):
    """Done callback for a proxy whose connect() already timed out."""
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close_connection()
    except Exception:
        logger.debug("Error closing abandoned owserver connection", exc_info=True)
    else:
        logger.debug("Closed owserver connection that completed after timeout")


async def connect(server: ServerConfig,
                  scale: TemperatureScale = TemperatureScale.CELSIUS,
                  timeout: float = CONNECT_TIMEOUT) -> OwServerConnection | None:
    """Open a connection to *server*.

    Returns None when the server is only partially configured (missing host
    or non-positive port).  Raises BusConnectionError when owserver cannot be
    reached within *timeout* seconds.
    """
    if not server.host or server.port <= 0:
        logger.warning(
            "Couldn't connect to owserver %s because of missing connection "
            "parameters [host=%r port=%r]", server.server_id, server.host, server.port,
        )
        return None

    flags = BASE_FLAGS | TEMPERATURE_FLAGS[scale]
    loop = asyncio.get_event_loop()
    pending = loop.run_in_executor(None, _open_proxy, server.host, server.port, flags)
    try:
        proxy = await asyncio.wait_for(asyncio.shield(pending), timeout=timeout)
    except asyncio.TimeoutError as e:
        # The worker thread keeps going; release its proxy if it still connects
        pending.add_done_callback(_close_abandoned_proxy)
        raise BusConnectionError(
            f"Connecting to owserver {server.host}:{server.port} timed out"
        ) from e
    except (protocol.Error, OSError) as e:
        raise BusConnectionError(
            f"Couldn't connect to owserver {server.host}:{server.port}: {e}"
        ) from e

    logger.debug("Established connection to owserver %s:%d", server.host, server.port)
    return OwServerConnection(proxy, server, timeout=timeout)


async def open_server_connection(registry: ServerRegistry, server_id: str,
                                 scale: TemperatureScale,
                                 factory: ConnectFactory = connect) -> BusConnection | None:
    """Look up *server_id* and connect to it.

    Raises ServerNotFoundError when the id was never configured.
    """
    server = registry.get(server_id)
    if server is None:
        raise ServerNotFoundError(f"Server with id {server_id} not found")
    return await factory(server, scale)

"""Reload notifier: tells connected browsers to reload once new output is ready."""

from __future__ import annotations

import asyncio
from typing import Protocol

from starlette.websockets import WebSocket

from devloop.cli.dev.debounce import TrailingDebouncer
from devloop.cli.dev.logging import DevLogComponent, get_logger
from devloop.constants import RELOAD_CHANNEL_PATH
from devloop.models import NotifierConfig

logger = get_logger(DevLogComponent.NOTIFIER)

RELOAD_MESSAGE = {"type": "reload"}

# Served at RELOAD_SCRIPT_PATH and injected into proxied HTML pages.
RELOAD_CLIENT_SCRIPT = """\
(function () {
  var scheme = location.protocol === "https:" ? "wss://" : "ws://";
  var url = scheme + location.host + "%s";
  function connect() {
    var socket = new WebSocket(url);
    socket.onmessage = function (event) {
      var message = JSON.parse(event.data);
      if (message.type === "reload") {
        location.reload();
      }
    };
    socket.onclose = function () {
      setTimeout(connect, 1000);
    };
  }
  connect();
})();
""" % RELOAD_CHANNEL_PATH


class ReloadClient(Protocol):
    """Opaque handle to a connected browser session."""

    async def send_reload(self) -> None: ...


class WebSocketReloadClient:
    """A browser connected to the reload channel over a WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket: WebSocket = websocket

    async def send_reload(self) -> None:
        await self.websocket.send_json(RELOAD_MESSAGE)

    def __repr__(self) -> str:
        client = self.websocket.client
        return f"WebSocketReloadClient({client.host if client else 'unknown'})"


class ReloadNotifier:
    """Holds the set of reload clients and sends debounced reload messages.

    `notify_reload` is a trailing debounce: a burst of calls collapses into a
    single message, sent after the settle window measured from the last call,
    to whichever clients are registered at that moment.
    """

    def __init__(self, config: NotifierConfig) -> None:
        self.config: NotifierConfig = config
        self._clients: set[ReloadClient] = set()
        self._armed: bool = False
        self._debouncer: TrailingDebouncer = TrailingDebouncer(
            config.settle_window, self._broadcast, name="reload"
        )
        self.reload_count: int = 0

    @property
    def clients(self) -> frozenset[ReloadClient]:
        return frozenset(self._clients)

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def arm(self) -> None:
        """Allow reloads to be sent (the pipeline reached Ready)."""
        self._armed = True

    def register(self, client: ReloadClient) -> None:
        self._clients.add(client)
        logger.debug(f"Reload client connected ({len(self._clients)} total)")

    def unregister(self, client: ReloadClient) -> None:
        self._clients.discard(client)
        logger.debug(f"Reload client disconnected ({len(self._clients)} total)")

    def notify_reload(self, after_ms: int | None = None) -> None:
        """Schedule a reload after the settle window (or `after_ms`)."""
        if not self._armed:
            logger.debug("Reload requested before the pipeline is ready; ignoring")
            return
        delay = None if after_ms is None else after_ms / 1000
        self._debouncer.trigger(delay)

    async def _broadcast(self) -> None:
        targets = list(self._clients)
        if not targets:
            logger.debug("No reload clients connected")
            return
        self.reload_count += 1
        logger.info(f"Reloading {len(targets)} browser(s)")
        results = await asyncio.gather(
            *(self._send(client) for client in targets), return_exceptions=True
        )
        for client, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.debug(f"Dropping reload client {client!r}: {result}")
                self.unregister(client)

    async def _send(self, client: ReloadClient) -> None:
        # A client may have gone away while earlier sends were in flight.
        if client in self._clients:
            await client.send_reload()

    async def drain(self) -> None:
        """Wait for a pending reload to be delivered."""
        await self._debouncer.drain()

    async def close(self) -> None:
        """Cancel any pending reload; clients stay registered until they disconnect."""
        self._armed = False
        await self._debouncer.aclose()

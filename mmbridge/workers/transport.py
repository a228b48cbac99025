"""Realtime websocket transport.

Keeps a websocket open to ``/api/v4/websocket`` and hands every parsed
event to a synchronous callback. On any close or error it reconnects after
an exponential backoff delay; the delay resets after a successful connect.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import aiohttp

from mmbridge.backoff import Backoff
from mmbridge.errors import TransportError, ValidationError, new_error_id
from mmbridge.events import HelloEvent, Unrecognized, WireEvent, parse_frame
from mmbridge.services.rest import MattermostREST

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0

EventHandler = Callable[[WireEvent], None]


class TransportClient:
    """Websocket connection with reconnect.

    ``on_event`` is called from the read loop and must not block; anything
    slow belongs in a task the handler schedules itself.
    """

    def __init__(
        self,
        rest: MattermostREST,
        on_event: EventHandler,
        backoff: Backoff | None = None,
        heartbeat: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.rest = rest
        self.on_event = on_event
        self.backoff = backoff or Backoff(base=1.0, cap=30.0)
        self.heartbeat = heartbeat
        self.connected = False
        self.connections = 0
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closing = False

    async def run(self) -> None:
        """Connect and read until ``close()`` is called.

        Raises:
            TransportError: only when a reconnect attempt cap is configured
                and reached.
        """
        self._closing = False
        while not self._closing:
            try:
                await self._connect_and_read()
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.error("Websocket connection error: %s", e)
            finally:
                self.connected = False
                self._ws = None

            if self._closing:
                break
            if self.backoff.exhausted:
                raise TransportError(
                    f"gave up reconnecting after {self.backoff.attempt} attempts"
                )
            delay = self.backoff.next_delay()
            logger.info(
                "Reconnecting in %.1fs (attempt %d)", delay, self.backoff.attempt
            )
            await asyncio.sleep(delay)

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()

    async def _connect_and_read(self) -> None:
        http = await self.rest.get_http()
        url = self.rest.websocket_url
        logger.info("Connecting to Mattermost websocket: %s", url)

        async with http.ws_connect(
            url,
            headers=self.rest.auth_headers,
            heartbeat=self.heartbeat,
        ) as ws:
            self._ws = ws
            self.connected = True
            self.connections += 1
            self.backoff.reset()
            logger.info("Connected to Mattermost websocket")

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug("Ignoring binary websocket frame (%d bytes)", len(msg.data))
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break

            if ws.exception() is not None:
                logger.warning("Websocket error: %s", ws.exception())

        if not self._closing:
            logger.warning("Websocket connection closed")

    def _dispatch(self, raw: str) -> None:
        try:
            event = parse_frame(raw)
        except ValidationError as e:
            logger.warning("Dropping malformed frame: %s", e.message)
            return

        if isinstance(event, HelloEvent):
            logger.info("Mattermost websocket handshake complete (server %s)",
                        event.server_version or "unknown")
        elif isinstance(event, Unrecognized):
            logger.debug("Ignoring '%s' event", event.event or "reply")
            return

        try:
            self.on_event(event)
        except Exception:
            error_id = new_error_id()
            logger.exception("[%s] Event handler failed", error_id,
                             extra={"error_id": error_id})

"""Reconnecting WebSocket event stream."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from chat_core.application.exceptions import TransientError
from chat_core.application.ports.clock import Sleeper
from chat_core.infrastructure.transport.serializer import deserialize_frame, serialize_frame
from chat_core.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

FrameCallback = Callable[[str, Any], Awaitable[None]]
StateCallback = Callable[[bool, bool, str], Awaitable[None]]


class EventStream:
    """Keeps one WebSocket open, reconnecting with capped backoff.

    ``on_state(connected, reconnect, reason)`` is awaited on every
    transition; ``on_frame(event, data)`` for every text frame.
    """

    def __init__(
        self,
        url: str,
        headers: Callable[[], dict[str, str]],
        on_frame: FrameCallback,
        on_state: StateCallback,
        *,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float = 20.0,
        backoff: RetryPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._url = url
        self._headers = headers
        self._on_frame = on_frame
        self._on_state = on_state
        self._session = session
        self._owns_session = session is None
        self._heartbeat = heartbeat
        self._backoff = backoff or RetryPolicy(max_delay=30.0)
        self._sleep = sleep
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task[None] | None = None
        self._ever_connected = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def start(self) -> None:
        if self._task is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
            self._task = asyncio.create_task(self._run(), name="chat-event-stream")
            logger.info("Event stream started for %s", self._url)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Event stream stopped")

    async def send(self, event: str, data: Any) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransientError("event stream is not connected", operation=f"emit {event}")
        await ws.send_str(serialize_frame(event, data))

    async def _run(self) -> None:
        attempt = 0
        while True:
            reason = ""
            try:
                async with self._session.ws_connect(
                    self._url, heartbeat=self._heartbeat, headers=self._headers(),
                ) as ws:
                    self._ws = ws
                    attempt = 0
                    reconnect, self._ever_connected = self._ever_connected, True
                    logger.info("Event stream connected (reconnect=%s)", reconnect)
                    await self._notify(True, reconnect, "")
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self._dispatch(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            reason = str(ws.exception() or "socket error")
                            break
                    reason = reason or f"closed ({ws.close_code})"
            except asyncio.CancelledError:
                raise
            except aiohttp.WSServerHandshakeError as exc:
                reason = f"handshake rejected ({exc.status})"
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                reason = str(exc) or type(exc).__name__
            finally:
                if self._ws is not None:
                    self._ws = None
                    await self._notify(False, False, reason or "cancelled")

            delay = self._backoff.backoff(attempt)
            attempt += 1
            logger.warning("Event stream down (%s), reconnecting in %.1fs", reason, delay)
            await self._sleep(delay)

    async def _notify(self, connected: bool, reconnect: bool, reason: str) -> None:
        try:
            await self._on_state(connected, reconnect, reason)
        except Exception:
            logger.exception("Event stream state callback failed")

    async def _dispatch(self, raw: str) -> None:
        try:
            event, data = deserialize_frame(raw)
        except ValueError:
            logger.warning("Dropping malformed frame: %.80s", raw)
            return
        try:
            await self._on_frame(event, data)
        except Exception:
            logger.exception("Error handling %s frame", event)

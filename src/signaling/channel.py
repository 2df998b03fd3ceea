"""Duplex signaling transport to the coordinating service."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal

import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed, WebSocketException

from session.errors import MalformedMessageError, UnknownMessageTypeError
from signaling.messages import SignalingMessage, decode_message, encode_message

LOGGER = logging.getLogger(__name__)

ChannelState = Literal["closed", "connecting", "open"]
MessageHandler = Callable[[SignalingMessage], "Awaitable[None] | None"]
OpenHandler = Callable[[], None]
CloseHandler = Callable[[bool], None]


class SignalingChannel:
    """One websocket connection at a time, JSON framed.

    * ``send`` never blocks: frames go through an outbox drained by a writer
      task, and are dropped (with a warning) while the channel is not open.
    * Inbound frames are decoded and handed to the message handler strictly in
      arrival order; the next frame is not read until the handler returns.
    * ``on_close`` handlers receive ``explicit=True`` only for closes requested
      through :meth:`close`.

    The channel makes a single connection attempt per :meth:`connect` call;
    retry policy belongs to the reconnection supervisor.
    """

    def __init__(
        self,
        url: str,
        *,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        connector: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self._url = url
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._connector = connector or websockets.connect
        self._state: ChannelState = "closed"
        self._ws: Any = None
        self._connect_task: asyncio.Task | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._message_handlers: list[MessageHandler] = []
        self._open_handlers: list[OpenHandler] = []
        self._close_handlers: list[CloseHandler] = []

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_open(self, handler: OpenHandler) -> None:
        self._open_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    async def connect(self) -> bool:
        """Open the transport once. Returns False (and reports a close) on failure."""

        if self._state != "closed":
            LOGGER.warning("connect() ignored, signaling channel is %s", self._state)
            return False

        self._state = "connecting"
        self._connect_task = asyncio.current_task()
        LOGGER.info("Connecting to signaling service: %s", self._url)
        try:
            ws = await self._connector(
                self._url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
            )
        except asyncio.CancelledError:
            LOGGER.info("Signaling connection attempt to %s aborted", self._url)
            self._state = "closed"
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            LOGGER.warning("Signaling connection to %s failed: %s", self._url, exc)
            self._state = "closed"
            self._notify_close(explicit=False)
            return False
        except Exception:
            LOGGER.exception("Unexpected error connecting to %s", self._url)
            self._state = "closed"
            self._notify_close(explicit=False)
            return False
        finally:
            self._connect_task = None

        self._ws = ws
        self._state = "open"
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(ws, self._outbox))
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        LOGGER.info("Signaling channel open")
        for handler in list(self._open_handlers):
            try:
                handler()
            except Exception:
                LOGGER.exception("Signaling open handler failed")
        return True

    def send(self, message: BaseModel) -> bool:
        message_type = getattr(message, "type", type(message).__name__)
        if self._state != "open" or self._outbox is None:
            LOGGER.warning("Signaling channel not open; dropping outbound %s", message_type)
            return False
        self._outbox.put_nowait(encode_message(message))
        LOGGER.debug("Queued outbound %s", message_type)
        return True

    async def close(self) -> None:
        """Explicitly close the transport. Close handlers see ``explicit=True``.

        An attempt still in its handshake is aborted instead; no handlers run.
        """

        if self._state == "connecting":
            task = self._connect_task
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            return

        ws = self._ws
        if ws is None:
            return
        self._mark_closed(ws, explicit=True)
        try:
            await ws.close()
        except (OSError, WebSocketException) as exc:
            LOGGER.debug("Error while closing signaling websocket: %s", exc)

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for frame in ws:
                await self._dispatch(frame)
        except ConnectionClosed as exc:
            LOGGER.info("Signaling connection closed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Signaling reader crashed")
        finally:
            self._mark_closed(ws, explicit=False)

    async def _write_loop(self, ws: Any, outbox: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbox.get()
            try:
                await ws.send(frame)
            except ConnectionClosed:
                LOGGER.warning("Signaling connection closed while sending; frame dropped")
                return

    async def _dispatch(self, frame: str | bytes) -> None:
        try:
            message = decode_message(frame)
        except UnknownMessageTypeError as exc:
            LOGGER.warning("Ignoring signaling message of unknown type %r", exc.message_type)
            return
        except MalformedMessageError as exc:
            LOGGER.warning("Dropping malformed signaling message: %s", exc.detail)
            return

        for handler in list(self._message_handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Signaling message handler failed for %s", message.type)

    def _mark_closed(self, ws: Any, *, explicit: bool) -> None:
        if self._ws is not ws:
            return

        self._ws = None
        self._state = "closed"
        self._outbox = None
        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader_task = None
        self._writer_task = None

        LOGGER.info("Signaling channel closed (explicit=%s)", explicit)
        self._notify_close(explicit=explicit)

    def _notify_close(self, *, explicit: bool) -> None:
        for handler in list(self._close_handlers):
            try:
                handler(explicit)
            except Exception:
                LOGGER.exception("Signaling close handler failed")

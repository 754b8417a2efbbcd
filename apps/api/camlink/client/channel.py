"""Websocket client for the signaling service."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Awaitable, Callable, Dict
from uuid import uuid4

import websockets
from pydantic import BaseModel, ValidationError

from ..schemas import signaling as wire

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BaseModel], Awaitable[None]]
ClosedHandler = Callable[[], Awaitable[None]]


class ChannelClosedError(ConnectionError):
    """The signaling connection is gone; pending requests cannot complete."""


class SignalingRequestError(RuntimeError):
    """The server answered a request with a failure ack."""

    def __init__(self, error: str | None, ack: wire.Ack) -> None:
        super().__init__(error or "request failed")
        self.error = error
        self.ack = ack


class SignalingChannel:
    """Handle lifespan of one signaling connection.

    Frames other than ``connected`` and ``ack`` are passed to ``on_message``
    in arrival order.
    """

    def __init__(self, ws, on_message: MessageHandler | None = None, *, request_timeout: float = 10.0) -> None:
        self._ws = ws
        self.on_message = on_message
        self.on_closed: ClosedHandler | None = None
        self.connection_id: str | None = None
        self._request_timeout = request_timeout
        self._pending: Dict[str, asyncio.Future[wire.Ack]] = {}
        self._connected = asyncio.Event()
        self._closed = asyncio.Event()
        self._receive_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "SignalingChannel":
        self._receive_task = asyncio.create_task(self._receive_loop())
        connected = asyncio.create_task(self._connected.wait())
        closed = asyncio.create_task(self._closed.wait())
        try:
            await asyncio.wait(
                {connected, closed},
                timeout=self._request_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            connected.cancel()
            closed.cancel()
        if self.connection_id is None:
            await self.aclose()
            raise ChannelClosedError("signaling server did not greet the connection")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def aclose(self) -> None:
        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
        await self._ws.close()
        self._mark_closed()

    async def send(self, message: BaseModel) -> None:
        if self.closed:
            raise ChannelClosedError("signaling channel is closed")
        await self._ws.send(message.model_dump_json())

    async def request(self, message: BaseModel) -> wire.Ack:
        """Send a frame with a fresh request id and wait for its ack."""

        request_id = uuid4().hex
        message = message.model_copy(update={"request_id": request_id})
        future: asyncio.Future[wire.Ack] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send(message)
            ack = await asyncio.wait_for(future, timeout=self._request_timeout)
        finally:
            self._pending.pop(request_id, None)
        if not ack.success:
            raise SignalingRequestError(ack.error, ack)
        return ack

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = wire.parse_server_message(json.loads(raw))
                except (json.JSONDecodeError, ValidationError) as exc:
                    logger.warning("Ignoring malformed server frame: %s", exc)
                    continue

                if isinstance(message, wire.Connected):
                    self.connection_id = message.connection_id
                    self._connected.set()
                elif isinstance(message, wire.Ack):
                    future = self._pending.get(message.request_id)
                    if future is not None and not future.done():
                        future.set_result(message)
                else:
                    if isinstance(message, wire.ErrorMessage):
                        logger.warning("Signaling error: %s (%s)", message.error, message.detail)
                    if self.on_message:
                        try:
                            await self.on_message(message)
                        except Exception:  # noqa: BLE001
                            logger.exception("Handler for %s frame failed", message.type)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)
        finally:
            self._mark_closed()
            if self.on_closed:
                await self.on_closed()

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ChannelClosedError("signaling channel closed"))


@asynccontextmanager
async def connect_channel(
    url: str,
    on_message: MessageHandler | None = None,
    *,
    request_timeout: float = 10.0,
) -> AsyncIterator[SignalingChannel]:
    """Open a signaling connection, e.g. ``ws://localhost:8080/api/signaling``."""

    async with websockets.connect(url) as ws:
        channel = SignalingChannel(ws, on_message=on_message, request_timeout=request_timeout)
        async with channel:
            yield channel

"""In-memory signaling hub connecting websocket clients to the room registry."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel

from ..schemas import signaling as wire
from .rooms import RoomError, RoomRegistry, RoomResult

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class ConnectionRecord:
    """Per-connection state, looked up by connection id on every frame."""

    connection_id: str
    send: SendCallable
    outbox: asyncio.Queue[dict] = field(default_factory=asyncio.Queue)
    writer: asyncio.Task[None] | None = None
    frames_in: int = 0


class SignalingHub:
    """Serialize client frames into registry operations and fan out results.

    Frames from all connections are handled one at a time under a single
    lock. Outbound frames go through a per-connection queue drained by one
    writer task, so each connection sees messages in the order they were
    produced.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, ConnectionRecord] = {}
        self._lock = asyncio.Lock()
        self.registry = RoomRegistry(emit=self._emit)

    async def connect(self, connection_id: str, send: SendCallable) -> ConnectionRecord:
        """Register a connection and greet it with its connection id."""

        record = ConnectionRecord(connection_id=connection_id, send=send)
        record.writer = asyncio.create_task(self._write_loop(record))
        async with self._lock:
            self._connections[connection_id] = record
            self._emit(connection_id, wire.Connected(connection_id=connection_id))
        logger.info("New connection: %s", connection_id)
        return record

    async def disconnect(self, connection_id: str) -> None:
        """Drop the connection and leave every room it belonged to."""

        async with self._lock:
            record = self._connections.pop(connection_id, None)
            room_ids = self.registry.disconnect(connection_id)
        if record and record.writer:
            record.writer.cancel()
            with suppress(asyncio.CancelledError):
                await record.writer
        logger.info("User disconnected: %s (rooms: %s)", connection_id, room_ids)

    async def handle(self, connection_id: str, message: BaseModel) -> RoomResult | None:
        """Apply one client frame and queue its ack when a request id is set."""

        async with self._lock:
            record = self._connections.get(connection_id)
            if record is None:
                return None
            record.frames_in += 1
            result = self._dispatch(connection_id, message)
            request_id = getattr(message, "request_id", None)
            if request_id and result is not None:
                self._emit(connection_id, self._ack(request_id, result))
            return result

    async def reject(self, connection_id: str, detail: str) -> None:
        """Report a frame that could not be parsed."""

        async with self._lock:
            self._emit(
                connection_id,
                wire.ErrorMessage(error=RoomError.INVALID_REQUEST.value, detail=detail),
            )

    def _dispatch(self, connection_id: str, message: BaseModel) -> RoomResult | None:
        registry = self.registry
        if isinstance(message, wire.CreateRoom):
            return registry.create_room(message.room_id, message.name, message.password, connection_id)
        if isinstance(message, wire.JoinRoom):
            return registry.join_room(message.room_id, message.password, connection_id)
        if isinstance(message, wire.LeaveRoom):
            return registry.leave(message.room_id, connection_id)
        if isinstance(message, wire.UpdateStreamStatus):
            return registry.update_participant_status(
                message.room_id, connection_id, message.has_video, message.has_audio
            )
        if isinstance(message, wire.UpdateStreamSettings):
            return registry.update_stream_settings(message.room_id, connection_id, message.settings)
        if isinstance(message, wire.KickUser):
            return registry.kick(message.room_id, connection_id, message.target_connection_id)
        if isinstance(message, wire.GetRoomInfo):
            return registry.room_info(message.room_id, connection_id)
        if isinstance(message, (wire.Offer, wire.Answer, wire.IceCandidate)):
            return self._relay(connection_id, message)
        logger.warning("Unhandled frame %s from %s", type(message).__name__, connection_id)
        return RoomResult.failure(RoomError.INVALID_REQUEST)

    def _relay(self, sender_id: str, message: wire.RelayMessage) -> RoomResult:
        """Forward a negotiation frame to one member of the sender's room."""

        registry = self.registry
        target_id = message.target_connection_id
        if not registry.is_member(message.room_id, sender_id) or not registry.is_member(message.room_id, target_id):
            logger.info(
                "Dropped %s from %s to %s: not both members of %s",
                message.type,
                sender_id,
                target_id,
                message.room_id,
            )
            self._emit(
                sender_id,
                wire.ErrorMessage(error=RoomError.NOT_FOUND.value, detail=f"{message.type} target not in room"),
            )
            return RoomResult.failure(RoomError.NOT_FOUND)

        logger.debug("%s from %s to %s in room %s", message.type, sender_id, target_id, message.room_id)
        self._emit(target_id, wire.relayed(message, sender_id))
        return RoomResult.success()

    @staticmethod
    def _ack(request_id: str, result: RoomResult) -> wire.Ack:
        extra: dict[str, Any] = dict(result.data)
        return wire.Ack(
            request_id=request_id,
            success=result.ok,
            error=result.error.value if result.error else None,
            **extra,
        )

    def _emit(self, connection_id: str, message: BaseModel) -> None:
        record = self._connections.get(connection_id)
        if record is None:
            logger.debug("Dropping %s for unknown connection %s", type(message).__name__, connection_id)
            return
        record.outbox.put_nowait(message.model_dump(mode="json"))

    async def _write_loop(self, record: ConnectionRecord) -> None:
        while True:
            payload = await record.outbox.get()
            try:
                await record.send(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.debug("Send to %s failed: %s", record.connection_id, exc)


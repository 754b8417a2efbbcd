"""Client-side facade tying a signaling channel to per-room coordinators."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from ..schemas import signaling as wire
from .backoff import BackoffPolicy
from .channel import ChannelClosedError, SignalingChannel, SignalingRequestError
from .coordinator import ErrorHandler, MetricsHandler, NegotiationCoordinator, TrackHandler, TransportFactory

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseModel], None]


class RoomClient:
    """Join or create rooms over one channel and negotiate media in each.

    ``state`` is ``"connected"`` while the channel is usable and becomes
    ``"disconnected"`` once it is lost; a lost channel closes every media
    session since the server has already dropped this connection's
    memberships.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        transport_factory: TransportFactory,
        *,
        capture_ready: bool = False,
        backoff: BackoffPolicy | None = None,
        on_error: ErrorHandler | None = None,
        on_metrics: MetricsHandler | None = None,
        on_track: TrackHandler | None = None,
        on_event: EventHandler | None = None,
        **coordinator_options: Any,
    ) -> None:
        if channel.connection_id is None:
            raise ChannelClosedError("channel has no connection id yet")
        self.channel = channel
        self.connection_id = channel.connection_id
        self.coordinators: Dict[str, NegotiationCoordinator] = {}
        self.state = "connected"
        self._transport_factory = transport_factory
        self._capture_ready = capture_ready
        self._backoff = backoff
        self._on_error = on_error
        self._on_metrics = on_metrics
        self._on_track = on_track
        self._on_event = on_event
        self._coordinator_options = coordinator_options
        channel.on_message = self.handle
        channel.on_closed = self._on_channel_closed

    # Room operations

    async def create_room(self, room_id: str, password: str, name: str = "") -> wire.Ack:
        return await self._enter(room_id, wire.CreateRoom(room_id=room_id, name=name, password=password))

    async def join_room(self, room_id: str, password: str) -> wire.Ack:
        return await self._enter(room_id, wire.JoinRoom(room_id=room_id, password=password))

    async def leave_room(self, room_id: str) -> None:
        coordinator = self.coordinators.pop(room_id, None)
        if coordinator:
            await coordinator.close()
        await self.channel.request(wire.LeaveRoom(room_id=room_id))

    async def update_stream_status(self, room_id: str, has_video: bool, has_audio: bool) -> None:
        await self.channel.send(wire.UpdateStreamStatus(room_id=room_id, has_video=has_video, has_audio=has_audio))

    async def update_stream_settings(self, room_id: str, **changes: Any) -> wire.Ack:
        patch = wire.StreamSettingsPatch(**changes)
        return await self.channel.request(wire.UpdateStreamSettings(room_id=room_id, settings=patch))

    async def kick(self, room_id: str, target_connection_id: str) -> wire.Ack:
        return await self.channel.request(wire.KickUser(room_id=room_id, target_connection_id=target_connection_id))

    async def room_info(self, room_id: str) -> wire.RoomInfo:
        ack = await self.channel.request(wire.GetRoomInfo(room_id=room_id))
        return wire.RoomInfo.model_validate(getattr(ack, "room"))

    # Media control

    async def set_capture_ready(self, ready: bool = True) -> None:
        self._capture_ready = ready
        for coordinator in list(self.coordinators.values()):
            await coordinator.set_capture_ready(ready)

    async def restart_connection(self, room_id: str, remote_id: str) -> bool:
        coordinator = self.coordinators.get(room_id)
        if coordinator is None:
            return False
        return await coordinator.restart_connection(remote_id)

    def coordinator(self, room_id: str) -> Optional[NegotiationCoordinator]:
        return self.coordinators.get(room_id)

    # Incoming frames

    async def handle(self, message: BaseModel) -> None:
        room_id = getattr(message, "room_id", None)
        coordinator = self.coordinators.get(room_id) if room_id else None
        if coordinator is not None:
            await coordinator.handle(message)
            if isinstance(message, wire.Kicked):
                self.coordinators.pop(room_id, None)
        if self._on_event:
            self._on_event(message)

    async def close(self) -> None:
        await self._close_coordinators()
        await self.channel.aclose()

    # Internals

    async def _enter(self, room_id: str, message: BaseModel) -> wire.Ack:
        if room_id not in self.coordinators:
            self.coordinators[room_id] = self._new_coordinator(room_id)
        try:
            return await self.channel.request(message)
        except (SignalingRequestError, ChannelClosedError, TimeoutError):
            coordinator = self.coordinators.pop(room_id, None)
            if coordinator:
                await coordinator.close()
            raise

    def _new_coordinator(self, room_id: str) -> NegotiationCoordinator:
        coordinator = NegotiationCoordinator(
            room_id,
            self.connection_id,
            self.channel.send,
            self._transport_factory,
            capture_ready=self._capture_ready,
            backoff=self._backoff,
            on_error=self._on_error,
            on_metrics=self._on_metrics,
            on_track=self._on_track,
            **self._coordinator_options,
        )
        if self._on_metrics:
            coordinator.start_metrics()
        return coordinator

    async def _on_channel_closed(self) -> None:
        if self.state == "disconnected":
            return
        logger.warning("Signaling channel lost; closing %s room(s)", len(self.coordinators))
        self.state = "disconnected"
        await self._close_coordinators()

    async def _close_coordinators(self) -> None:
        coordinators = list(self.coordinators.values())
        self.coordinators.clear()
        for coordinator in coordinators:
            await coordinator.close()

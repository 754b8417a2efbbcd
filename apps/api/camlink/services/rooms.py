"""Authoritative in-memory room registry.

All operations are synchronous and complete before returning, so callers that
process one signaling frame at a time observe every mutation atomically.
Notifications are handed to the ``emit`` callable supplied at construction;
it must not block.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from ..core.config import settings
from ..schemas import signaling as wire

logger = logging.getLogger(__name__)

EmitCallable = Callable[[str, BaseModel], None]


class RoomError(str, enum.Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    BAD_CREDENTIALS = "bad_credentials"
    UNAUTHORIZED = "unauthorized"
    INVALID_REQUEST = "invalid_request"


@dataclass(slots=True)
class RoomResult:
    """Tagged outcome of a registry operation."""

    ok: bool
    error: RoomError | None = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> "RoomResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: RoomError) -> "RoomResult":
        return cls(ok=False, error=error)


def _default_stream_settings() -> wire.StreamSettings:
    return wire.StreamSettings(
        resolution=settings.default_resolution,
        fps=settings.default_fps,
        bitrate=settings.default_bitrate,
    )


@dataclass(slots=True)
class Participant:
    connection_id: str
    is_admin: bool = False
    has_video: bool = False
    has_audio: bool = False
    stream_settings: wire.StreamSettings = field(default_factory=_default_stream_settings)

    def to_wire(self) -> wire.ParticipantInfo:
        return wire.ParticipantInfo(
            connection_id=self.connection_id,
            is_admin=self.is_admin,
            has_video=self.has_video,
            has_audio=self.has_audio,
            stream_settings=self.stream_settings.model_copy(),
        )


@dataclass(slots=True)
class Room:
    id: str
    name: str
    password: str
    admin_connection_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def snapshot(self) -> list[wire.ParticipantInfo]:
        return [participant.to_wire() for participant in self.participants.values()]


class RoomRegistry:
    """Own the room table and enforce membership and admin rules."""

    def __init__(self, emit: EmitCallable) -> None:
        self._emit = emit
        self._rooms: Dict[str, Room] = {}
        self._memberships: Dict[str, list[str]] = {}

    # Queries

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def rooms_of(self, connection_id: str) -> list[str]:
        return list(self._memberships.get(connection_id, ()))

    def is_member(self, room_id: str, connection_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and connection_id in room.participants

    def __len__(self) -> int:
        return len(self._rooms)

    def room_info(self, room_id: str, connection_id: str) -> RoomResult:
        room = self._rooms.get(room_id)
        if room is None:
            return RoomResult.failure(RoomError.NOT_FOUND)
        info = wire.RoomInfo(
            id=room.id,
            name=room.name,
            participants=room.snapshot(),
            is_admin=connection_id == room.admin_connection_id,
        )
        return RoomResult.success(room=info.model_dump())

    # Operations

    def create_room(self, room_id: str, name: str, password: str, creator_id: str) -> RoomResult:
        """Create ``room_id`` with the creator as its sole participant and admin."""

        if room_id in self._rooms:
            logger.info("Rejected create for existing room %s from %s", room_id, creator_id)
            return RoomResult.failure(RoomError.ALREADY_EXISTS)

        room = Room(id=room_id, name=name or room_id, password=password, admin_connection_id=creator_id)
        room.participants[creator_id] = Participant(connection_id=creator_id, is_admin=True)
        self._rooms[room_id] = room
        self._add_membership(creator_id, room_id)
        logger.info("Room created: %s, admin: %s", room_id, creator_id)
        return RoomResult.success(room_id=room_id, is_admin=True, participants=self._dump(room))

    def join_room(self, room_id: str, password: str, connection_id: str) -> RoomResult:
        """Add ``connection_id`` to the room when the password matches.

        The connection currently holding the admin role re-joins without a
        password check. A member joining again keeps its existing record.
        """

        room = self._rooms.get(room_id)
        if room is None:
            return RoomResult.failure(RoomError.NOT_FOUND)

        is_admin = connection_id == room.admin_connection_id
        if not is_admin and password != room.password:
            logger.warning("Incorrect password for room %s from %s", room_id, connection_id)
            return RoomResult.failure(RoomError.BAD_CREDENTIALS)

        if connection_id not in room.participants:
            room.participants[connection_id] = Participant(connection_id=connection_id, is_admin=is_admin)
            self._add_membership(connection_id, room_id)
            self._broadcast(
                room,
                wire.UserJoined(room_id=room_id, connection_id=connection_id, is_admin=is_admin),
                exclude=connection_id,
            )
            logger.info("User %s joined room %s", connection_id, room_id)

        self._broadcast_participants(room)
        return RoomResult.success(room_id=room_id, is_admin=is_admin, participants=self._dump(room))

    def update_participant_status(
        self,
        room_id: str,
        connection_id: str,
        has_video: bool,
        has_audio: bool,
    ) -> RoomResult:
        room = self._rooms.get(room_id)
        participant = room.participants.get(connection_id) if room else None
        if room is None or participant is None:
            return RoomResult.success()

        participant.has_video = bool(has_video)
        participant.has_audio = bool(has_audio)
        self._broadcast_participants(room)
        return RoomResult.success()

    def update_stream_settings(
        self,
        room_id: str,
        connection_id: str,
        patch: wire.StreamSettingsPatch,
    ) -> RoomResult:
        """Merge advisory stream settings and tell the admin about them."""

        room = self._rooms.get(room_id)
        participant = room.participants.get(connection_id) if room else None
        if room is None or participant is None:
            return RoomResult.success()

        changes = patch.model_dump(exclude_none=True)
        participant.stream_settings = participant.stream_settings.model_copy(update=changes)
        if connection_id != room.admin_connection_id:
            self._emit(
                room.admin_connection_id,
                wire.ParticipantSettingsUpdated(
                    room_id=room_id,
                    connection_id=connection_id,
                    settings=participant.stream_settings.model_copy(),
                ),
            )
        return RoomResult.success(settings=participant.stream_settings.model_dump())

    def kick(self, room_id: str, requester_id: str, target_id: str) -> RoomResult:
        """Remove ``target_id`` on behalf of the room admin.

        Anything other than an admin kicking another member changes nothing
        and notifies nobody; the failure is only reported to the caller.
        """

        room = self._rooms.get(room_id)
        if room is None:
            return RoomResult.failure(RoomError.NOT_FOUND)
        if room.admin_connection_id != requester_id or target_id == requester_id:
            logger.info("Ignored kick of %s in room %s by %s", target_id, room_id, requester_id)
            return RoomResult.failure(RoomError.UNAUTHORIZED)
        if target_id not in room.participants:
            return RoomResult.failure(RoomError.NOT_FOUND)

        del room.participants[target_id]
        self._drop_membership(target_id, room_id)

        self._emit(target_id, wire.Kicked(room_id=room_id))
        self._broadcast(room, wire.UserLeft(room_id=room_id, connection_id=target_id))
        self._broadcast_participants(room)
        self._emit(requester_id, wire.KickSuccess(room_id=room_id, connection_id=target_id))
        logger.info("User %s kicked from room %s", target_id, room_id)
        return RoomResult.success(connection_id=target_id)

    def leave(self, room_id: str, connection_id: str) -> RoomResult:
        """Remove a participant, promoting a new admin or deleting the room."""

        room = self._rooms.get(room_id)
        if room is None or connection_id not in room.participants:
            return RoomResult.success()

        del room.participants[connection_id]
        self._drop_membership(connection_id, room_id)

        if not room.participants:
            del self._rooms[room_id]
            logger.info("Room %s deleted (no participants)", room_id)
            return RoomResult.success()

        self._broadcast(room, wire.UserLeft(room_id=room_id, connection_id=connection_id))

        if room.admin_connection_id == connection_id:
            new_admin_id = next(iter(room.participants))
            room.admin_connection_id = new_admin_id
            room.participants[new_admin_id].is_admin = True
            self._emit(new_admin_id, wire.AdminAssigned(room_id=room_id))
            logger.info("New admin assigned in room %s: %s", room_id, new_admin_id)

        self._broadcast_participants(room)
        return RoomResult.success()

    def disconnect(self, connection_id: str) -> list[str]:
        """Leave every room the connection belongs to; returns those room ids."""

        room_ids = self.rooms_of(connection_id)
        for room_id in room_ids:
            self.leave(room_id, connection_id)
        self._memberships.pop(connection_id, None)
        return room_ids

    # Helpers

    def _add_membership(self, connection_id: str, room_id: str) -> None:
        rooms = self._memberships.setdefault(connection_id, [])
        if room_id not in rooms:
            rooms.append(room_id)

    def _drop_membership(self, connection_id: str, room_id: str) -> None:
        rooms = self._memberships.get(connection_id)
        if not rooms:
            return
        if room_id in rooms:
            rooms.remove(room_id)
        if not rooms:
            self._memberships.pop(connection_id, None)

    def _broadcast(self, room: Room, message: BaseModel, exclude: str | None = None) -> None:
        for participant_id in room.participants:
            if participant_id != exclude:
                self._emit(participant_id, message)

    def _broadcast_participants(self, room: Room) -> None:
        self._broadcast(room, wire.ParticipantsUpdated(room_id=room.id, participants=room.snapshot()))

    @staticmethod
    def _dump(room: Room) -> list[dict[str, Any]]:
        return [participant.model_dump() for participant in room.snapshot()]

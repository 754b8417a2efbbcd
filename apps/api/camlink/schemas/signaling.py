"""Wire contract for the signaling channel.

Every frame is a JSON object tagged by ``type``. Client and server frames are
closed unions so that handlers can dispatch on the concrete model class.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class StreamSettings(BaseModel):
    resolution: str = "720p"
    fps: int = Field(default=30, ge=1)
    bitrate: int = Field(default=2000, ge=0, description="Advisory bitrate in kbps")


class StreamSettingsPatch(BaseModel):
    resolution: str | None = None
    fps: int | None = Field(default=None, ge=1)
    bitrate: int | None = Field(default=None, ge=0)


class ParticipantInfo(BaseModel):
    connection_id: str
    is_admin: bool = False
    has_video: bool = False
    has_audio: bool = False
    stream_settings: StreamSettings = Field(default_factory=StreamSettings)


class RoomInfo(BaseModel):
    id: str
    name: str
    participants: list[ParticipantInfo]
    is_admin: bool = False


class RoomSummary(BaseModel):
    """Public view of a room, without the password or member details."""

    id: str
    name: str
    participant_count: int = Field(..., ge=1)
    created_at: datetime


class _ClientFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    request_id: str | None = Field(default=None, description="Set to receive an ack frame")


# Client -> server frames


class CreateRoom(_ClientFrame):
    type: Literal["create-room"] = "create-room"
    room_id: str = Field(..., min_length=1)
    name: str = ""
    password: str = ""


class JoinRoom(_ClientFrame):
    type: Literal["join-room"] = "join-room"
    room_id: str = Field(..., min_length=1)
    password: str = ""


class LeaveRoom(_ClientFrame):
    type: Literal["leave-room"] = "leave-room"
    room_id: str


class UpdateStreamStatus(_ClientFrame):
    type: Literal["update-stream-status"] = "update-stream-status"
    room_id: str
    has_video: bool = False
    has_audio: bool = False


class UpdateStreamSettings(_ClientFrame):
    type: Literal["update-stream-settings"] = "update-stream-settings"
    room_id: str
    settings: StreamSettingsPatch


class KickUser(_ClientFrame):
    type: Literal["kick-user"] = "kick-user"
    room_id: str
    target_connection_id: str


class GetRoomInfo(_ClientFrame):
    type: Literal["get-room-info"] = "get-room-info"
    room_id: str


class _RelayFrame(_ClientFrame):
    room_id: str
    target_connection_id: str
    payload: dict[str, Any]
    generation: int = Field(default=0, ge=0)


class Offer(_RelayFrame):
    type: Literal["offer"] = "offer"


class Answer(_RelayFrame):
    type: Literal["answer"] = "answer"


class IceCandidate(_RelayFrame):
    type: Literal["ice-candidate"] = "ice-candidate"


ClientMessage = Annotated[
    Union[
        CreateRoom,
        JoinRoom,
        LeaveRoom,
        UpdateStreamStatus,
        UpdateStreamSettings,
        KickUser,
        GetRoomInfo,
        Offer,
        Answer,
        IceCandidate,
    ],
    Field(discriminator="type"),
]

RelayMessage = Union[Offer, Answer, IceCandidate]


# Server -> client frames


class Connected(BaseModel):
    type: Literal["connected"] = "connected"
    connection_id: str


class Ack(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["ack"] = "ack"
    request_id: str
    success: bool
    error: str | None = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str
    detail: str | None = None


class ParticipantsUpdated(BaseModel):
    type: Literal["participants-updated"] = "participants-updated"
    room_id: str
    participants: list[ParticipantInfo]


class UserJoined(BaseModel):
    type: Literal["user-joined"] = "user-joined"
    room_id: str
    connection_id: str
    is_admin: bool = False


class UserLeft(BaseModel):
    type: Literal["user-left"] = "user-left"
    room_id: str
    connection_id: str


class Kicked(BaseModel):
    type: Literal["kicked"] = "kicked"
    room_id: str


class KickSuccess(BaseModel):
    type: Literal["kick-success"] = "kick-success"
    room_id: str
    connection_id: str


class AdminAssigned(BaseModel):
    type: Literal["admin-assigned"] = "admin-assigned"
    room_id: str


class ParticipantSettingsUpdated(BaseModel):
    type: Literal["participant-settings-updated"] = "participant-settings-updated"
    room_id: str
    connection_id: str
    settings: StreamSettings


class _RelayedFrame(BaseModel):
    room_id: str
    from_connection_id: str
    payload: dict[str, Any]
    generation: int = 0


class RelayedOffer(_RelayedFrame):
    type: Literal["offer"] = "offer"


class RelayedAnswer(_RelayedFrame):
    type: Literal["answer"] = "answer"


class RelayedIceCandidate(_RelayedFrame):
    type: Literal["ice-candidate"] = "ice-candidate"


ServerMessage = Annotated[
    Union[
        Connected,
        Ack,
        ErrorMessage,
        ParticipantsUpdated,
        UserJoined,
        UserLeft,
        Kicked,
        KickSuccess,
        AdminAssigned,
        ParticipantSettingsUpdated,
        RelayedOffer,
        RelayedAnswer,
        RelayedIceCandidate,
    ],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
server_message_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)

RELAYED_BY_TYPE: dict[str, type[_RelayedFrame]] = {
    "offer": RelayedOffer,
    "answer": RelayedAnswer,
    "ice-candidate": RelayedIceCandidate,
}


def parse_client_message(data: Any) -> ClientMessage:
    """Validate a decoded client frame; raises ``pydantic.ValidationError``."""

    return client_message_adapter.validate_python(data)


def parse_server_message(data: Any) -> ServerMessage:
    """Validate a decoded server frame; raises ``pydantic.ValidationError``."""

    return server_message_adapter.validate_python(data)


def relayed(message: RelayMessage, sender_id: str) -> _RelayedFrame:
    """Build the frame delivered to the target of a relay message."""

    frame_cls = RELAYED_BY_TYPE[message.type]
    return frame_cls(
        room_id=message.room_id,
        from_connection_id=sender_id,
        payload=message.payload,
        generation=message.generation,
    )

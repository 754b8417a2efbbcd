"""Read-only room endpoints."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from ..schemas.signaling import RoomSummary
from ..services.signaling import SignalingHub

router = APIRouter()


@router.get("/{room_id}", response_model=RoomSummary)
async def get_room(room_id: str, request: Request) -> RoomSummary:
    """Return the public summary of a live room."""

    hub: SignalingHub = request.app.state.hub
    room = hub.registry.get(room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return RoomSummary(
        id=room.id,
        name=room.name,
        participant_count=len(room.participants),
        created_at=room.created_at,
    )

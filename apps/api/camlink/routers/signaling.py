"""Websocket signaling endpoint."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..schemas.signaling import parse_client_message
from ..services.signaling import SignalingHub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Bind one websocket to one connection id for its whole lifetime."""

    hub: SignalingHub = websocket.app.state.hub
    connection_id = str(uuid4())
    await websocket.accept()
    await hub.connect(connection_id, websocket.send_json)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = parse_client_message(json.loads(data))
            except json.JSONDecodeError:
                await hub.reject(connection_id, "frame is not valid JSON")
                continue
            except ValidationError as exc:
                errors = exc.errors(include_url=False)
                logger.info("Invalid frame from %s: %s", connection_id, errors)
                await hub.reject(connection_id, errors[0]["msg"] if errors else "invalid frame")
                continue
            await hub.handle(connection_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)

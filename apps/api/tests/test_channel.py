"""Tests for the signaling websocket client and room facade."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest
import websockets

from camlink.client import channel as channel_module
from camlink.client.channel import ChannelClosedError, SignalingChannel, SignalingRequestError
from camlink.client.room import RoomClient
from camlink.schemas import signaling as wire
from conftest import FakeTransportFactory, wait_until

_END = object()


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._messages: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str:
        message = await self._messages.get()
        if message is _END:
            raise StopAsyncIteration
        return message

    async def queue_message(self, payload: dict) -> None:
        await self._messages.put(json.dumps(payload))

    async def queue_raw(self, raw: str | bytes) -> None:
        await self._messages.put(raw)

    async def finish(self) -> None:
        await self._messages.put(_END)

    def sent_frames(self) -> list[dict]:
        return [json.loads(raw) for raw in self.sent]


async def greeted(ws: DummyWebSocket, connection_id: str = "me") -> None:
    await ws.queue_message({"type": "connected", "connection_id": connection_id})


async def answer_next_request(ws: DummyWebSocket, **fields) -> dict:
    """Wait for the next outgoing request and queue an ack for it."""

    count = len(ws.sent)
    await wait_until(lambda: len(ws.sent) > count)
    frame = ws.sent_frames()[-1]
    await ws.queue_message({"type": "ack", "request_id": frame["request_id"], "success": True, **fields})
    return frame


@pytest.mark.asyncio
async def test_channel_waits_for_greeting():
    ws = DummyWebSocket()
    await greeted(ws, "conn-1")

    async with SignalingChannel(ws) as channel:
        assert channel.connection_id == "conn-1"
        assert not channel.closed

    assert ws.closed
    assert channel.closed


@pytest.mark.asyncio
async def test_channel_without_greeting_fails():
    ws = DummyWebSocket()
    await ws.finish()

    with pytest.raises(ChannelClosedError):
        async with SignalingChannel(ws):
            pass


@pytest.mark.asyncio
async def test_request_resolves_with_matching_ack():
    ws = DummyWebSocket()
    await greeted(ws)

    async with SignalingChannel(ws) as channel:
        pending = asyncio.create_task(channel.request(wire.CreateRoom(room_id="r1", password="pw12")))
        frame = await answer_next_request(ws, is_admin=True)
        ack = await pending

    assert frame["type"] == "create-room"
    assert frame["password"] == "pw12"
    assert ack.success
    assert ack.request_id == frame["request_id"]
    assert getattr(ack, "is_admin") is True


@pytest.mark.asyncio
async def test_failed_ack_raises():
    ws = DummyWebSocket()
    await greeted(ws)

    async with SignalingChannel(ws) as channel:
        pending = asyncio.create_task(channel.request(wire.JoinRoom(room_id="r1", password="bad")))
        await wait_until(lambda: ws.sent)
        request_id = ws.sent_frames()[0]["request_id"]
        await ws.queue_message({"type": "ack", "request_id": request_id, "success": False, "error": "bad_credentials"})

        with pytest.raises(SignalingRequestError) as excinfo:
            await pending

    assert excinfo.value.error == "bad_credentials"
    assert excinfo.value.ack.request_id == request_id


@pytest.mark.asyncio
async def test_push_frames_reach_handler_in_order():
    ws = DummyWebSocket()
    received: list = []

    async def handle(message) -> None:
        received.append(message)

    await greeted(ws)
    async with SignalingChannel(ws, on_message=handle):
        await ws.queue_raw("{broken")
        await ws.queue_raw(b"\x00binary")
        await ws.queue_message({"type": "user-joined", "room_id": "r1", "connection_id": "cam"})
        await ws.queue_message({"type": "error", "error": "invalid_request", "detail": "bad frame"})
        await ws.queue_message({"type": "admin-assigned", "room_id": "r1"})
        await wait_until(lambda: len(received) == 3)

    assert [type(message) for message in received] == [wire.UserJoined, wire.ErrorMessage, wire.AdminAssigned]


@pytest.mark.asyncio
async def test_lost_connection_fails_pending_requests():
    ws = DummyWebSocket()
    closed = asyncio.Event()

    async def on_closed() -> None:
        closed.set()

    await greeted(ws)
    async with SignalingChannel(ws) as channel:
        channel.on_closed = on_closed
        pending = asyncio.create_task(channel.request(wire.GetRoomInfo(room_id="r1")))
        await wait_until(lambda: ws.sent)
        await ws.finish()

        with pytest.raises(ChannelClosedError):
            await pending
        await asyncio.wait_for(closed.wait(), timeout=1)
        assert channel.closed

        with pytest.raises(ChannelClosedError):
            await channel.send(wire.LeaveRoom(room_id="r1"))


@pytest.mark.asyncio
async def test_connect_channel_opens_websocket(monkeypatch):
    ws = DummyWebSocket()
    await greeted(ws, "conn-9")
    urls: list[str] = []

    class DummyConnect:
        def __init__(self, url: str) -> None:
            urls.append(url)

        async def __aenter__(self) -> DummyWebSocket:
            return ws

        async def __aexit__(self, exc_type, exc, tb) -> bool:
            return False

    monkeypatch.setattr(
        channel_module,
        "websockets",
        SimpleNamespace(connect=DummyConnect, ConnectionClosed=websockets.ConnectionClosed),
    )

    async with channel_module.connect_channel("ws://localhost:8080/api/signaling") as channel:
        assert channel.connection_id == "conn-9"

    assert urls == ["ws://localhost:8080/api/signaling"]
    assert ws.closed


@pytest.mark.asyncio
async def test_room_client_routes_frames_to_room_coordinator():
    ws = DummyWebSocket()
    factory = FakeTransportFactory()
    events: list = []
    await greeted(ws, "ctrl")

    async with SignalingChannel(ws) as channel:
        client = RoomClient(channel, factory, capture_ready=True, on_event=events.append)
        pending = asyncio.create_task(client.create_room("r1", "pw12", name="Yard"))
        await answer_next_request(ws, room_id="r1", is_admin=True)
        await pending

        coordinator = client.coordinator("r1")
        assert coordinator is not None

        await ws.queue_message(
            {
                "type": "participants-updated",
                "room_id": "r1",
                "participants": [
                    {"connection_id": "ctrl", "is_admin": True},
                    {"connection_id": "cam", "has_video": True},
                ],
            }
        )
        await wait_until(lambda: any(frame["type"] == "offer" for frame in ws.sent_frames()))
        offer = [frame for frame in ws.sent_frames() if frame["type"] == "offer"][0]
        assert offer["target_connection_id"] == "cam"
        assert coordinator.is_controller

        await ws.queue_message({"type": "kicked", "room_id": "r1"})
        await wait_until(lambda: client.coordinator("r1") is None)
        assert coordinator.closed
        assert [type(event) for event in events] == [wire.ParticipantsUpdated, wire.Kicked]

        await client.close()
    assert client.state == "disconnected"


@pytest.mark.asyncio
async def test_room_client_drops_coordinator_when_join_fails():
    ws = DummyWebSocket()
    await greeted(ws, "cam")

    async with SignalingChannel(ws) as channel:
        client = RoomClient(channel, FakeTransportFactory())
        pending = asyncio.create_task(client.join_room("r1", "wrong"))
        await wait_until(lambda: ws.sent)
        request_id = ws.sent_frames()[0]["request_id"]
        await ws.queue_message({"type": "ack", "request_id": request_id, "success": False, "error": "bad_credentials"})

        with pytest.raises(SignalingRequestError):
            await pending
        assert client.coordinator("r1") is None


@pytest.mark.asyncio
async def test_room_client_closes_sessions_when_channel_is_lost():
    ws = DummyWebSocket()
    await greeted(ws, "ctrl")

    async with SignalingChannel(ws) as channel:
        client = RoomClient(channel, FakeTransportFactory(), capture_ready=True)
        pending = asyncio.create_task(client.create_room("r1", "pw12"))
        await answer_next_request(ws)
        await pending
        coordinator = client.coordinator("r1")

        await ws.finish()
        await wait_until(lambda: client.state == "disconnected")

        assert coordinator.closed
        assert client.coordinators == {}


@pytest.mark.asyncio
async def test_room_info_parses_ack_payload():
    ws = DummyWebSocket()
    await greeted(ws, "cam")

    async with SignalingChannel(ws) as channel:
        client = RoomClient(channel, FakeTransportFactory())
        pending = asyncio.create_task(client.room_info("r1"))
        await answer_next_request(
            ws,
            room={
                "id": "r1",
                "name": "Yard",
                "is_admin": False,
                "participants": [{"connection_id": "ctrl", "is_admin": True}, {"connection_id": "cam"}],
            },
        )
        info = await pending

    assert info.name == "Yard"
    assert [participant.connection_id for participant in info.participants] == ["ctrl", "cam"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_receive_loop():
    ws = DummyWebSocket()
    received: list = []

    async def handle(message) -> None:
        if isinstance(message, wire.Kicked):
            raise RuntimeError("transport close failed")
        received.append(message)

    await greeted(ws)
    async with SignalingChannel(ws, on_message=handle) as channel:
        await ws.queue_message({"type": "kicked", "room_id": "r1"})
        await ws.queue_message({"type": "admin-assigned", "room_id": "r2"})
        await wait_until(lambda: received)

        assert not channel.closed
        pending = asyncio.create_task(channel.request(wire.GetRoomInfo(room_id="r2")))
        await answer_next_request(ws, room={"id": "r2", "name": "r2", "participants": []})
        assert (await pending).success

    assert [type(message) for message in received] == [wire.AdminAssigned]

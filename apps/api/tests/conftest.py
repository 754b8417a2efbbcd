"""Shared fakes for negotiation and signaling tests."""
from __future__ import annotations

import asyncio
import time
from typing import Callable

import pytest

from camlink.client.metrics import TransportCounters
from camlink.client.session import SessionRole
from camlink.client.transport import PeerTransport


class FakeTransport(PeerTransport):
    """Records every call instead of talking to a network."""

    def __init__(self, remote_id: str = "", role: SessionRole = SessionRole.INITIATOR) -> None:
        super().__init__()
        self.remote_id = remote_id
        self.role = role
        self.offers: list[bool] = []
        self.answers = 0
        self.local: dict | None = None
        self.remote: dict | None = None
        self.remote_history: list[dict] = []
        self.candidates: list[dict] = []
        self.closed = False
        self.counters = TransportCounters(timestamp=time.monotonic())
        self.tracks: list = []

    def add_local_tracks(self, tracks) -> None:
        self.tracks.extend(tracks)

    async def create_offer(self, ice_restart: bool = False) -> dict:
        self.offers.append(ice_restart)
        return {"type": "offer", "sdp": f"offer-{self.remote_id}-{len(self.offers)}"}

    async def create_answer(self) -> dict:
        self.answers += 1
        return {"type": "answer", "sdp": f"answer-{self.remote_id}-{self.answers}"}

    async def set_local_description(self, description: dict) -> dict:
        self.local = description
        return description

    async def set_remote_description(self, description: dict) -> None:
        self.remote = description
        self.remote_history.append(description)

    async def add_ice_candidate(self, candidate: dict) -> None:
        assert self.remote is not None, "candidate applied before remote description"
        self.candidates.append(candidate)

    async def get_counters(self) -> TransportCounters:
        return self.counters

    async def close(self) -> None:
        self.closed = True


class FakeTransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []

    def __call__(self, remote_id: str, role: SessionRole) -> FakeTransport:
        transport = FakeTransport(remote_id, role)
        self.created.append(transport)
        return transport

    def for_remote(self, remote_id: str) -> list[FakeTransport]:
        return [transport for transport in self.created if transport.remote_id == remote_id]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def eventually():
    return wait_until

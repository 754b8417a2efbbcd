"""Peer transport capability consumed by media sessions.

Descriptions and candidates cross this boundary as plain dicts in their
browser JSON shapes: ``{"type": "offer", "sdp": ...}`` and
``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``.
"""
from __future__ import annotations

import abc
from typing import Any, Callable, Iterable, Optional

from .metrics import TransportCounters

Description = dict[str, Any]
Candidate = dict[str, Any]

CONNECTED_STATES = frozenset({"connected", "completed"})
FAILED_STATES = frozenset({"failed"})


class PeerTransport(abc.ABC):
    """One peer-to-peer media connection.

    Implementations call ``on_ice_candidate`` for every local candidate,
    ``on_connection_state`` with the new connectivity state string, and
    ``on_track`` with each received media track. Callbacks are plain
    callables invoked on the event loop thread.
    """

    def __init__(self) -> None:
        self.on_ice_candidate: Optional[Callable[[Candidate], None]] = None
        self.on_connection_state: Optional[Callable[[str], None]] = None
        self.on_track: Optional[Callable[[Any], None]] = None

    @abc.abstractmethod
    def add_local_tracks(self, tracks: Iterable[Any]) -> None:
        """Attach local media tracks to be sent to the peer."""

    @abc.abstractmethod
    async def create_offer(self, ice_restart: bool = False) -> Description:
        ...

    @abc.abstractmethod
    async def create_answer(self) -> Description:
        ...

    @abc.abstractmethod
    async def set_local_description(self, description: Description) -> Description:
        """Apply a local description and return the one to send to the peer."""

    @abc.abstractmethod
    async def set_remote_description(self, description: Description) -> None:
        ...

    @abc.abstractmethod
    async def add_ice_candidate(self, candidate: Candidate) -> None:
        ...

    @abc.abstractmethod
    async def get_counters(self) -> TransportCounters:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...

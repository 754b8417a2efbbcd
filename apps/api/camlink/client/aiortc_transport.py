"""Peer transport backed by aiortc's RTCPeerConnection."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Iterable

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp

from ..core.config import settings
from .metrics import TransportCounters
from .session import SessionRole
from .transport import Candidate, Description, PeerTransport

logger = logging.getLogger(__name__)


class AiortcTransport(PeerTransport):
    """aiortc connection that counts decoded video frames for metrics.

    aiortc gathers candidates before ``setLocalDescription`` returns and
    embeds them in the SDP, so ``on_ice_candidate`` is never called and the
    returned local description already carries every candidate. aiortc also
    has no ICE restart; an ``ice_restart`` offer is an ordinary re-offer.
    """

    def __init__(self, tracks: Iterable[Any] = (), ice_servers: list[str] | None = None) -> None:
        super().__init__()
        servers = [RTCIceServer(urls=url) for url in (ice_servers if ice_servers is not None else settings.ice_servers)]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))
        self._relay = MediaRelay()
        self._frames_decoded = 0
        self._counters: set[asyncio.Task[None]] = set()

        self.add_local_tracks(tracks)

        @self._pc.on("connectionstatechange")
        async def _on_state() -> None:
            state = self._pc.connectionState
            logger.debug("aiortc connection state: %s", state)
            if self.on_connection_state:
                self.on_connection_state(state)

        @self._pc.on("track")
        def _on_track(track) -> None:
            if track.kind == "video":
                task = asyncio.ensure_future(self._count_frames(self._relay.subscribe(track)))
                self._counters.add(task)
                task.add_done_callback(self._counters.discard)
                track = self._relay.subscribe(track)
            if self.on_track:
                self.on_track(track)

    def add_local_tracks(self, tracks: Iterable[Any]) -> None:
        for track in tracks:
            self._pc.addTrack(track)

    async def create_offer(self, ice_restart: bool = False) -> Description:
        if not self._pc.getTransceivers():
            self._pc.addTransceiver("video", direction="recvonly")
            self._pc.addTransceiver("audio", direction="recvonly")
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Description:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Description) -> Description:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))
        local = self._pc.localDescription
        return {"type": local.type, "sdp": local.sdp}

    async def set_remote_description(self, description: Description) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        line = candidate.get("candidate") or ""
        if not line:
            return
        if line.startswith("candidate:"):
            line = line.split(":", 1)[1]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    async def get_counters(self) -> TransportCounters:
        stats = await self._pc.getStats()
        bytes_received = 0
        packets_received = 0
        packets_lost = 0
        for report in stats.values():
            if report.type == "inbound-rtp" and getattr(report, "kind", None) == "video":
                bytes_received += getattr(report, "bytesReceived", 0) or 0
                packets_received += getattr(report, "packetsReceived", 0) or 0
                packets_lost += getattr(report, "packetsLost", 0) or 0

        if bytes_received == 0:
            for report in stats.values():
                if report.type == "transport":
                    bytes_received += getattr(report, "bytesReceived", 0) or 0

        return TransportCounters(
            timestamp=time.monotonic(),
            frames_decoded=self._frames_decoded,
            bytes_received=bytes_received,
            packets_received=packets_received,
            packets_lost=max(0, packets_lost),
        )

    async def close(self) -> None:
        for task in list(self._counters):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._pc.close()

    async def _count_frames(self, track) -> None:
        while True:
            try:
                await track.recv()
            except MediaStreamError:
                return
            self._frames_decoded += 1


def transport_factory(tracks: Iterable[Any] = ()):
    """Build a coordinator transport factory.

    Sources pass their captured tracks; a receive-only controller passes none.
    """

    local_tracks = list(tracks)

    def _factory(remote_id: str, role: SessionRole) -> PeerTransport:
        logger.debug("Creating aiortc transport for %s as %s", remote_id, role.value)
        return AiortcTransport(tracks=local_tracks if role is SessionRole.RESPONDER else ())

    return _factory

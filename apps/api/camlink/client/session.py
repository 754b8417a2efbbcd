"""Media session: one negotiated peer connection and its state machine."""
from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from typing import Coroutine, Deque, Dict

from .metrics import MediaSample, MetricsSampler
from .transport import Candidate, Description, PeerTransport

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class SessionRole(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class InvalidTransition(RuntimeError):
    """Raised when an operation is not allowed in the session's state."""


_OFFER_FROM = {SessionState.IDLE, SessionState.CONNECTED, SessionState.FAILED}
_ACCEPT_OFFER_IN = {SessionState.IDLE, SessionState.CONNECTED, SessionState.FAILED}


class MediaSession:
    """State machine around a single :class:`PeerTransport`.

    Callers serialize transitions by holding :attr:`lock`. Remote ICE
    candidates that arrive before any remote description are queued and
    applied in arrival order as soon as one is set; after that the queue is
    never used again.
    """

    def __init__(
        self,
        room_id: str,
        remote_id: str,
        role: SessionRole,
        transport: PeerTransport,
        generation: int = 0,
    ) -> None:
        self.room_id = room_id
        self.remote_id = remote_id
        self.role = role
        self.transport = transport
        self.generation = generation
        self.state = SessionState.IDLE
        self.pending_remote_candidates: Deque[Candidate] = deque()
        self.connectivity = "new"
        self.ice_restart_attempted = False
        self.lock = asyncio.Lock()
        self._remote_description_set = False
        self._sampler = MetricsSampler()
        self._timers: Dict[str, asyncio.Task[None]] = {}

    def __repr__(self) -> str:
        return (
            f"MediaSession(room={self.room_id!r}, remote={self.remote_id!r}, role={self.role.value}, "
            f"state={self.state.value}, generation={self.generation})"
        )

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description_set

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # Transitions

    async def create_offer(self, ice_restart: bool = False) -> Description:
        """IDLE (or CONNECTED/FAILED for renegotiation) -> OFFER_SENT."""

        if self.role is not SessionRole.INITIATOR:
            raise InvalidTransition("only the initiator sends offers")
        if self.state not in _OFFER_FROM:
            raise InvalidTransition(f"cannot offer from {self.state.value}")

        offer = await self.transport.create_offer(ice_restart=ice_restart)
        local = await self.transport.set_local_description(offer)
        self._set_state(SessionState.OFFER_SENT)
        return local

    async def receive_offer(self, offer: Description) -> None:
        """IDLE -> OFFER_RECEIVED; a repeated offer on a live session renegotiates."""

        if self.role is not SessionRole.RESPONDER:
            raise InvalidTransition("only the responder accepts offers")
        if self.state not in _ACCEPT_OFFER_IN:
            raise InvalidTransition(f"cannot accept an offer in {self.state.value}")

        await self._apply_remote_description(offer)
        self._set_state(SessionState.OFFER_RECEIVED)

    async def create_answer(self) -> Description:
        """OFFER_RECEIVED -> CONNECTED."""

        if self.state is not SessionState.OFFER_RECEIVED:
            raise InvalidTransition(f"cannot answer in {self.state.value}")

        answer = await self.transport.create_answer()
        local = await self.transport.set_local_description(answer)
        self._set_state(SessionState.CONNECTED)
        return local

    async def receive_answer(self, answer: Description) -> bool:
        """OFFER_SENT -> CONNECTED. Returns False when the answer is discarded."""

        if self.role is not SessionRole.INITIATOR or self.state is not SessionState.OFFER_SENT:
            logger.debug("Discarding answer for %r", self)
            return False

        await self._apply_remote_description(answer)
        self._set_state(SessionState.CONNECTED)
        return True

    async def add_remote_candidate(self, candidate: Candidate) -> bool:
        """Apply a remote candidate, or queue it. Returns True when applied now."""

        if self.is_closed:
            return False
        if not self._remote_description_set:
            self.pending_remote_candidates.append(candidate)
            return False
        await self.transport.add_ice_candidate(candidate)
        return True

    def mark_failed(self, reason: str) -> None:
        if self.is_closed:
            return
        logger.info("Session %s/%s failed: %s", self.room_id, self.remote_id, reason)
        self._set_state(SessionState.FAILED)

    async def close(self) -> None:
        """Any state -> CLOSED; idempotent."""

        if self.is_closed:
            return
        self._set_state(SessionState.CLOSED)
        self.pending_remote_candidates.clear()
        self.cancel_timers()
        await self.transport.close()

    # Timers

    def arm_timer(self, name: str, coro: Coroutine[object, object, None]) -> None:
        """Run ``coro`` as the session's ``name`` timer, replacing any previous one."""

        self.cancel_timer(name)
        task = asyncio.create_task(coro)
        self._timers[name] = task
        task.add_done_callback(lambda done, key=name: self._forget_timer(key, done))

    def has_timer(self, name: str) -> bool:
        task = self._timers.get(name)
        return task is not None and not task.done()

    def cancel_timer(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def cancel_timers(self) -> None:
        for name in list(self._timers):
            self.cancel_timer(name)

    def _forget_timer(self, name: str, task: asyncio.Task[None]) -> None:
        if self._timers.get(name) is task:
            self._timers.pop(name, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timer %s of %r failed", name, self, exc_info=task.exception())

    # Metrics

    async def sample(self) -> MediaSample:
        counters = await self.transport.get_counters()
        return self._sampler.sample(counters)

    # Internals

    async def _apply_remote_description(self, description: Description) -> None:
        await self.transport.set_remote_description(description)
        if self._remote_description_set:
            return
        while self.pending_remote_candidates:
            candidate = self.pending_remote_candidates.popleft()
            try:
                await self.transport.add_ice_candidate(candidate)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Dropping buffered candidate for %s: %s", self.remote_id, exc)
        self._remote_description_set = True

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("Session %s/%s: %s -> %s", self.room_id, self.remote_id, self.state.value, state.value)
        self.state = state


"""Per-room negotiation coordinator.

The controller (the room admin) is always the initiator toward every source
that reports video; sources only ever answer. Each remote peer gets at most
one :class:`MediaSession`, and every transition of a session happens while
holding that session's lock.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from ..core.config import settings
from ..schemas import signaling as wire
from .backoff import BackoffPolicy
from .metrics import MediaSample
from .session import MediaSession, SessionRole, SessionState
from .transport import CONNECTED_STATES, FAILED_STATES, Candidate, PeerTransport

logger = logging.getLogger(__name__)

SendCallable = Callable[[BaseModel], Awaitable[None]]
TransportFactory = Callable[[str, SessionRole], PeerTransport]
ErrorHandler = Callable[[str, str, str], None]
MetricsHandler = Callable[[str, MediaSample], None]
TrackHandler = Callable[[str, Any], None]

OFFER_TIMER = "offer-timeout"
ICE_RESTART_TIMER = "ice-restart"
RECREATE_TIMER = "recreate"


class NegotiationCoordinator:
    """Drive the media sessions of one local participant in one room."""

    def __init__(
        self,
        room_id: str,
        local_id: str,
        send: SendCallable,
        transport_factory: TransportFactory,
        *,
        capture_ready: bool = False,
        backoff: BackoffPolicy | None = None,
        offer_timeout: float | None = None,
        ice_restart_window: float | None = None,
        on_error: ErrorHandler | None = None,
        on_metrics: MetricsHandler | None = None,
        on_track: TrackHandler | None = None,
    ) -> None:
        self.room_id = room_id
        self.local_id = local_id
        self.sessions: Dict[str, MediaSession] = {}
        self.is_controller = False
        self.admin_id: Optional[str] = None
        self.capture_ready = capture_ready
        self.gave_up: set[str] = set()
        self.closed = False

        self._send = send
        self._transport_factory = transport_factory
        self._backoff = backoff or BackoffPolicy.from_settings()
        self._offer_timeout = offer_timeout if offer_timeout is not None else settings.offer_timeout_seconds
        self._ice_restart_window = (
            ice_restart_window if ice_restart_window is not None else settings.ice_restart_window_seconds
        )
        self._on_error = on_error
        self._on_metrics = on_metrics
        self._on_track = on_track
        self._participants: Dict[str, wire.ParticipantInfo] = {}
        self._generations: Dict[str, int] = {}
        self._attempts: Dict[str, int] = {}
        self._recreating: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    # Incoming signaling

    async def handle(self, message: BaseModel) -> None:
        """React to one server frame addressed to this room."""

        if self.closed or getattr(message, "room_id", None) != self.room_id:
            return
        if isinstance(message, wire.ParticipantsUpdated):
            await self.on_participants(message.participants)
        elif isinstance(message, wire.RelayedOffer):
            await self.on_offer(message)
        elif isinstance(message, wire.RelayedAnswer):
            await self.on_answer(message)
        elif isinstance(message, wire.RelayedIceCandidate):
            await self.on_candidate(message)
        elif isinstance(message, wire.UserLeft):
            await self.close_session(message.connection_id, "peer left")
        elif isinstance(message, wire.Kicked):
            logger.info("Kicked from room %s", self.room_id)
            await self.close()
        elif isinstance(message, wire.AdminAssigned):
            await self.on_admin_assigned()

    async def on_participants(self, participants: list[wire.ParticipantInfo]) -> None:
        """Reconcile sessions with a full membership snapshot."""

        self._participants = {participant.connection_id: participant for participant in participants}
        me = self._participants.get(self.local_id)
        if me is None:
            await self.close_all("no longer a member")
            return

        admin = next((participant for participant in participants if participant.is_admin), None)
        self.admin_id = admin.connection_id if admin else None
        if me.is_admin != self.is_controller:
            logger.info("Local role in %s is now %s", self.room_id, "controller" if me.is_admin else "source")
            self.is_controller = me.is_admin
            await self.close_all("role changed")

        for remote_id in list(self.sessions):
            if remote_id not in self._participants:
                await self.close_session(remote_id, "peer left")
            elif not self.is_controller and remote_id != self.admin_id:
                await self.close_session(remote_id, "admin changed")

        await self._ensure_sessions()

    async def on_admin_assigned(self) -> None:
        if self.is_controller:
            return
        logger.info("Promoted to admin of room %s", self.room_id)
        self.is_controller = True
        self.admin_id = self.local_id
        if self.local_id in self._participants:
            self._participants[self.local_id] = self._participants[self.local_id].model_copy(
                update={"is_admin": True}
            )
        await self.close_all("role changed")
        await self._ensure_sessions()

    async def on_offer(self, message: wire.RelayedOffer) -> None:
        remote_id = message.from_connection_id
        if self.is_controller:
            logger.debug("Controller ignores offer from %s", remote_id)
            return
        if self.admin_id is not None and remote_id != self.admin_id:
            logger.debug("Ignoring offer from non-admin %s", remote_id)
            return

        session = self.sessions.get(remote_id)
        if session is not None and message.generation < session.generation:
            logger.debug("Ignoring stale offer generation %s from %s", message.generation, remote_id)
            return
        if session is not None and message.generation > session.generation:
            await self.close_session(remote_id, "initiator recreated the session")
            session = None
        if session is None:
            session = self._new_session(remote_id, SessionRole.RESPONDER, message.generation)

        async with session.lock:
            if session.is_closed:
                return
            try:
                await session.receive_offer(message.payload)
                answer = await session.create_answer()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Answering %s failed: %s", remote_id, exc)
                await self._fail_locked(session, f"answer failed: {exc}")
                return
            await self._send(
                wire.Answer(
                    room_id=self.room_id,
                    target_connection_id=remote_id,
                    payload=answer,
                    generation=session.generation,
                )
            )

    async def on_answer(self, message: wire.RelayedAnswer) -> None:
        session = self._current(message.from_connection_id, message.generation)
        if session is None:
            logger.debug("Discarding answer from %s", message.from_connection_id)
            return
        async with session.lock:
            try:
                accepted = await session.receive_answer(message.payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Applying answer from %s failed: %s", session.remote_id, exc)
                await self._fail_locked(session, f"answer rejected: {exc}")
                return
            if accepted:
                session.cancel_timer(OFFER_TIMER)

    async def on_candidate(self, message: wire.RelayedIceCandidate) -> None:
        session = self._current(message.from_connection_id, message.generation)
        if session is None:
            logger.debug("Discarding candidate from %s", message.from_connection_id)
            return
        async with session.lock:
            try:
                await session.add_remote_candidate(message.payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Adding candidate from %s failed: %s", session.remote_id, exc)

    # Local triggers

    async def set_capture_ready(self, ready: bool = True) -> None:
        """Mark local media as ready; an initiator then offers to waiting sources."""

        self.capture_ready = ready
        if ready:
            await self._ensure_sessions()

    async def restart_connection(self, remote_id: str) -> bool:
        """Tear down and renegotiate the session with ``remote_id`` from scratch."""

        if not self.is_controller or remote_id not in self._participants:
            return False
        self._recreating.add(remote_id)
        try:
            await self.close_session(remote_id, "restart requested")
        finally:
            self._recreating.discard(remote_id)
        self._attempts.pop(remote_id, None)
        self.gave_up.discard(remote_id)
        if self.is_controller and remote_id in self._participants and remote_id not in self.sessions:
            await self._start_initiator(remote_id)
        return True

    async def close_session(self, remote_id: str, reason: str) -> None:
        session = self.sessions.pop(remote_id, None)
        if session is None:
            return
        logger.info("Closing session with %s in %s: %s", remote_id, self.room_id, reason)
        async with session.lock:
            await session.close()

    async def close_all(self, reason: str) -> None:
        for remote_id in list(self.sessions):
            await self.close_session(remote_id, reason)

    async def close(self) -> None:
        """Close every session and stop all background work."""

        self.closed = True
        for task in list(self._tasks):
            task.cancel()
        await self.close_all("coordinator closed")
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # Metrics

    def start_metrics(self, interval: float | None = None) -> None:
        self._spawn(self._metrics_loop(interval or settings.stats_interval_seconds))

    async def collect_metrics(self) -> Dict[str, MediaSample]:
        """Sample every live session that has a remote description, whatever its negotiation state."""

        samples: Dict[str, MediaSample] = {}
        for remote_id, session in list(self.sessions.items()):
            if session.is_closed or not session.has_remote_description:
                continue
            try:
                samples[remote_id] = await session.sample()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Sampling %s failed: %s", remote_id, exc)
                continue
            if self._on_metrics:
                self._on_metrics(remote_id, samples[remote_id])
        return samples

    async def _metrics_loop(self, interval: float) -> None:
        while not self.closed:
            await asyncio.sleep(interval)
            await self.collect_metrics()

    # Session lifecycle

    async def _ensure_sessions(self) -> None:
        if not self.is_controller or not self.capture_ready:
            return
        for remote_id, participant in list(self._participants.items()):
            if remote_id == self.local_id or not participant.has_video:
                continue
            if remote_id in self.sessions or remote_id in self.gave_up or remote_id in self._recreating:
                continue
            await self._start_initiator(remote_id)

    async def _start_initiator(self, remote_id: str) -> None:
        generation = self._generations.get(remote_id, -1) + 1
        self._generations[remote_id] = generation
        session = self._new_session(remote_id, SessionRole.INITIATOR, generation)
        async with session.lock:
            await self._send_offer_locked(session)

    def _new_session(self, remote_id: str, role: SessionRole, generation: int) -> MediaSession:
        transport = self._transport_factory(remote_id, role)
        session = MediaSession(self.room_id, remote_id, role, transport, generation=generation)
        transport.on_ice_candidate = lambda candidate: self._spawn(self._send_candidate(session, candidate))
        transport.on_connection_state = lambda state: self._spawn(self._on_connectivity(session, state))
        if self._on_track:
            transport.on_track = lambda track: self._on_track(remote_id, track)
        self.sessions[remote_id] = session
        logger.debug("Created %r", session)
        return session

    def _current(self, remote_id: str, generation: int) -> Optional[MediaSession]:
        session = self.sessions.get(remote_id)
        if session is None or session.generation != generation:
            return None
        return session

    async def _send_offer_locked(self, session: MediaSession, ice_restart: bool = False) -> None:
        try:
            offer = await session.create_offer(ice_restart=ice_restart)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Creating offer for %s failed: %s", session.remote_id, exc)
            session.mark_failed(f"offer failed: {exc}")
            await self._schedule_recreate(session, f"offer failed: {exc}")
            return
        await self._send(
            wire.Offer(
                room_id=self.room_id,
                target_connection_id=session.remote_id,
                payload=offer,
                generation=session.generation,
            )
        )
        session.arm_timer(OFFER_TIMER, self._offer_timeout_after(session, self._offer_timeout))
        logger.info("Offer sent to %s in %s (generation %s)", session.remote_id, self.room_id, session.generation)

    async def _send_candidate(self, session: MediaSession, candidate: Candidate) -> None:
        # Waits for the offer or answer that produced the candidate to go out first.
        async with session.lock:
            if session.is_closed or self.sessions.get(session.remote_id) is not session:
                return
            await self._send(
                wire.IceCandidate(
                    room_id=self.room_id,
                    target_connection_id=session.remote_id,
                    payload=candidate,
                    generation=session.generation,
                )
            )

    async def _on_connectivity(self, session: MediaSession, state: str) -> None:
        async with session.lock:
            if session.is_closed:
                return
            session.connectivity = state
            if state in CONNECTED_STATES:
                session.cancel_timer(ICE_RESTART_TIMER)
                session.ice_restart_attempted = False
                self._attempts.pop(session.remote_id, None)
            elif state in FAILED_STATES:
                await self._fail_locked(session, "transport failed")

    async def _offer_timeout_after(self, session: MediaSession, delay: float) -> None:
        await asyncio.sleep(delay)
        async with session.lock:
            if session.state is SessionState.OFFER_SENT:
                await self._fail_locked(session, "offer timed out")

    async def _ice_restart_watchdog(self, session: MediaSession, delay: float) -> None:
        await asyncio.sleep(delay)
        async with session.lock:
            if session.is_closed or session.connectivity in CONNECTED_STATES:
                return
            await self._schedule_recreate(session, "ICE restart did not recover")

    async def _fail_locked(self, session: MediaSession, reason: str) -> None:
        """FAILED path: one ICE restart, then recreate with backoff."""

        if session.is_closed:
            return
        session.mark_failed(reason)
        session.cancel_timer(OFFER_TIMER)
        if session.role is SessionRole.RESPONDER:
            return

        if not session.ice_restart_attempted:
            session.ice_restart_attempted = True
            logger.info("Attempting ICE restart with %s in %s", session.remote_id, self.room_id)
            session.arm_timer(ICE_RESTART_TIMER, self._ice_restart_watchdog(session, self._ice_restart_window))
            await self._send_offer_locked(session, ice_restart=True)
            return

        await self._schedule_recreate(session, reason)

    async def _schedule_recreate(self, session: MediaSession, reason: str) -> None:
        remote_id = session.remote_id
        if session.has_timer(RECREATE_TIMER):
            return
        session.cancel_timers()
        attempt = self._attempts.get(remote_id, 0) + 1
        self._attempts[remote_id] = attempt
        if self._backoff.exhausted(attempt):
            logger.warning(
                "Giving up on %s in %s after %s attempts: %s", remote_id, self.room_id, attempt - 1, reason
            )
            self.gave_up.add(remote_id)
            if self.sessions.get(remote_id) is session:
                del self.sessions[remote_id]
            await session.close()
            if self._on_error:
                self._on_error(self.room_id, remote_id, reason)
            return

        delay = self._backoff.delay(attempt)
        logger.info("Recreating session with %s in %.1fs (attempt %s): %s", remote_id, delay, attempt, reason)
        session.arm_timer(RECREATE_TIMER, self._recreate_after(session, delay))

    async def _recreate_after(self, session: MediaSession, delay: float) -> None:
        await asyncio.sleep(delay)
        remote_id = session.remote_id
        if self.closed or self.sessions.get(remote_id) is not session:
            return
        del self.sessions[remote_id]
        self._recreating.add(remote_id)
        try:
            async with session.lock:
                await session.close()
        finally:
            self._recreating.discard(remote_id)
        participant = self._participants.get(remote_id)
        if self.closed or remote_id in self.sessions:
            return
        if self.is_controller and participant is not None:
            await self._start_initiator(remote_id)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background negotiation task failed", exc_info=task.exception())

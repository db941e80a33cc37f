"""
Session negotiator: one state machine per remote peer.

    idle -> negotiating(offerer | answerer) -> connection-pending -> connected -> closed | failed

The peer that observes another peer's join becomes the offerer; a joining
peer never offers on its own and waits for offers instead. Signals and
transport callbacks for the same peer are serialised by a per-peer lock;
different peers negotiate independently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from .errors import NegotiationFailed
from .events import EventChannel, ShareDropEvents
from .models import SignalMessage, SignalType
from .transport import CONNECTED, TERMINAL_STATES, Transport, TransportFactory

logger = logging.getLogger(__name__)

SignalSender = Callable[[SignalType, str, Dict[str, Any]], Awaitable[Any]]
ChannelMessageHandler = Callable[[str, str], None]


class NegotiationState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTION_PENDING = "connection-pending"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


class Role(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


class PeerSession:
    def __init__(self, peer_id: str, role: Role, display_name: Optional[str] = None):
        self.peer_id = peer_id
        self.role = role
        self.display_name = display_name
        self.state = NegotiationState.IDLE
        self.transport: Optional[Transport] = None
        self.transport_connected = False
        self.channel_ready = False
        self.description_sent = False
        # Remote candidates that arrived before the remote description
        self.pending_remote_candidates: List[Dict[str, Any]] = []
        # Local candidates gathered before our offer/answer went out
        self.pending_local_candidates: List[Dict[str, Any]] = []

    @property
    def closed(self) -> bool:
        return self.state in (NegotiationState.CLOSED, NegotiationState.FAILED)

    @property
    def connected(self) -> bool:
        return self.state is NegotiationState.CONNECTED

    def __repr__(self):
        return f"<PeerSession {self.peer_id} {self.role.value} {self.state.value}>"


class SessionNegotiator:
    def __init__(
        self,
        local_id: str,
        transport_factory: TransportFactory,
        send_signal: SignalSender,
        events: Optional[ShareDropEvents] = None,
        on_channel_message: Optional[ChannelMessageHandler] = None,
    ):
        self.local_id = local_id
        self.transport_factory = transport_factory
        self.events = events or ShareDropEvents()
        self.sessions: Dict[str, PeerSession] = {}
        # Fired with the peer id before peer_disconnected; used to abort transfers
        self.session_closed = EventChannel("session_closed")
        self._send_signal = send_signal
        self._on_channel_message = on_channel_message
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    @asynccontextmanager
    async def _lock(self, peer_id: str):
        """Hold the peer's lock; the entry is dropped once nobody holds or waits on it"""
        lock = self._locks.get(peer_id)
        if lock is None:
            lock = self._locks[peer_id] = asyncio.Lock()
        self._lock_users[peer_id] = self._lock_users.get(peer_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[peer_id] -= 1
            if not self._lock_users[peer_id]:
                del self._lock_users[peer_id]
                if peer_id not in self.sessions:
                    del self._locks[peer_id]

    def get_session(self, peer_id: str) -> Optional[PeerSession]:
        return self.sessions.get(peer_id)

    def transport_for(self, peer_id: str) -> Optional[Transport]:
        session = self.sessions.get(peer_id)
        if session is None or session.closed:
            return None
        return session.transport

    @property
    def connected_sessions(self) -> List[PeerSession]:
        return [s for s in self.sessions.values() if s.connected]

    # ---- signaling ----

    async def handle_signal(self, signal) -> None:
        """Apply one validated signal (see sharedrop.models.Signal)"""
        handlers = {
            "join": self._on_join,
            "leave": self._on_leave,
            "offer": self._on_offer,
            "answer": self._on_answer,
            "ice-candidate": self._on_ice_candidate,
        }
        if signal.sender == self.local_id:
            return
        async with self._lock(signal.sender):
            await handlers[signal.type](signal)

    async def reject_malformed(self, message: SignalMessage, error: Exception) -> None:
        """Report a signal whose payload failed validation"""
        if message.type not in (SignalType.OFFER, SignalType.ANSWER):
            return
        async with self._lock(message.sender):
            reason = f"malformed {message.type.value}: {error}"
            session = self.sessions.get(message.sender)
            if session is not None:
                await self._fail(session, reason)
            else:
                self._report_failure(message.sender, reason)

    async def _on_join(self, signal) -> None:
        existing = self.sessions.get(signal.sender)
        if existing is not None:
            logger.info(f"ℹ️ Ignoring join from {signal.sender}: session already {existing.state.value}")
            return

        session = self._new_session(signal.sender, Role.OFFERER, signal.from_name)
        session.state = NegotiationState.NEGOTIATING
        logger.info(f"🤝 {signal.sender} joined, negotiating as offerer")
        try:
            offer = await session.transport.create_offer()
            await self._send_description(session, SignalType.OFFER, offer)
        except Exception as e:
            await self._fail(session, f"could not send offer: {e}")

    async def _on_offer(self, signal) -> None:
        peer_id = signal.sender
        session = self.sessions.get(peer_id)
        if session is not None:
            if session.role is Role.OFFERER and session.state is NegotiationState.NEGOTIATING:
                # Both sides offered; the smaller id keeps the offerer role
                if self.local_id < peer_id:
                    logger.warning(f"⚠️ Offer glare with {peer_id}, keeping offerer role")
                    return
                logger.warning(f"⚠️ Offer glare with {peer_id}, switching to answerer")
                await self._close(session, "offer glare", notify=False)
            else:
                await self._fail(session, f"unexpected offer while {session.state.value}")
                return

        session = self._new_session(peer_id, Role.ANSWERER, signal.from_name)
        session.state = NegotiationState.NEGOTIATING
        logger.info(f"🤝 Offer from {peer_id}, negotiating as answerer")
        try:
            answer = await session.transport.create_answer(signal.data.model_dump())
        except Exception as e:
            await self._fail(session, f"could not apply offer: {e}")
            return

        await self._flush_remote_candidates(session)
        try:
            await self._send_description(session, SignalType.ANSWER, answer)
        except Exception as e:
            await self._fail(session, f"could not send answer: {e}")
            return
        session.state = NegotiationState.CONNECTION_PENDING

    async def _on_answer(self, signal) -> None:
        peer_id = signal.sender
        session = self.sessions.get(peer_id)
        if session is None:
            logger.warning(f"⚠️ Answer from {peer_id} without a session, dropping")
            return
        expected = (
            session.role is Role.OFFERER
            and session.state in (NegotiationState.NEGOTIATING, NegotiationState.CONNECTION_PENDING)
            and not session.transport.has_remote_description
        )
        if not expected:
            await self._fail(session, f"unexpected answer while {session.role.value} {session.state.value}")
            return

        try:
            await session.transport.apply_answer(signal.data.model_dump())
        except Exception as e:
            await self._fail(session, f"could not apply answer: {e}")
            return
        session.state = NegotiationState.CONNECTION_PENDING
        await self._flush_remote_candidates(session)

    async def _on_ice_candidate(self, signal) -> None:
        session = self.sessions.get(signal.sender)
        if session is None:
            logger.debug(f"Dropping ICE candidate from {signal.sender}: no session")
            return
        candidate = signal.data.to_wire()
        if session.transport.has_remote_description:
            await self._add_candidate(session, candidate)
        else:
            session.pending_remote_candidates.append(candidate)

    async def _on_leave(self, signal) -> None:
        session = self.sessions.get(signal.sender)
        if session is not None:
            logger.info(f"🚪 {signal.sender} left the room")
            await self._close(session, "peer left")

    # ---- transport callbacks ----

    def _new_session(self, peer_id: str, role: Role, display_name: Optional[str]) -> PeerSession:
        session = PeerSession(peer_id, role, display_name)
        transport = self.transport_factory.create(peer_id)
        session.transport = transport

        transport.on_state_change = lambda state: self._schedule(self._on_transport_state(session, state))
        transport.on_candidate = lambda candidate: self._schedule(self._on_local_candidate(session, candidate))
        transport.on_channel_open = lambda: self._schedule(self._on_channel_open(session))
        transport.on_message = lambda data: self._deliver_channel_message(session, data)

        self.sessions[peer_id] = session
        return session

    def _is_current(self, session: PeerSession) -> bool:
        return not session.closed and self.sessions.get(session.peer_id) is session

    async def _on_transport_state(self, session: PeerSession, state: str) -> None:
        async with self._lock(session.peer_id):
            if not self._is_current(session):
                return
            if state == CONNECTED:
                session.transport_connected = True
                self._maybe_connected(session)
            elif state in TERMINAL_STATES:
                await self._close(session, f"transport {state}")

    async def _on_channel_open(self, session: PeerSession) -> None:
        async with self._lock(session.peer_id):
            if not self._is_current(session):
                return
            session.channel_ready = True
            self._maybe_connected(session)

    def _maybe_connected(self, session: PeerSession) -> None:
        if session.connected or not (session.transport_connected and session.channel_ready):
            return
        session.state = NegotiationState.CONNECTED
        logger.info(f"✅ Connected to {session.display_name or session.peer_id}")
        self.events.peer_connected.emit(session.peer_id, session.display_name)

    async def _on_local_candidate(self, session: PeerSession, candidate: Dict[str, Any]) -> None:
        async with self._lock(session.peer_id):
            if not self._is_current(session):
                return
            if not session.description_sent:
                session.pending_local_candidates.append(candidate)
                return
            await self._send_signal(SignalType.ICE_CANDIDATE, session.peer_id, candidate)

    def _deliver_channel_message(self, session: PeerSession, data: str) -> None:
        if not self._is_current(session) or self._on_channel_message is None:
            return
        self._on_channel_message(session.peer_id, data)

    # ---- helpers ----

    async def _send_description(self, session: PeerSession, type: SignalType, description: Dict[str, Any]) -> None:
        await self._send_signal(type, session.peer_id, description)
        session.description_sent = True
        queued, session.pending_local_candidates = session.pending_local_candidates, []
        for candidate in queued:
            await self._send_signal(SignalType.ICE_CANDIDATE, session.peer_id, candidate)

    async def _flush_remote_candidates(self, session: PeerSession) -> None:
        queued, session.pending_remote_candidates = session.pending_remote_candidates, []
        for candidate in queued:
            await self._add_candidate(session, candidate)

    async def _add_candidate(self, session: PeerSession, candidate: Dict[str, Any]) -> None:
        try:
            await session.transport.add_remote_candidate(candidate)
        except Exception as e:
            logger.warning(f"⚠️ Ignoring bad ICE candidate from {session.peer_id}: {e}")

    async def _close(self, session: PeerSession, reason: str, failed: bool = False, notify: bool = True) -> None:
        """Terminal transition. Caller holds the peer's lock."""
        if session.closed:
            return
        session.state = NegotiationState.FAILED if failed else NegotiationState.CLOSED
        if self.sessions.get(session.peer_id) is session:
            del self.sessions[session.peer_id]
        logger.info(f"❌ Session with {session.peer_id} closed: {reason}")

        self.session_closed.emit(session.peer_id)
        if notify:
            self.events.peer_disconnected.emit(session.peer_id)

        if session.transport is not None:
            try:
                await session.transport.close()
            except Exception as e:
                logger.error(f"❌ Error closing transport to {session.peer_id}: {e}")

    async def _fail(self, session: PeerSession, reason: str) -> None:
        await self._close(session, reason, failed=True, notify=session.connected)
        self._report_failure(session.peer_id, reason)

    def _report_failure(self, peer_id: str, reason: str) -> None:
        error = NegotiationFailed(peer_id, reason)
        logger.warning(f"⚠️ {error}")
        self.events.negotiation_failed.emit(peer_id, error)

    def _schedule(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"❌ Negotiation task failed: {task.exception()}")

    async def wait_idle(self) -> None:
        """Wait until every scheduled transport callback has run"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close_session(self, peer_id: str, reason: str = "closed locally") -> None:
        async with self._lock(peer_id):
            session = self.sessions.get(peer_id)
            if session is not None:
                await self._close(session, reason)

    async def close_all(self) -> None:
        for peer_id in list(self.sessions):
            await self.close_session(peer_id, "local disconnect")
        await self.wait_idle()

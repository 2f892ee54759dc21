from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set

from shared.protocol import NegotiationPayload

from .negotiation import Role, SessionState
from .peer_session import PeerSession, SignalSender
from .transport import TransportFactory

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, SessionState], Awaitable[None] | None]


class PeerMesh:
    """Owns the single PeerSession kept for each remote member of the room."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        send_signal: SignalSender,
        *,
        max_restarts: Optional[int] = None,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._send_signal = send_signal
        self._max_restarts = max_restarts
        self._on_change = on_change
        self._sessions: Dict[str, PeerSession] = {}
        # Members whose session closed while they are still in the room.
        self._retired: Set[str] = set()

    def get(self, member: str) -> Optional[PeerSession]:
        return self._sessions.get(member)

    def members(self) -> list[str]:
        return list(self._sessions.keys())

    def states(self) -> dict[str, dict[str, str]]:
        return {
            member: {"state": session.state.value, "role": session.role.value}
            for member, session in self._sessions.items()
        }

    def on_room_users(self, members: Iterable[str]) -> list[PeerSession]:
        """We are the newcomer: initiate towards everyone already in the room."""

        started: list[PeerSession] = []
        for member in members:
            self._retired.discard(member)
            if member in self._sessions:
                logger.debug("Session with %s already exists; ignoring discovery", member)
                continue
            logger.info("Establishing link with: %s", member)
            started.append(self._create_session(member, Role.INITIATOR))
        return started

    def on_user_joined(self, member: str) -> None:
        # The newcomer sends the offer; waiting for it avoids a double handshake.
        self._retired.discard(member)
        logger.info("New peer detected: %s", member)

    def on_signal(self, sender: str, payload: NegotiationPayload) -> None:
        session = self._sessions.get(sender)
        if session is None:
            if sender in self._retired:
                # Trailing signals for a link we already gave up on.
                logger.debug("Dropping %s from %s: session closed", type(payload).__name__, sender)
                return
            session = self._create_session(sender, Role.ANSWERER)
        session.handle_signal(payload)

    async def on_user_left(self, member: str) -> None:
        logger.info("Peer offline: %s", member)
        session = self._sessions.get(member)
        if session is not None:
            await session.close("peer left")
        self._retired.discard(member)

    async def close_all(self, reason: str = "left room") -> None:
        sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(*(session.close(reason) for session in sessions), return_exceptions=True)
        self._sessions.clear()
        self._retired.clear()

    async def settle(self) -> None:
        """Wait until every live session has drained its event queue."""

        for session in list(self._sessions.values()):
            await session.settle()

    def _create_session(self, member: str, role: Role) -> PeerSession:
        session = PeerSession(
            member,
            role,
            self._transport_factory,
            self._send_signal,
            max_restarts=self._max_restarts,
            on_state_change=self._handle_state_change,
            on_closed=self._handle_closed,
        )
        self._sessions[member] = session
        session.start()
        return session

    async def _handle_state_change(self, session: PeerSession, state: SessionState) -> None:
        if state is SessionState.CLOSED:
            return  # reported once by _handle_closed
        await self._notify(session.remote_id, state)

    async def _handle_closed(self, session: PeerSession, reason: str) -> None:
        if self._sessions.get(session.remote_id) is session:
            del self._sessions[session.remote_id]
        self._retired.add(session.remote_id)
        await self._notify(session.remote_id, SessionState.CLOSED)

    async def _notify(self, member: str, state: SessionState) -> None:
        if self._on_change is None:
            return
        try:
            result = self._on_change(member, state)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Peer change callback failed for %s", member)

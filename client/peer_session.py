from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import replace
from typing import Awaitable, Callable, Deque, Optional

from shared.protocol import IceCandidate, NegotiationPayload, SessionDescription

from .negotiation import (
    AcceptAnswer,
    AnswerOffer,
    ApplyCandidate,
    CloseRequested,
    ConnectivityChanged,
    DescriptionRejected,
    LocalCandidateDiscovered,
    NegotiationNeeded,
    QueueCandidate,
    Release,
    RemoteCandidateReceived,
    RemoteDescriptionReceived,
    RestartIce,
    Role,
    SendCandidate,
    SendOffer,
    SessionAction,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    transition,
)
from .transport import MediaTransport, TransportFactory

logger = logging.getLogger(__name__)

SignalSender = Callable[[str, NegotiationPayload], Awaitable[None]]
StateCallback = Callable[["PeerSession", SessionState], Awaitable[None] | None]
ClosedCallback = Callable[["PeerSession", str], Awaitable[None] | None]


class NegotiationRejected(Exception):
    """The transport refused to apply a remote session description."""


class PeerSession:
    """Negotiation state machine for one remote member.

    Every event (transport callbacks, relayed signals, close requests) goes
    through a single queue drained by one worker task, so applying a remote
    description, flushing early candidates and restarting ICE never overlap.
    """

    def __init__(
        self,
        remote_id: str,
        role: Role,
        transport_factory: TransportFactory,
        send_signal: SignalSender,
        *,
        max_restarts: Optional[int] = None,
        on_state_change: Optional[StateCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> None:
        self._remote_id = remote_id
        self._snapshot = SessionSnapshot(state=SessionState.IDLE, role=role, max_restarts=max_restarts)
        self._transport_factory = transport_factory
        self._transport: Optional[MediaTransport] = None
        self._send_signal = send_signal
        self._on_state_change = on_state_change
        self._on_closed = on_closed
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._pending_candidates: Deque[IceCandidate] = deque()
        self._worker: Optional[asyncio.Task[None]] = None
        self._released = False

    @property
    def remote_id(self) -> str:
        return self._remote_id

    @property
    def role(self) -> Role:
        return self._snapshot.role

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def pending_candidates(self) -> tuple[IceCandidate, ...]:
        return tuple(self._pending_candidates)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._transport = self._transport_factory(self._remote_id, self)
        self._worker = asyncio.create_task(self._run(), name=f"peer-session-{self._remote_id}")
        logger.info("Started %s session with %s", self.role.value, self._remote_id)

    def post(self, event: SessionEvent) -> None:
        if self.state is SessionState.CLOSED:
            logger.debug("Dropping %s for closed session %s", type(event).__name__, self._remote_id)
            return
        self._events.put_nowait(event)

    def handle_signal(self, payload: NegotiationPayload) -> None:
        if isinstance(payload, SessionDescription):
            self.post(RemoteDescriptionReceived(payload))
        elif isinstance(payload, IceCandidate):
            self.post(RemoteCandidateReceived(payload))
        else:
            raise TypeError(f"Unsupported negotiation payload {payload!r}")

    async def settle(self) -> None:
        """Wait until every queued event has been processed."""

        await self._events.join()

    async def close(self, reason: str = "closed") -> None:
        """Cancel in-flight negotiation and release the transport."""

        previous = self.state
        self._snapshot, actions = transition(self._snapshot, CloseRequested(reason))
        worker = self._worker
        if worker is not None and worker is not asyncio.current_task() and not worker.done():
            if self._released:
                # The worker is already releasing; let it finish.
                await asyncio.shield(worker)
            else:
                worker.cancel()
                try:
                    await worker
                except asyncio.CancelledError:
                    pass
        for action in actions:
            await self._execute(action)
        await self._notify_state(previous)

    # TransportListener

    def on_negotiation_needed(self) -> None:
        self.post(NegotiationNeeded())

    def on_ice_candidate(self, candidate: Optional[IceCandidate]) -> None:
        self.post(LocalCandidateDiscovered(candidate))

    def on_connectivity_state(self, state: str) -> None:
        logger.info("Link state (%s): %s", self._remote_id, state)
        self.post(ConnectivityChanged(state))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._process(event)
            except Exception:
                logger.exception("Error while handling %s for %s", type(event).__name__, self._remote_id)
            finally:
                self._events.task_done()
            if self.state is SessionState.CLOSED:
                break

    async def _process(self, event: SessionEvent) -> None:
        previous = self.state
        self._snapshot, actions = transition(self._snapshot, event)
        try:
            for action in actions:
                await self._execute(action)
        except NegotiationRejected as exc:
            logger.warning("Remote description from %s rejected: %s", self._remote_id, exc)
            self._snapshot, follow_up = transition(self._snapshot, DescriptionRejected(str(exc)))
            for action in follow_up:
                await self._execute(action)
        await self._notify_state(previous)

    async def _execute(self, action: SessionAction) -> None:
        if isinstance(action, Release):
            await self._release(action.reason)
            return
        if isinstance(action, QueueCandidate):
            self._pending_candidates.append(action.candidate)
            logger.debug("Queued candidate from %s (%d pending)", self._remote_id, len(self._pending_candidates))
            return
        if isinstance(action, SendCandidate):
            await self._send_signal(self._remote_id, action.candidate)
            return

        transport = self._transport
        if transport is None:
            raise RuntimeError("Session has not been started")

        if isinstance(action, SendOffer):
            offer = await transport.create_offer(ice_restart=action.ice_restart)
            local = await transport.set_local_description(offer)
            await self._send_signal(self._remote_id, local)
            logger.info("Sent %soffer to %s", "ice-restart " if action.ice_restart else "", self._remote_id)
        elif isinstance(action, AnswerOffer):
            await self._accept_remote(transport, action.description)
            answer = await transport.create_answer()
            local = await transport.set_local_description(answer)
            await self._send_signal(self._remote_id, local)
            logger.info("Sent answer to %s", self._remote_id)
            await self._flush_candidates(transport)
        elif isinstance(action, AcceptAnswer):
            await self._accept_remote(transport, action.description)
            await self._flush_candidates(transport)
        elif isinstance(action, ApplyCandidate):
            await self._add_candidate(transport, action.candidate)
        elif isinstance(action, RestartIce):
            logger.info("Restarting ICE with %s (attempt %d)", self._remote_id, self._snapshot.restart_attempts)
            transport.restart_ice()
        else:
            raise TypeError(f"Unsupported session action {action!r}")

    async def _accept_remote(self, transport: MediaTransport, description: SessionDescription) -> None:
        try:
            await transport.set_remote_description(description)
        except Exception as exc:
            raise NegotiationRejected(str(exc)) from exc
        self._snapshot = replace(self._snapshot, remote_description_accepted=True)

    async def _flush_candidates(self, transport: MediaTransport) -> None:
        while self._pending_candidates:
            candidate = self._pending_candidates.popleft()
            await self._add_candidate(transport, candidate)

    async def _add_candidate(self, transport: MediaTransport, candidate: IceCandidate) -> None:
        try:
            await transport.add_ice_candidate(candidate)
        except Exception:
            logger.warning("Failed to apply candidate from %s", self._remote_id, exc_info=True)

    async def _release(self, reason: str) -> None:
        if self._released:
            return
        self._released = True
        self._pending_candidates.clear()
        while not self._events.empty():
            self._events.get_nowait()
            self._events.task_done()
        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception:
                logger.exception("Error while closing transport for %s", self._remote_id)
        logger.info("Closed session with %s: %s", self._remote_id, reason)
        if self._on_closed is not None:
            try:
                result = self._on_closed(self, reason)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Close callback failed for %s", self._remote_id)

    async def _notify_state(self, previous: SessionState) -> None:
        current = self.state
        if current is previous or self._on_state_change is None:
            return
        try:
            result = self._on_state_change(self, current)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("State callback failed for %s", self._remote_id)

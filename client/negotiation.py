"""Pure transition rules of the per-peer negotiation state machine.

``transition`` maps the current :class:`SessionSnapshot` and one event to the
next snapshot and the list of actions the session must perform, in order.
Nothing here touches the network or the media transport.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union

from shared.protocol import DescriptionKind, IceCandidate, SessionDescription

from .transport import STATE_CLOSED, STATE_CONNECTED, STATE_FAILED

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RECOVERING = "recovering"
    CLOSED = "closed"


class Role(str, Enum):
    """Fixed for the life of a session.

    The member that learned about the other from ``room-users`` is the
    initiator; the one that heard ``user-joined`` only ever answers.
    """

    INITIATOR = "initiator"
    ANSWERER = "answerer"


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    state: SessionState
    role: Role
    remote_description_accepted: bool = False
    restart_attempts: int = 0
    max_restarts: Optional[int] = None


# Events


@dataclass(frozen=True, slots=True)
class NegotiationNeeded:
    pass


@dataclass(frozen=True, slots=True)
class RemoteDescriptionReceived:
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class RemoteCandidateReceived:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class LocalCandidateDiscovered:
    candidate: Optional[IceCandidate]


@dataclass(frozen=True, slots=True)
class ConnectivityChanged:
    state: str


@dataclass(frozen=True, slots=True)
class DescriptionRejected:
    reason: str


@dataclass(frozen=True, slots=True)
class CloseRequested:
    reason: str


SessionEvent = Union[
    NegotiationNeeded,
    RemoteDescriptionReceived,
    RemoteCandidateReceived,
    LocalCandidateDiscovered,
    ConnectivityChanged,
    DescriptionRejected,
    CloseRequested,
]


# Actions


@dataclass(frozen=True, slots=True)
class SendOffer:
    ice_restart: bool = False


@dataclass(frozen=True, slots=True)
class AnswerOffer:
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class AcceptAnswer:
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class ApplyCandidate:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class QueueCandidate:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class SendCandidate:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class RestartIce:
    pass


@dataclass(frozen=True, slots=True)
class Release:
    reason: str


SessionAction = Union[
    SendOffer,
    AnswerOffer,
    AcceptAnswer,
    ApplyCandidate,
    QueueCandidate,
    SendCandidate,
    RestartIce,
    Release,
]

Transition = tuple[SessionSnapshot, list[SessionAction]]

_LIVE_STATES = (SessionState.NEGOTIATING, SessionState.CONNECTED, SessionState.RECOVERING)


def transition(snapshot: SessionSnapshot, event: SessionEvent) -> Transition:
    if snapshot.state is SessionState.CLOSED:
        return snapshot, []

    if isinstance(event, CloseRequested):
        return _close(snapshot, event.reason)
    if isinstance(event, DescriptionRejected):
        return _close(snapshot, f"remote description rejected: {event.reason}")
    if isinstance(event, NegotiationNeeded):
        return _on_negotiation_needed(snapshot)
    if isinstance(event, RemoteDescriptionReceived):
        return _on_remote_description(snapshot, event.description)
    if isinstance(event, RemoteCandidateReceived):
        if snapshot.remote_description_accepted:
            return snapshot, [ApplyCandidate(event.candidate)]
        return snapshot, [QueueCandidate(event.candidate)]
    if isinstance(event, LocalCandidateDiscovered):
        if event.candidate is None:
            return snapshot, []
        return snapshot, [SendCandidate(event.candidate)]
    if isinstance(event, ConnectivityChanged):
        return _on_connectivity(snapshot, event.state)
    raise TypeError(f"Unsupported session event {event!r}")


def _close(snapshot: SessionSnapshot, reason: str) -> Transition:
    return replace(snapshot, state=SessionState.CLOSED), [Release(reason)]


def _on_negotiation_needed(snapshot: SessionSnapshot) -> Transition:
    if snapshot.role is Role.ANSWERER:
        return snapshot, []
    if snapshot.state is SessionState.IDLE:
        return replace(snapshot, state=SessionState.NEGOTIATING), [SendOffer()]
    if snapshot.state is SessionState.CONNECTED:
        return snapshot, [SendOffer()]
    # An offer is already in flight, or a restart offer is being produced.
    return snapshot, []


def _on_remote_description(snapshot: SessionSnapshot, description: SessionDescription) -> Transition:
    if description.kind is DescriptionKind.OFFER:
        if snapshot.role is Role.INITIATOR:
            logger.warning("Initiator received an unexpected offer; ignoring it")
            return snapshot, []
        next_state = SessionState.NEGOTIATING if snapshot.state is SessionState.IDLE else snapshot.state
        return replace(snapshot, state=next_state), [AnswerOffer(description)]

    if snapshot.role is Role.ANSWERER or snapshot.state is SessionState.IDLE:
        logger.warning("Received an answer without a pending offer; ignoring it")
        return snapshot, []
    return snapshot, [AcceptAnswer(description)]


def _on_connectivity(snapshot: SessionSnapshot, state: str) -> Transition:
    if state == STATE_CONNECTED:
        if snapshot.state in (SessionState.NEGOTIATING, SessionState.RECOVERING):
            return replace(snapshot, state=SessionState.CONNECTED, restart_attempts=0), []
        return snapshot, []

    if state == STATE_FAILED:
        if snapshot.state not in _LIVE_STATES:
            return snapshot, []
        if snapshot.max_restarts is not None and snapshot.restart_attempts >= snapshot.max_restarts:
            return _close(snapshot, "ice restart attempts exhausted")
        recovering = replace(
            snapshot,
            state=SessionState.RECOVERING,
            restart_attempts=snapshot.restart_attempts + 1,
        )
        if snapshot.role is Role.INITIATOR:
            return recovering, [RestartIce(), SendOffer(ice_restart=True)]
        # The answerer keeps its role and waits for the initiator's restart offer.
        return recovering, []

    if state == STATE_CLOSED:
        return _close(snapshot, "transport closed")

    return snapshot, []

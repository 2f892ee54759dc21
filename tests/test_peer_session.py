import asyncio

import pytest

from client.negotiation import Role, SessionState
from client.peer_session import PeerSession
from fakes import TransportRecorder
from shared.protocol import DescriptionKind, IceCandidate, SessionDescription


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class SignalLog:
    def __init__(self) -> None:
        self.sent: list[tuple[str, object]] = []
        self.timeline: list[tuple] | None = None

    async def __call__(self, to: str, payload) -> None:
        self.sent.append((to, payload))
        if self.timeline is not None:
            self.timeline.append(("send", type(payload).__name__))


def _session(role: Role, recorder: TransportRecorder, signals: SignalLog, **kwargs) -> PeerSession:
    session = PeerSession("remote", role, recorder, signals, **kwargs)
    session.start()
    return session


@pytest.mark.anyio
async def test_early_candidates_are_applied_in_arrival_order_after_the_offer() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    session = _session(Role.ANSWERER, recorder, signals)
    transport = recorder.created["remote"]
    signals.timeline = transport.calls
    first = IceCandidate({"candidate": "c1"})
    second = IceCandidate({"candidate": "c2"})

    session.handle_signal(first)
    session.handle_signal(second)
    await session.settle()
    assert session.pending_candidates == (first, second)
    assert transport.applied_candidates == []

    session.handle_signal(SessionDescription(DescriptionKind.OFFER, "offer-1"))
    await session.settle()

    assert transport.applied_candidates == [first, second]
    assert session.pending_candidates == ()
    assert session.state is SessionState.NEGOTIATING
    assert signals.sent == [("remote", SessionDescription(DescriptionKind.ANSWER, "answer-to-offer-1"))]
    assert transport.calls == [
        ("set_remote", "offer"),
        ("create_answer",),
        ("set_local", "answer"),
        ("send", "SessionDescription"),
        ("add_candidate", "c1"),
        ("add_candidate", "c2"),
    ]


@pytest.mark.anyio
async def test_candidates_after_remote_description_apply_immediately() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    session = _session(Role.ANSWERER, recorder, signals)

    session.handle_signal(SessionDescription(DescriptionKind.OFFER, "offer-1"))
    late = IceCandidate({"candidate": "late"})
    session.handle_signal(late)
    await session.settle()

    assert recorder.created["remote"].applied_candidates == [late]
    assert session.pending_candidates == ()


@pytest.mark.anyio
async def test_answerer_never_produces_an_offer() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    session = _session(Role.ANSWERER, recorder, signals)
    transport = recorder.created["remote"]

    transport.listener.on_negotiation_needed()
    transport.listener.on_negotiation_needed()
    await session.settle()

    assert transport.offers_created == 0
    assert signals.sent == []
    assert session.state is SessionState.IDLE


@pytest.mark.anyio
async def test_initiator_offers_and_reaches_connected() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    states: list[SessionState] = []
    session = _session(Role.INITIATOR, recorder, signals, on_state_change=lambda _, state: states.append(state))
    transport = recorder.created["remote"]

    transport.listener.on_negotiation_needed()
    transport.listener.on_negotiation_needed()
    await session.settle()
    assert transport.offers_created == 1
    assert signals.sent == [("remote", SessionDescription(DescriptionKind.OFFER, "offer-1"))]

    local_candidate = IceCandidate({"candidate": "mine"})
    transport.listener.on_ice_candidate(local_candidate)
    transport.listener.on_ice_candidate(None)
    session.handle_signal(SessionDescription(DescriptionKind.ANSWER, "answer-1"))
    transport.listener.on_connectivity_state("connected")
    await session.settle()

    assert signals.sent[-1] == ("remote", local_candidate)
    assert transport.remote == SessionDescription(DescriptionKind.ANSWER, "answer-1")
    assert session.state is SessionState.CONNECTED
    assert states == [SessionState.NEGOTIATING, SessionState.CONNECTED]


@pytest.mark.anyio
async def test_failure_restarts_ice_and_recovers() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    session = _session(Role.INITIATOR, recorder, signals)
    transport = recorder.created["remote"]
    transport.listener.on_negotiation_needed()
    session.handle_signal(SessionDescription(DescriptionKind.ANSWER, "answer-1"))
    transport.listener.on_connectivity_state("connected")
    await session.settle()

    transport.listener.on_connectivity_state("failed")
    await session.settle()

    assert session.state is SessionState.RECOVERING
    assert session.role is Role.INITIATOR
    assert transport.restarts == 1
    assert signals.sent[-1] == ("remote", SessionDescription(DescriptionKind.OFFER, "offer-2-restart"))

    session.handle_signal(SessionDescription(DescriptionKind.ANSWER, "answer-2"))
    transport.listener.on_connectivity_state("connected")
    await session.settle()

    assert session.state is SessionState.CONNECTED
    assert session.snapshot.restart_attempts == 0


@pytest.mark.anyio
async def test_restart_ceiling_closes_the_session() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    closed: list[str] = []
    session = _session(
        Role.INITIATOR,
        recorder,
        signals,
        max_restarts=1,
        on_closed=lambda _, reason: closed.append(reason),
    )
    transport = recorder.created["remote"]
    transport.listener.on_negotiation_needed()
    session.handle_signal(SessionDescription(DescriptionKind.ANSWER, "answer-1"))
    transport.listener.on_connectivity_state("connected")

    transport.listener.on_connectivity_state("failed")
    await session.settle()
    assert session.state is SessionState.RECOVERING

    transport.listener.on_connectivity_state("failed")
    await session.settle()

    assert session.state is SessionState.CLOSED
    assert transport.closed is True
    assert transport.restarts == 1
    assert closed == ["ice restart attempts exhausted"]


@pytest.mark.anyio
async def test_rejected_remote_description_closes_the_session() -> None:
    recorder = TransportRecorder(reject_remote=True)
    signals = SignalLog()
    closed: list[str] = []
    session = _session(Role.ANSWERER, recorder, signals, on_closed=lambda _, reason: closed.append(reason))
    session.handle_signal(IceCandidate({"candidate": "early"}))

    session.handle_signal(SessionDescription(DescriptionKind.OFFER, "broken"))
    await session.settle()

    assert session.state is SessionState.CLOSED
    assert signals.sent == []
    assert recorder.created["remote"].closed is True
    assert session.pending_candidates == ()
    assert len(closed) == 1 and closed[0].startswith("remote description rejected")


@pytest.mark.anyio
async def test_close_cancels_in_flight_offer() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    session = _session(Role.INITIATOR, recorder, signals)
    transport = recorder.created["remote"]
    transport.offer_gate = asyncio.Event()

    transport.listener.on_negotiation_needed()
    session.handle_signal(IceCandidate({"candidate": "queued"}))
    for _ in range(5):
        await asyncio.sleep(0)

    await session.close("peer left")
    transport.offer_gate.set()
    await asyncio.wait_for(session.settle(), timeout=1)

    assert session.state is SessionState.CLOSED
    assert transport.closed is True
    assert transport.offers_created == 0
    assert signals.sent == []
    assert session.pending_candidates == ()


@pytest.mark.anyio
async def test_events_after_close_are_ignored() -> None:
    recorder = TransportRecorder()
    signals = SignalLog()
    closed: list[str] = []
    session = _session(Role.ANSWERER, recorder, signals, on_closed=lambda _, reason: closed.append(reason))

    await session.close("left room")
    await session.close("left room")
    session.handle_signal(SessionDescription(DescriptionKind.OFFER, "offer-1"))
    await asyncio.wait_for(session.settle(), timeout=1)

    assert signals.sent == []
    assert closed == ["left room"]
    assert recorder.created["remote"].calls == [("close",)]

import time

import pytest

from fakes import DummyWriter
from server.room_registry import RoomRegistry
from server.signal_relay import SignalRelay
from shared.protocol import DescriptionKind, IceCandidate, SessionDescription, SignalEnvelope


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def _connect(relay: SignalRelay) -> tuple[str, DummyWriter]:
    writer = DummyWriter()
    client = await relay.register(writer, peername=("127.0.0.1", 50000))
    return client.member_id, writer


@pytest.mark.anyio
async def test_join_announces_roster_to_joiner_and_joiner_to_roster() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    b, wb = await _connect(relay)
    c, wc = await _connect(relay)

    assert await relay.handle_join(a, "alpha") == []
    assert await relay.handle_join(b, "ALPHA") == [a]
    assert await relay.handle_join(c, " alpha") == [a, b]

    assert wa.events() == [("room-users", []), ("user-joined", b), ("user-joined", c)]
    assert wb.events() == [("room-users", [a]), ("user-joined", c)]
    assert wc.events() == [("room-users", [a, b])]


@pytest.mark.anyio
async def test_join_while_in_a_room_is_rejected() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    await relay.handle_join(a, "alpha")

    assert await relay.handle_join(a, "bravo") is None

    event, data = wa.events()[-1]
    assert event == "error"
    assert data["code"] == "already_member"
    assert await relay.registry.members_of("bravo") == []
    assert await relay.registry.room_of(a) == "ALPHA"


@pytest.mark.anyio
async def test_join_with_blank_room_is_rejected() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)

    assert await relay.handle_join(a, "   ") is None
    assert wa.events() == [("error", {"reason": "room identifier must not be empty", "code": "invalid_room"})]
    assert await relay.registry.list_rooms() == []


@pytest.mark.anyio
async def test_forward_delivers_exactly_once_and_stamps_sender() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    b, wb = await _connect(relay)
    offer = SessionDescription(DescriptionKind.OFFER, "v=0")

    assert await relay.forward(SignalEnvelope(to=b, sender=a, payload=offer)) is True

    assert wb.events() == [("signal", {"from": a, "signal": {"type": "offer", "body": "v=0"}})]
    assert wa.events() == []


@pytest.mark.anyio
async def test_forward_to_unknown_member_is_dropped_silently() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    candidate = IceCandidate({"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host"})

    assert await relay.forward(SignalEnvelope(to="ghost", sender=a, payload=candidate)) is False
    assert wa.events() == []


@pytest.mark.anyio
async def test_transmission_reaches_only_other_members_of_the_room() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    b, wb = await _connect(relay)
    c, wc = await _connect(relay)
    d, wd = await _connect(relay)
    for member in (a, b, c):
        await relay.handle_join(member, "alpha")
    await relay.handle_join(d, "bravo")
    before = {member: len(writer.events()) for member, writer in ((a, wa), (b, wb), (c, wc), (d, wd))}

    assert await relay.broadcast_transmission("alpha", a, True) == 2

    assert wb.events()[before[b]:] == [("peer-ptt", {"id": a, "active": True})]
    assert wc.events()[before[c]:] == [("peer-ptt", {"id": a, "active": True})]
    assert len(wa.events()) == before[a]
    assert len(wd.events()) == before[d]
    client = await relay.get_client(a)
    assert client is not None and client.transmitting is True


@pytest.mark.anyio
async def test_transmission_for_foreign_room_is_dropped() -> None:
    relay = SignalRelay(RoomRegistry())
    a, _ = await _connect(relay)
    b, wb = await _connect(relay)
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "bravo")
    before = len(wb.events())

    assert await relay.broadcast_transmission("bravo", a, True) == 0
    assert len(wb.events()) == before


@pytest.mark.anyio
async def test_leave_is_announced_once() -> None:
    relay = SignalRelay(RoomRegistry())
    a, _ = await _connect(relay)
    b, wb = await _connect(relay)
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "alpha")

    assert await relay.handle_leave(a) == "ALPHA"
    assert await relay.handle_leave(a) is None

    assert [event for event in wb.events() if event[0] == "user-left"] == [("user-left", a)]


@pytest.mark.anyio
async def test_disconnect_leaves_room_and_closes_writer() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    b, wb = await _connect(relay)
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "alpha")

    assert await relay.handle_disconnect(a) == "ALPHA"
    assert await relay.handle_disconnect(a) is None

    assert wa.closed is True
    assert not await relay.is_connected(a)
    assert await relay.registry.members_of("alpha") == [b]
    assert [event for event in wb.events() if event[0] == "user-left"] == [("user-left", a)]


@pytest.mark.anyio
async def test_last_member_leaving_closes_room() -> None:
    relay = SignalRelay(RoomRegistry())
    a, _ = await _connect(relay)
    await relay.handle_join(a, "alpha")

    await relay.handle_disconnect(a)

    assert await relay.registry.list_rooms() == []


@pytest.mark.anyio
async def test_stale_connections_expire_and_are_announced() -> None:
    relay = SignalRelay(RoomRegistry(), heartbeat_timeout=1.0)
    a, wa = await _connect(relay)
    b, wb = await _connect(relay)
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "alpha")

    now = time.monotonic()
    (await relay.get_client(a)).last_seen = now - 10.0
    (await relay.get_client(b)).last_seen = now

    assert await relay.expire_stale(now=now) == [a]
    assert wa.closed is True
    assert wb.events()[-1] == ("user-left", a)
    assert await relay.list_members() == [b]


@pytest.mark.anyio
async def test_heartbeat_keeps_connection_alive() -> None:
    relay = SignalRelay(RoomRegistry(), heartbeat_timeout=1.0)
    a, _ = await _connect(relay)
    (await relay.get_client(a)).last_seen = time.monotonic() - 10.0

    await relay.mark_heartbeat(a)

    assert await relay.expire_stale() == []
    assert await relay.is_connected(a)


@pytest.mark.anyio
async def test_force_disconnect_notifies_member() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    b, wb = await _connect(relay)
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "alpha")

    assert await relay.force_disconnect(a) is True
    assert await relay.force_disconnect("ghost") is False

    event, data = wa.events()[-1]
    assert event == "error" and data["code"] == "kicked"
    assert wa.closed is True
    assert wb.events()[-1] == ("user-left", a)


@pytest.mark.anyio
async def test_snapshot_lists_rooms_and_connections() -> None:
    relay = SignalRelay(RoomRegistry())
    a, _ = await _connect(relay)
    b, _ = await _connect(relay)
    await relay.handle_join(a, "alpha")

    snapshot = await relay.snapshot()

    assert snapshot["connection_count"] == 2
    assert {connection["member"] for connection in snapshot["connections"]} == {a, b}
    assert snapshot["rooms"] == [{"room": "ALPHA", "members": [a], "member_count": 1}]


@pytest.mark.anyio
async def test_explicit_leave_allows_joining_another_room() -> None:
    relay = SignalRelay(RoomRegistry())
    a, wa = await _connect(relay)
    await relay.handle_join(a, "alpha")

    await relay.handle_leave(a)

    assert await relay.handle_join(a, "bravo") == []
    assert wa.events()[-1] == ("room-users", [])
    assert await relay.registry.room_of(a) == "BRAVO"

import logging

import httpx
import pytest

from fakes import DummyWriter
from server.admin_dashboard import AdminDashboard
from server.room_registry import RoomRegistry
from server.signal_relay import SignalRelay


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _client(dashboard: AdminDashboard) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=dashboard.app), base_url="http://relay")


@pytest.mark.anyio
async def test_state_reports_rooms_and_connections() -> None:
    relay = SignalRelay(RoomRegistry())
    a = (await relay.register(DummyWriter())).member_id
    b = (await relay.register(DummyWriter())).member_id
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "alpha")

    async with _client(AdminDashboard(relay)) as client:
        state = (await client.get("/api/state")).json()
        health = (await client.get("/api/health")).json()

    assert state["room_count"] == 1
    assert state["rooms"][0]["members"] == [a, b]
    assert state["connection_count"] == 2
    assert state["health"]["status"] == "ok"
    assert health["connection_count"] == 2
    assert health["room_count"] == 1


@pytest.mark.anyio
async def test_kick_disconnects_member_and_announces_departure() -> None:
    relay = SignalRelay(RoomRegistry())
    writer_a = DummyWriter()
    writer_b = DummyWriter()
    a = (await relay.register(writer_a)).member_id
    b = (await relay.register(writer_b)).member_id
    await relay.handle_join(a, "alpha")
    await relay.handle_join(b, "alpha")

    async with _client(AdminDashboard(relay)) as client:
        kicked = await client.post("/api/actions/kick", json={"member": a})
        missing = await client.post("/api/actions/kick", json={"member": a})
        blank = await client.post("/api/actions/kick", json={})

    assert kicked.status_code == 200
    assert missing.status_code == 404
    assert blank.status_code == 400
    assert writer_a.closed is True
    assert writer_b.events()[-1] == ("user-left", a)


@pytest.mark.anyio
async def test_shutdown_requires_a_handler() -> None:
    relay = SignalRelay(RoomRegistry())
    calls: list[str] = []

    async def shutdown_handler() -> bool:
        calls.append("shutdown")
        return True

    async with _client(AdminDashboard(relay)) as client:
        unavailable = await client.post("/api/actions/shutdown")
    async with _client(AdminDashboard(relay, shutdown_handler=shutdown_handler)) as client:
        accepted = await client.post("/api/actions/shutdown")

    assert unavailable.status_code == 503
    assert accepted.json() == {"status": "ok", "initiated": True}
    assert calls == ["shutdown"]


@pytest.mark.anyio
async def test_event_export_is_an_attachment() -> None:
    relay = SignalRelay(RoomRegistry())
    a = (await relay.register(DummyWriter())).member_id
    await relay.handle_join(a, "alpha")
    await relay.handle_disconnect(a)

    async with _client(AdminDashboard(relay)) as client:
        response = await client.get("/api/export/events")

    assert "attachment" in response.headers["content-disposition"]
    assert [event["type"] for event in response.json()] == [
        "room_created",
        "member_joined",
        "member_left",
        "room_closed",
    ]


@pytest.mark.anyio
async def test_state_includes_recent_relay_warnings() -> None:
    relay = SignalRelay(RoomRegistry())
    a = (await relay.register(DummyWriter())).member_id
    relay_logger = logging.getLogger("server")
    attached_before = len(relay_logger.handlers)
    dashboard = AdminDashboard(relay)
    try:
        await relay.broadcast_transmission("alpha", a, True)
        async with _client(dashboard) as client:
            state = (await client.get("/api/state")).json()
    finally:
        dashboard.detach_log_handler()

    warnings = [entry for entry in state["log_tail"] if entry["level"] == "warning"]
    assert any("Ignoring transmission update" in entry["message"] for entry in warnings)
    assert len(relay_logger.handlers) == attached_before

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Body, FastAPI, HTTPException

from shared.protocol import (
    DEFAULT_TCP_PORT,
    DEFAULT_UI_PORT,
    MalformedPayload,
    NegotiationPayload,
    RelayEvent,
    normalize_room_id,
    payload_from_dict,
)

from .mesh import PeerMesh
from .negotiation import SessionState
from .relay_client import RelayClient
from .transmission import Gate, TransmissionCoordinator
from .transport import TransportFactory

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 30.0

# Builds a transport factory from the ICE servers the relay hands out on connect.
TransportBuilder = Callable[[list[dict]], TransportFactory]
Handler = Callable[[Any], Awaitable[None]]


class ClientApp:
    """Operator runtime: relay connection, peer mesh, push-to-talk and a local control API."""

    def __init__(
        self,
        server_host: str,
        room_id: str,
        transport_builder: TransportBuilder,
        tcp_port: int = DEFAULT_TCP_PORT,
        *,
        max_restarts: Optional[int] = None,
        gate: Optional[Gate] = None,
    ) -> None:
        self._server_host = server_host
        self._tcp_port = tcp_port
        self._room_id: Optional[str] = normalize_room_id(room_id)
        self._transport_builder = transport_builder
        self._max_restarts = max_restarts
        self._client: Optional[RelayClient] = None
        self._mesh: Optional[PeerMesh] = None
        self._transmission = TransmissionCoordinator(self._publish_transmission, gate=gate)
        self._should_reconnect = True
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempt = 0
        self._handlers: Dict[RelayEvent, Handler] = {
            RelayEvent.WELCOME: self._on_welcome,
            RelayEvent.ROOM_USERS: self._on_room_users,
            RelayEvent.USER_JOINED: self._on_user_joined,
            RelayEvent.SIGNAL: self._on_signal,
            RelayEvent.PEER_PTT: self._on_peer_ptt,
            RelayEvent.USER_LEFT: self._on_user_left,
            RelayEvent.ERROR: self._on_error,
        }
        self._app = FastAPI(title="TAC-NET operator")
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def member_id(self) -> Optional[str]:
        return self._client.member_id if self._client else None

    @property
    def mesh(self) -> Optional[PeerMesh]:
        return self._mesh

    @property
    def transmission(self) -> TransmissionCoordinator:
        return self._transmission

    def _configure_routes(self) -> None:
        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self.snapshot()

        @self._app.post("/api/ptt")
        async def ptt(payload: dict = Body(...)) -> Dict[str, object]:
            await self.set_transmitting(bool(payload.get("active", False)))
            return {"status": "ok", "active": self._transmission.local_transmitting}

        @self._app.post("/api/join")
        async def join(payload: dict = Body(...)) -> Dict[str, object]:
            try:
                room_id = normalize_room_id(payload.get("room"))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            if self._client is None or self._client.member_id is None:
                raise HTTPException(status_code=503, detail="relay not connected")
            await self.join(room_id)
            return {"status": "ok", "room": room_id}

        @self._app.post("/api/leave")
        async def leave() -> Dict[str, object]:
            await self.leave()
            return {"status": "ok"}

    def snapshot(self) -> Dict[str, object]:
        return {
            "member_id": self.member_id,
            "room": self._room_id,
            "connected": self._client is not None and self._client.member_id is not None,
            "peers": self._mesh.states() if self._mesh else {},
            "transmitting": self._transmission.local_transmitting,
            "remote_transmission": self._transmission.remote_states(),
        }

    async def set_transmitting(self, active: bool) -> None:
        await self._transmission.set_local_transmitting(active)

    async def join(self, room_id: str) -> None:
        if self._transmission.room_id is not None:
            await self.leave()
        self._room_id = normalize_room_id(room_id)
        if self._client is not None:
            await self._client.join_room(self._room_id)
            self._transmission.room_id = self._room_id
            logger.info("Joined Mission: %s", self._room_id)

    async def leave(self) -> None:
        if self._mesh is not None:
            await self._mesh.close_all("left room")
        if self._client is not None and self._transmission.room_id is not None:
            await self._client.leave_room()
        self._transmission.room_id = None
        self._room_id = None

    async def _publish_transmission(self, room_id: str, active: bool) -> None:
        if self._client is None:
            return
        await self._client.send_ptt_status(room_id, active)

    async def _send_signal(self, to: str, payload: NegotiationPayload) -> None:
        if self._client is None:
            raise ConnectionError("relay not connected")
        await self._client.send_signal(to, payload)

    async def handle_relay_message(self, event: RelayEvent, payload: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Unhandled relay event %s", event.value)
            return
        await handler(payload)

    async def _on_welcome(self, payload: Any) -> None:
        ice_servers = list(payload.get("ice_servers") or []) if isinstance(payload, dict) else []
        if self._mesh is not None:
            await self._mesh.close_all("relay session replaced")
        self._mesh = PeerMesh(
            self._transport_builder(ice_servers),
            self._send_signal,
            max_restarts=self._max_restarts,
            on_change=self._on_peer_change,
        )

    async def _on_room_users(self, payload: Any) -> None:
        if self._mesh is None or not isinstance(payload, list):
            return
        self._mesh.on_room_users(str(member) for member in payload)

    async def _on_user_joined(self, payload: Any) -> None:
        if self._mesh is not None:
            self._mesh.on_user_joined(str(payload))

    async def _on_signal(self, payload: Any) -> None:
        if self._mesh is None or not isinstance(payload, dict):
            return
        sender = payload.get("from")
        if not isinstance(sender, str):
            logger.warning("Dropping signal without a sender")
            return
        try:
            negotiation = payload_from_dict(payload.get("signal"))
        except MalformedPayload as exc:
            logger.warning("Dropping malformed signal from %s: %s", sender, exc)
            return
        self._mesh.on_signal(sender, negotiation)

    async def _on_peer_ptt(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
            return
        self._transmission.on_remote_transmission(payload["id"], bool(payload.get("active", False)))

    async def _on_user_left(self, payload: Any) -> None:
        member = str(payload)
        self._transmission.forget(member)
        if self._mesh is not None:
            await self._mesh.on_user_left(member)

    async def _on_error(self, payload: Any) -> None:
        if isinstance(payload, dict):
            logger.warning("Relay reported %s: %s", payload.get("code"), payload.get("reason"))
        else:
            logger.warning("Relay reported an error: %s", payload)

    async def _on_peer_change(self, member: str, state: SessionState) -> None:
        logger.info("Peer %s is now %s", member, state.value)

    async def _start_session(self) -> None:
        client = RelayClient(
            self._server_host,
            self._tcp_port,
            self.handle_relay_message,
            on_disconnect=self._on_relay_disconnect,
        )
        self._client = client
        await client.connect()
        self._reconnect_attempt = 0
        if self._room_id is not None:
            await self.join(self._room_id)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is None:
            return
        task = self._reconnect_task
        self._reconnect_task = None
        task.cancel()

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        delay = min(
            RECONNECT_BASE_DELAY_SECONDS * (2 ** self._reconnect_attempt),
            RECONNECT_MAX_DELAY_SECONDS,
        )
        self._reconnect_attempt += 1

        async def _worker(delay_seconds: float) -> None:
            try:
                await asyncio.sleep(delay_seconds)
                if not self._should_reconnect:
                    return
                await self._start_session()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconnect attempt failed")
                self._reconnect_task = None
                self._schedule_reconnect()
                return
            self._reconnect_task = None

        self._reconnect_task = asyncio.create_task(_worker(delay))

    async def _on_relay_disconnect(self, reason: Optional[str]) -> None:
        if self._mesh is not None:
            await self._mesh.close_all("relay connection lost")
        self._transmission.room_id = None
        self._client = None
        if not self._should_reconnect:
            return
        logger.warning("Relay connection lost: %s", reason)
        self._schedule_reconnect()

    async def shutdown(self) -> None:
        self._should_reconnect = False
        self._cancel_reconnect()
        if self._mesh is not None:
            await self._mesh.close_all("shutting down")
        if self._client is not None:
            try:
                await self._client.close()
            except Exception:
                logger.exception("Error while closing relay client")
            finally:
                self._client = None

    async def run(self, host: str = "127.0.0.1", port: int = DEFAULT_UI_PORT) -> None:
        import uvicorn

        try:
            await self._start_session()
        except OSError:
            logger.exception("Could not reach relay %s:%s", self._server_host, self._tcp_port)
            self._client = None
            self._schedule_reconnect()

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        logger.info("Operator control API available at http://%s:%s", host, port)
        try:
            await server.serve()
        finally:
            await self.shutdown()

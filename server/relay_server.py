from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.protocol import (
    DEFAULT_ICE_SERVERS,
    MalformedPayload,
    RelayEvent,
    SignalEnvelope,
    decode_relay_stream,
    payload_from_dict,
)

from .signal_relay import SignalRelay

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[None]]


class RelayServer:
    """TCP front end of the signal relay: one handler per client connection."""

    def __init__(
        self,
        host: str,
        port: int,
        relay: SignalRelay,
        *,
        ice_servers: Optional[list[dict]] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._relay = relay
        self._server: Optional[asyncio.AbstractServer] = None
        self._ice_servers = ice_servers if ice_servers is not None else list(DEFAULT_ICE_SERVERS)
        self._handlers: Dict[RelayEvent, Handler] = {
            RelayEvent.HEARTBEAT: self._on_heartbeat,
            RelayEvent.JOIN_ROOM: self._on_join_room,
            RelayEvent.LEAVE_ROOM: self._on_leave_room,
            RelayEvent.SIGNAL: self._on_signal,
            RelayEvent.PTT_STATUS: self._on_ptt_status,
        }

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Signal relay listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.info("Incoming TCP connection from %s", peer)

        client = await self._relay.register(writer, peername=peer)
        member = client.member_id
        buffer = b""
        try:
            client.send(RelayEvent.WELCOME, {"id": member, "ice_servers": self._ice_servers})
            await writer.drain()

            while True:
                data = await reader.read(4096)
                if not data:
                    break
                buffer += data
                await self._relay.record_received(member, len(data))
                messages, buffer = decode_relay_stream(buffer)
                for message in messages:
                    await self.dispatch(member, message.get("event"), message.get("data"))
        except Exception as exc:
            logger.exception("Error while handling member %s (%s): %s", member, peer, exc)
        finally:
            await self._relay.handle_disconnect(member)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def dispatch(self, member: str, event_name: Any, payload: Any) -> None:
        """Route one inbound message to the handler registered for its event tag."""

        try:
            event = RelayEvent(event_name)
        except ValueError:
            logger.warning("Unknown relay event %r from %s", event_name, member)
            return
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring server-only event %s from %s", event.value, member)
            return
        await handler(member, payload)

    async def _on_heartbeat(self, member: str, payload: Any) -> None:
        await self._relay.mark_heartbeat(member)

    async def _on_join_room(self, member: str, payload: Any) -> None:
        room = payload if isinstance(payload, str) else ""
        await self._relay.handle_join(member, room)

    async def _on_leave_room(self, member: str, payload: Any) -> None:
        room = await self._relay.handle_leave(member)
        if room is None:
            logger.debug("Leave from %s ignored: not in a room", member)

    async def _on_signal(self, member: str, payload: Any) -> None:
        if not isinstance(payload, dict) or not isinstance(payload.get("to"), str):
            logger.warning("Dropping signal from %s without a target", member)
            return
        try:
            negotiation = payload_from_dict(payload.get("signal"))
        except MalformedPayload as exc:
            logger.warning("Dropping malformed signal from %s: %s", member, exc)
            return
        await self._relay.forward(SignalEnvelope(to=payload["to"], sender=member, payload=negotiation))

    async def _on_ptt_status(self, member: str, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning("Dropping malformed ptt-status from %s", member)
            return
        room = payload.get("roomId")
        if not isinstance(room, str):
            logger.warning("Dropping ptt-status from %s without a room", member)
            return
        await self._relay.broadcast_transmission(room, member, bool(payload.get("active", False)))

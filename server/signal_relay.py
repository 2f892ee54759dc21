from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, Optional, Tuple

from shared.protocol import RelayEvent, SignalEnvelope, encode_relay_message

from .room_registry import AlreadyMember, RoomRegistry

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 30.0  # seconds


@dataclass(slots=True)
class ConnectedClient:
    member_id: str
    writer: asyncio.StreamWriter
    last_seen: float = field(default_factory=lambda: time.monotonic())
    connected_at: float = field(default_factory=lambda: time.time())
    peer_ip: Optional[str] = None
    peer_port: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0
    transmitting: bool = False

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def send(self, event: RelayEvent, data: Any) -> None:
        payload = encode_relay_message(event, data)
        self.bytes_sent += len(payload)
        self.writer.write(payload)


class SignalRelay:
    """Routes negotiation payloads and membership events between connected members."""

    def __init__(self, registry: RoomRegistry, *, heartbeat_timeout: float = HEARTBEAT_TIMEOUT) -> None:
        self._registry = registry
        self._clients: Dict[str, ConnectedClient] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_timeout = heartbeat_timeout

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    async def register(self, writer: asyncio.StreamWriter, peername: Optional[Tuple[str, ...]] = None) -> ConnectedClient:
        async with self._lock:
            member_id = uuid.uuid4().hex
            client = ConnectedClient(member_id=member_id, writer=writer)
            if peername:
                client.peer_ip = peername[0]
                if len(peername) > 1:
                    try:
                        client.peer_port = int(peername[1])
                    except (TypeError, ValueError):
                        client.peer_port = None
            self._clients[member_id] = client
            logger.info("Registered connection %s from %s", member_id, client.peer_ip)
            return client

    async def get_client(self, member: str) -> Optional[ConnectedClient]:
        async with self._lock:
            return self._clients.get(member)

    async def is_connected(self, member: str) -> bool:
        async with self._lock:
            return member in self._clients

    async def list_members(self) -> list[str]:
        async with self._lock:
            return list(self._clients.keys())

    async def record_received(self, member: str, num_bytes: int) -> None:
        if num_bytes <= 0:
            return
        async with self._lock:
            client = self._clients.get(member)
            if client:
                client.bytes_received += num_bytes

    async def send_to(self, member: str, event: RelayEvent, data: Any) -> bool:
        drain: Optional[Awaitable[None]] = None
        async with self._lock:
            client = self._clients.get(member)
            if client is None:
                return False
            try:
                client.send(event, data)
                drain = client.writer.drain()
            except Exception:
                logger.exception("Failed to send %s to %s", event.value, member)
                return False
        await asyncio.gather(drain, return_exceptions=True)
        return True

    async def _send_many(self, members: Iterable[str], event: RelayEvent, data: Any) -> int:
        drains: list[Awaitable[None]] = []
        async with self._lock:
            for member in members:
                client = self._clients.get(member)
                if client is None:
                    continue
                try:
                    client.send(event, data)
                    drains.append(client.writer.drain())
                except Exception:
                    logger.exception("Failed to queue %s to %s", event.value, member)
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)
        return len(drains)

    async def handle_join(self, member: str, room: str) -> Optional[list[str]]:
        """Add ``member`` to ``room`` and announce the join in one direction only.

        The joiner learns the existing roster through ``room-users`` and is the
        one who initiates negotiation; existing members only hear
        ``user-joined``.
        """

        try:
            existing = await self._registry.join(room, member)
        except AlreadyMember as exc:
            logger.warning("Rejected join from %s: %s", member, exc)
            await self.send_to(member, RelayEvent.ERROR, {"reason": str(exc), "code": "already_member"})
            return None
        except ValueError as exc:
            logger.warning("Rejected join from %s: %s", member, exc)
            await self.send_to(member, RelayEvent.ERROR, {"reason": str(exc), "code": "invalid_room"})
            return None

        await self.send_to(member, RelayEvent.ROOM_USERS, existing)
        await self._send_many(existing, RelayEvent.USER_JOINED, member)
        return existing

    async def forward(self, envelope: SignalEnvelope) -> bool:
        """Deliver a negotiation payload to ``envelope.to``.

        A target that is not connected is dropped silently; the sender is never
        told.
        """

        delivered = await self.send_to(
            envelope.to,
            RelayEvent.SIGNAL,
            {"from": envelope.sender, "signal": envelope.payload.to_dict()},
        )
        if not delivered:
            logger.debug("Dropped signal from %s to unreachable member %s", envelope.sender, envelope.to)
        return delivered

    async def broadcast_transmission(self, room: str, member: str, active: bool) -> int:
        members = await self._registry.members_of(room)
        if member not in members:
            logger.warning("Ignoring transmission update from %s for room %s it has not joined", member, room)
            return 0
        async with self._lock:
            client = self._clients.get(member)
            if client:
                client.transmitting = active
        recipients = [other for other in members if other != member]
        return await self._send_many(recipients, RelayEvent.PEER_PTT, {"id": member, "active": active})

    async def handle_leave(self, member: str) -> Optional[str]:
        room = await self._registry.leave(member)
        if room is None:
            return None
        async with self._lock:
            client = self._clients.get(member)
            if client:
                client.transmitting = False
        remaining = await self._registry.members_of(room)
        await self._send_many(remaining, RelayEvent.USER_LEFT, member)
        return room

    async def handle_disconnect(self, member: str) -> Optional[str]:
        room = await self.handle_leave(member)
        async with self._lock:
            client = self._clients.pop(member, None)
            if client is not None:
                try:
                    client.writer.close()
                except Exception:  # pragma: no cover - cleanup best effort
                    logger.exception("Error while closing writer for %s", member)
                logger.info("Unregistered connection %s", member)
        return room

    async def force_disconnect(self, member: str) -> bool:
        """Remove a member on behalf of an operator of the relay."""

        if not await self.is_connected(member):
            return False
        await self.send_to(
            member,
            RelayEvent.ERROR,
            {"reason": "Removed from the relay by an administrator.", "code": "kicked"},
        )
        await self.handle_disconnect(member)
        logger.info("Forcefully disconnected %s", member)
        return True

    async def mark_heartbeat(self, member: str) -> None:
        async with self._lock:
            client = self._clients.get(member)
            if client:
                elapsed = time.monotonic() - client.last_seen
                client.touch()
                logger.debug("Heartbeat received from %s (%.2fs since last)", member, elapsed)

    async def expire_stale(self, now: Optional[float] = None) -> list[str]:
        current = now if now is not None else time.monotonic()
        async with self._lock:
            stale = [
                member
                for member, client in self._clients.items()
                if current - client.last_seen > self._heartbeat_timeout * 2
            ]
        for member in stale:
            logger.warning("Connection %s timed out", member)
            await self.handle_disconnect(member)
        return stale

    async def heartbeat_watcher(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_timeout)
            await self.expire_stale()

    async def disconnect_all(self, *, reason: str = "Relay shutting down") -> None:
        """Notify and drop every connection. Room state is not preserved."""

        for member in await self.list_members():
            await self.send_to(member, RelayEvent.ERROR, {"reason": reason, "code": "shutdown"})
            await self.handle_disconnect(member)

    async def snapshot(self) -> dict:
        registry_state = await self._registry.snapshot()
        async with self._lock:
            now_monotonic = time.monotonic()
            connections = [
                {
                    "member": client.member_id,
                    "last_seen_seconds": max(0.0, now_monotonic - client.last_seen),
                    "connected_at": client.connected_at,
                    "peer_ip": client.peer_ip,
                    "peer_port": client.peer_port,
                    "bytes_sent": client.bytes_sent,
                    "bytes_received": client.bytes_received,
                    "transmitting": client.transmitting,
                }
                for client in self._clients.values()
            ]
        registry_state["connections"] = connections
        registry_state["connection_count"] = len(connections)
        return registry_state

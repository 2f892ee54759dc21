from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional

from shared.protocol import NegotiationPayload, RelayEvent, decode_relay_stream, encode_relay_message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[RelayEvent, Any], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]

HEARTBEAT_INTERVAL = 3.0  # seconds


class RelayClient:
    """Handles the TCP connection to the signal relay."""

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self._host = host
        self._port = port
        self._on_message = on_message
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._tasks: list[asyncio.Task[None]] = []
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._connected = asyncio.Event()
        self._stop = False
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = heartbeat_interval
        self.member_id: Optional[str] = None
        self.ice_servers: list[dict] = []

    async def connect(self) -> None:
        logger.info("Connecting to relay %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        self._tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._recv_loop()),
        ]
        await self._connected.wait()
        if self._stop:
            raise ConnectionError("Connection closed before the relay assigned an identifier")
        logger.info("Signal link established as %s", self.member_id)
        await self._send_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def close(self) -> None:
        self._stop = True
        self._send_event.set()
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
        self._reader = None
        self._writer = None
        self._connected.clear()

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise RuntimeError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def send(self, event: RelayEvent, payload: Any) -> None:
        self._send_queue.append(encode_relay_message(event, payload))
        self._send_event.set()

    async def join_room(self, room_id: str) -> None:
        await self.send(RelayEvent.JOIN_ROOM, room_id)

    async def leave_room(self) -> None:
        await self.send(RelayEvent.LEAVE_ROOM, {})

    async def send_signal(self, to: str, payload: NegotiationPayload) -> None:
        await self.send(RelayEvent.SIGNAL, {"to": to, "signal": payload.to_dict()})

    async def send_ptt_status(self, room_id: str, active: bool) -> None:
        await self.send(RelayEvent.PTT_STATUS, {"roomId": room_id, "active": active})

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send relay message")
                    self._stop = True
                    break

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Relay closed the connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_relay_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    try:
                        event = RelayEvent(message.get("event"))
                    except ValueError:
                        logger.warning("Ignoring unknown relay event %r", message.get("event"))
                        continue
                    payload = message.get("data")
                    if event == RelayEvent.WELCOME:
                        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
                            logger.warning("Ignoring malformed welcome from relay: %r", payload)
                            continue
                        ice_servers = payload.get("ice_servers")
                        self.member_id = payload["id"]
                        self.ice_servers = list(ice_servers) if isinstance(ice_servers, list) else []
                        self._connected.set()
                    # Relay delivery order is preserved: handlers run one at a time.
                    await self._dispatch(event, payload)
        except Exception:
            logger.exception("Error while receiving from relay")
            disconnect_reason = "recv_error"
        finally:
            if not self._connected.is_set():
                self._stop = True
                self._connected.set()
            await self.close()
            await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, event: RelayEvent, payload: Any) -> None:
        try:
            result = self._on_message(event, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling relay event %s", event.value)

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(self._heartbeat_interval)
                await self._send_heartbeat()
        except asyncio.CancelledError:
            pass

    async def _send_heartbeat(self) -> None:
        timestamp_ms = int(time.time() * 1000)
        logger.debug("Sending heartbeat at %s", timestamp_ms)
        await self.send(RelayEvent.HEARTBEAT, {"timestamp_ms": timestamp_ms})

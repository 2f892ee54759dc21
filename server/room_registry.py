from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from shared.protocol import normalize_room_id

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000


class AlreadyMember(ValueError):
    """Raised when a member that already belongs to a room tries to join again."""

    def __init__(self, member: str, room: str) -> None:
        super().__init__(f"Member '{member}' is already in room '{room}'")
        self.member = member
        self.room = room


class RoomRegistry:
    """Authoritative mapping of room identifier to ordered membership.

    Each public coroutine performs a single mutation under one lock, so joins
    and leaves for different members of the same room may interleave without
    exposing a partial update.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, list[str]] = {}
        self._member_rooms: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._event_log: list[dict] = []

    async def join(self, room: str, member: str) -> list[str]:
        """Add ``member`` to ``room`` and return the members that were already there."""

        room_id = normalize_room_id(room)
        async with self._lock:
            current = self._member_rooms.get(member)
            if current is not None:
                raise AlreadyMember(member, current)
            members = self._rooms.get(room_id)
            if members is None:
                members = []
                self._rooms[room_id] = members
                self._record_event("room_created", {"room": room_id})
            existing = list(members)
            members.append(member)
            self._member_rooms[member] = room_id
            self._record_event("member_joined", {"room": room_id, "member": member})
            logger.info("Member %s joined room %s (%d present)", member, room_id, len(members))
            return existing

    async def leave(self, member: str) -> Optional[str]:
        """Remove ``member`` from its room.

        Returns the room identifier, or ``None`` when the member is not in any
        room.
        """

        async with self._lock:
            room_id = self._member_rooms.pop(member, None)
            if room_id is None:
                return None
            members = self._rooms.get(room_id, [])
            if member in members:
                members.remove(member)
            self._record_event("member_left", {"room": room_id, "member": member})
            if not members:
                self._rooms.pop(room_id, None)
                self._record_event("room_closed", {"room": room_id})
                logger.info("Room %s closed", room_id)
            logger.info("Member %s left room %s", member, room_id)
            return room_id

    async def members_of(self, room: str) -> list[str]:
        try:
            room_id = normalize_room_id(room)
        except ValueError:
            return []
        async with self._lock:
            return list(self._rooms.get(room_id, []))

    async def room_of(self, member: str) -> Optional[str]:
        async with self._lock:
            return self._member_rooms.get(member)

    async def list_rooms(self) -> list[str]:
        async with self._lock:
            return list(self._rooms.keys())

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    async def snapshot(self) -> dict:
        async with self._lock:
            rooms = [
                {
                    "room": room_id,
                    "members": list(members),
                    "member_count": len(members),
                }
                for room_id, members in self._rooms.items()
            ]
            return {
                "rooms": rooms,
                "room_count": len(rooms),
                "member_count": len(self._member_rooms),
                "events": list(self._event_log[-300:]),
            }

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)

"""Core protocol primitives shared between the relay and its clients.

Every relay message travels over TCP as length-prefixed JSON. This module
centralises the event names, the framing helpers and the negotiation payload
schema so both halves of the application remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict, Union

import json
import logging
import struct

logger = logging.getLogger(__name__)


class RelayEvent(str, Enum):
    """Events exchanged between a client and the relay."""

    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    ROOM_USERS = "room-users"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    SIGNAL = "signal"
    PTT_STATUS = "ptt-status"
    PEER_PTT = "peer-ptt"
    ERROR = "error"


class DescriptionKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"


CANDIDATE_TAG = "candidate"


class MalformedPayload(ValueError):
    """Raised when a negotiation payload does not match the tagged schema."""


@dataclass(frozen=True, slots=True)
class SessionDescription:
    """An offer or answer produced by a media transport."""

    kind: DescriptionKind
    body: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "body": self.body}


@dataclass(frozen=True, slots=True)
class IceCandidate:
    """A connectivity candidate; the body is opaque to everything but the transport."""

    body: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": CANDIDATE_TAG, "body": self.body}


NegotiationPayload = Union[SessionDescription, IceCandidate]


def payload_from_dict(data: Any) -> NegotiationPayload:
    """Parse the wire form of a negotiation payload.

    Only the tag and the body type are checked; the body itself is never
    inspected.
    """

    if not isinstance(data, dict):
        raise MalformedPayload("negotiation payload must be an object")
    tag = data.get("type")
    body = data.get("body")
    if tag == CANDIDATE_TAG:
        if not isinstance(body, dict):
            raise MalformedPayload("candidate body must be an object")
        return IceCandidate(body=body)
    try:
        kind = DescriptionKind(tag)
    except ValueError as exc:
        raise MalformedPayload(f"unknown negotiation payload type {tag!r}") from exc
    if not isinstance(body, str):
        raise MalformedPayload("session description body must be a string")
    return SessionDescription(kind=kind, body=body)


@dataclass(frozen=True, slots=True)
class SignalEnvelope:
    """A negotiation payload addressed to one member.

    ``sender`` is always stamped by the relay from the connection the
    envelope arrived on, never taken from the client.
    """

    to: str
    sender: str
    payload: NegotiationPayload


class RelayEnvelope(TypedDict):
    """Generic representation of a relay message on the wire."""

    event: str
    data: Any


def encode_relay_message(event: RelayEvent, data: Any) -> bytes:
    """Serialize a relay message using length-prefixed JSON."""

    envelope: RelayEnvelope = {
        "event": event.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_relay_stream(buffer: bytes) -> tuple[list[RelayEnvelope], bytes]:
    """Decode as many complete relay messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer). A complete frame that is
    not a UTF-8 JSON object is skipped with a warning.
    """

    offset = 0
    messages: list[RelayEnvelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        offset = end
        try:
            envelope = json.loads(buffer[start:end].decode("utf-8"))
        except ValueError as exc:
            logger.warning("Skipping undecodable relay frame (%d bytes): %s", length, exc)
            continue
        if not isinstance(envelope, dict):
            logger.warning("Skipping relay frame that is not an object: %s", type(envelope).__name__)
            continue
        messages.append(envelope)  # type: ignore[arg-type]

    return messages, buffer[offset:]


def normalize_room_id(room: Optional[str]) -> str:
    """Return the canonical form of a mission code."""

    normalized = (room or "").strip().upper()
    if not normalized:
        raise ValueError("room identifier must not be empty")
    return normalized


DEFAULT_TCP_PORT = 3000
DEFAULT_ADMIN_PORT = 8700
DEFAULT_UI_PORT = 8100

DEFAULT_ICE_SERVERS: list[Dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {
        "urls": "turn:openrelay.metered.ca:443",
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
    {
        "urls": "turn:openrelay.metered.ca:443?transport=tcp",
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
]

"""Boundary between the negotiation core and a concrete media transport.

A peer session only ever talks to its transport through :class:`MediaTransport`
and only ever hears from it through :class:`TransportListener`. Capturing and
playing audio is the transport's business.
"""
from __future__ import annotations

from typing import Callable, Optional, Protocol

from shared.protocol import IceCandidate, SessionDescription


class TransportListener(Protocol):
    def on_negotiation_needed(self) -> None: ...

    def on_ice_candidate(self, candidate: Optional[IceCandidate]) -> None: ...

    def on_connectivity_state(self, state: str) -> None: ...


class MediaTransport(Protocol):
    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply ``description`` and return the local description now in effect."""
        ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    def restart_ice(self) -> None: ...

    async def close(self) -> None: ...


# Called with the remote member id and the listener that receives transport events.
TransportFactory = Callable[[str, TransportListener], MediaTransport]

# Connectivity states a transport reports, mirroring RTCPeerConnection.connectionState.
STATE_NEW = "new"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"
STATE_FAILED = "failed"
STATE_CLOSED = "closed"

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from shared.protocol import DescriptionKind, IceCandidate, SessionDescription

from .transport import TransportFactory, TransportListener

logger = logging.getLogger(__name__)


def _ice_server(entry: Dict[str, Any]) -> RTCIceServer:
    return RTCIceServer(
        urls=entry["urls"],
        username=entry.get("username"),
        credential=entry.get("credential"),
    )


class AiortcTransport:
    """Media transport backed by an aiortc ``RTCPeerConnection``.

    aiortc gathers all local candidates while applying the local description
    and embeds them in the SDP, so it never reports trickled candidates of its
    own. Remote trickled candidates are still applied.
    """

    def __init__(
        self,
        remote_id: str,
        listener: TransportListener,
        *,
        ice_servers: Optional[list[Dict[str, Any]]] = None,
        audio_track: Optional[MediaStreamTrack] = None,
    ) -> None:
        self._remote_id = remote_id
        self._listener = listener
        configuration = RTCConfiguration(iceServers=[_ice_server(entry) for entry in ice_servers or []])
        self._pc = RTCPeerConnection(configuration=configuration)
        if audio_track is not None:
            self._pc.addTrack(audio_track)
        else:
            self._pc.addTransceiver("audio", direction="sendrecv")
        self._pc.on("connectionstatechange", self._on_connection_state_change)
        self._pc.on("track", self._on_track)
        # Local media is attached, so negotiation is needed; browsers fire this on their own.
        asyncio.get_running_loop().call_soon(listener.on_negotiation_needed)

    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        if ice_restart:
            logger.warning("aiortc cannot restart ICE; renegotiating with %s without it", self._remote_id)
        offer = await self._pc.createOffer()
        return SessionDescription(kind=DescriptionKind.OFFER, body=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(kind=DescriptionKind.ANSWER, body=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.body, type=description.kind.value))
        local = self._pc.localDescription
        return SessionDescription(kind=DescriptionKind(local.type), body=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.body, type=description.kind.value))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        raw = str(candidate.body.get("candidate") or "")
        if not raw:
            return
        if raw.startswith("candidate:"):
            raw = raw.split(":", 1)[1]
        ice = candidate_from_sdp(raw)
        ice.sdpMid = candidate.body.get("sdpMid")
        ice.sdpMLineIndex = candidate.body.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    def restart_ice(self) -> None:
        logger.debug("ICE restart requested for %s", self._remote_id)

    async def close(self) -> None:
        await self._pc.close()

    def _on_connection_state_change(self) -> None:
        self._listener.on_connectivity_state(self._pc.connectionState)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info("Stream incoming from %s (%s)", self._remote_id, track.kind)


def aiortc_transport_factory(
    ice_servers: Optional[list[Dict[str, Any]]] = None,
    *,
    audio_track: Optional[MediaStreamTrack] = None,
) -> TransportFactory:
    def factory(remote_id: str, listener: TransportListener) -> AiortcTransport:
        return AiortcTransport(remote_id, listener, ice_servers=ice_servers, audio_track=audio_track)

    return factory

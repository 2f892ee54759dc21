from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Publisher = Callable[[str, bool], Awaitable[None]]
Gate = Callable[[bool], Awaitable[None] | None]


class TransmissionCoordinator:
    """Push-to-talk state of the local operator and the last known state of everyone else.

    Nothing here touches peer negotiation: keying the transmitter only moves
    the local gate and announces it through the relay.
    """

    def __init__(self, publish: Publisher, *, gate: Optional[Gate] = None) -> None:
        self._publish = publish
        self._gate = gate
        self._room_id: Optional[str] = None
        self._local_active = False
        self._remote: Dict[str, bool] = {}

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @room_id.setter
    def room_id(self, value: Optional[str]) -> None:
        self._room_id = value
        if value is None:
            self._remote.clear()

    @property
    def local_transmitting(self) -> bool:
        return self._local_active

    async def set_local_transmitting(self, active: bool) -> None:
        """Open or close the local gate and announce it.

        Repeated calls with the same value are announced again.
        """

        self._local_active = bool(active)
        if self._gate is not None:
            try:
                result = self._gate(self._local_active)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Transmission gate failed")
        logger.info("TRANSMITTING..." if self._local_active else "RECEIVING/IDLE")
        if self._room_id is None:
            logger.debug("Not in a room; transmission state not announced")
            return
        await self._publish(self._room_id, self._local_active)

    def on_remote_transmission(self, member: str, active: bool) -> None:
        self._remote[member] = bool(active)

    def forget(self, member: str) -> None:
        self._remote.pop(member, None)

    def is_transmitting(self, member: str) -> bool:
        return self._remote.get(member, False)

    def remote_states(self) -> dict[str, bool]:
        return dict(self._remote)

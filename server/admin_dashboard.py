from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .signal_relay import SignalRelay

logger = logging.getLogger(__name__)

ShutdownHandler = Callable[[], Awaitable[bool]]

RELAY_LOGGER = "server"
LOG_TAIL_SIZE = 40
EXPORT_EVENT_LIMIT = 600


class RecentLogHandler(logging.Handler):
    """Remembers the latest relay log records so operators can read them over HTTP."""

    def __init__(self, capacity: int = 200) -> None:
        super().__init__(level=logging.INFO)
        self._records: Deque[dict[str, object]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        self._records.append(
            {
                "timestamp": record.created,
                "level": record.levelname.lower(),
                "logger": record.name,
                "message": record.getMessage(),
            }
        )

    def tail(self, limit: int) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        return list(self._records)[-limit:]


class AdminDashboard:
    """Read-mostly HTTP view of the relay: rooms, connections, recent events.

    The only write operations are removing a member and asking the relay to
    shut down.
    """

    def __init__(self, relay: SignalRelay, *, shutdown_handler: Optional[ShutdownHandler] = None) -> None:
        self._relay = relay
        self._shutdown_handler = shutdown_handler
        self._log_handler = RecentLogHandler()
        logging.getLogger(RELAY_LOGGER).addHandler(self._log_handler)
        self._app = FastAPI(title="TAC-NET relay admin")
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    def detach_log_handler(self) -> None:
        logging.getLogger(RELAY_LOGGER).removeHandler(self._log_handler)

    def _configure_routes(self) -> None:
        @self._app.get("/api/state")
        async def state() -> dict:
            snapshot = await self._relay.snapshot()
            now = time.time()
            snapshot.update(
                timestamp=now,
                log_tail=self._log_handler.tail(LOG_TAIL_SIZE),
                health={"status": "ok", "connection_count": snapshot["connection_count"], "timestamp": now},
            )
            return snapshot

        @self._app.get("/api/health")
        async def health() -> dict:
            return {
                "status": "ok",
                "connection_count": len(await self._relay.list_members()),
                "room_count": len(await self._relay.registry.list_rooms()),
                "timestamp": time.time(),
            }

        @self._app.post("/api/actions/kick")
        async def kick(payload: dict = Body(...)) -> dict:
            member = str(payload.get("member") or "").strip()
            if not member:
                raise HTTPException(status_code=400, detail="member required")
            if not await self._relay.force_disconnect(member):
                raise HTTPException(status_code=404, detail=f"{member} is not connected")
            logger.info("Admin removed member %s", member)
            return {"status": "ok"}

        @self._app.post("/api/actions/shutdown")
        async def shutdown() -> dict:
            if self._shutdown_handler is None:
                raise HTTPException(status_code=503, detail="shutdown handler not configured")
            initiated = await self._shutdown_handler()
            logger.info("Admin requested relay shutdown (initiated=%s)", initiated)
            return {"status": "ok" if initiated else "in_progress", "initiated": initiated}

        @self._app.get("/api/export/events")
        async def export_events() -> JSONResponse:
            events = await self._relay.registry.get_recent_events(limit=EXPORT_EVENT_LIMIT)
            return JSONResponse(
                events,
                headers={"Content-Disposition": 'attachment; filename="room-events.json"'},
            )


class AdminServer:
    """Serves an :class:`AdminDashboard` with uvicorn next to the relay's TCP listener."""

    def __init__(self, dashboard: AdminDashboard, *, host: str, port: int) -> None:
        self._dashboard = dashboard
        self._url = f"http://{host}:{port}"
        self._server = uvicorn.Server(uvicorn.Config(dashboard.app, host=host, port=port, log_level="info"))
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._server.serve(), name="admin-dashboard")
        logger.info("Admin dashboard available at %s", self._url)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._task = None
            self._dashboard.detach_log_handler()

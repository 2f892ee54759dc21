from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Optional

from shared.protocol import DEFAULT_ADMIN_PORT, DEFAULT_ICE_SERVERS, DEFAULT_TCP_PORT

from server.admin_dashboard import AdminDashboard, AdminServer
from server.relay_server import RelayServer
from server.room_registry import RoomRegistry
from server.signal_relay import HEARTBEAT_TIMEOUT, SignalRelay

logger = logging.getLogger(__name__)


def _load_ice_servers(path: Optional[Path]) -> list[dict]:
    if path is None:
        return list(DEFAULT_ICE_SERVERS)
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list) or not all(isinstance(entry, dict) and "urls" in entry for entry in data):
        raise ValueError(f"{path} must contain a JSON list of ICE server objects with 'urls'")
    return data


async def main() -> None:
    parser = argparse.ArgumentParser(description="TAC-NET signal relay")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the relay")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", DEFAULT_TCP_PORT)),
        help="TCP relay port (defaults to $PORT when set)",
    )
    parser.add_argument("--ice-config", type=Path, default=None, help="JSON file listing ICE servers handed to clients")
    parser.add_argument(
        "--heartbeat-timeout",
        type=float,
        default=HEARTBEAT_TIMEOUT,
        help="Seconds between stale-connection sweeps; silent clients expire after twice this",
    )
    parser.add_argument("--admin-host", default="127.0.0.1", help="Host for the admin dashboard server")
    parser.add_argument("--admin-port", type=int, default=DEFAULT_ADMIN_PORT, help="Port for the admin dashboard server")
    parser.add_argument("--no-admin", action="store_true", help="Do not start the admin dashboard")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )

    registry = RoomRegistry()
    relay = SignalRelay(registry, heartbeat_timeout=max(1.0, args.heartbeat_timeout))
    relay_server = RelayServer(args.host, args.port, relay, ice_servers=_load_ice_servers(args.ice_config))

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    shutdown_requested = False

    def trigger_shutdown(source: str) -> bool:
        nonlocal shutdown_requested
        if shutdown_requested:
            logger.debug("Shutdown already in progress (source=%s)", source)
            return False
        shutdown_requested = True
        logger.info("%s initiated shutdown", source)
        loop.call_soon_threadsafe(stop_event.set)
        return True

    async def request_shutdown() -> bool:
        return trigger_shutdown("Admin dashboard")

    admin_server: Optional[AdminServer] = None
    if not args.no_admin:
        dashboard = AdminDashboard(relay, shutdown_handler=request_shutdown)
        admin_server = AdminServer(dashboard, host=args.admin_host, port=args.admin_port)

    def _signal_handler() -> None:
        trigger_shutdown("Shutdown signal")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await relay_server.start()
    if admin_server is not None:
        await admin_server.start()

    heartbeat_task = asyncio.create_task(relay.heartbeat_watcher())

    logger.info("[TAC-NET] Signal relay running on port %s", args.port)
    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    try:
        await relay.disconnect_all()
    except Exception:
        logger.exception("Failed to disconnect members during shutdown")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        pass

    try:
        await relay_server.stop()
    except Exception:
        logger.exception("Error stopping relay server")

    if admin_server is not None:
        try:
            await admin_server.stop()
        except Exception:
            logger.exception("Error stopping admin server")

    logger.info("Shutdown complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()

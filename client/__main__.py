from __future__ import annotations

import argparse
import asyncio
import logging

from shared.protocol import DEFAULT_TCP_PORT, DEFAULT_UI_PORT

from .app import ClientApp
from .rtc_transport import aiortc_transport_factory


def main() -> None:
    parser = argparse.ArgumentParser(description="TAC-NET operator client")
    parser.add_argument("server_host", help="Hostname or IP of the signal relay")
    parser.add_argument("--port", type=int, default=DEFAULT_TCP_PORT, help="Relay TCP port")
    parser.add_argument("--room", required=True, help="Mission code to join")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local control API")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local control API")
    parser.add_argument(
        "--max-restarts",
        type=int,
        default=None,
        help="ICE restarts attempted per peer before giving up (unbounded by default)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        app = ClientApp(
            args.server_host,
            args.room,
            aiortc_transport_factory,
            tcp_port=args.port,
            max_restarts=args.max_restarts,
        )
    except ValueError as exc:
        parser.error(str(exc))

    asyncio.run(app.run(host=args.ui_host, port=args.ui_port))


if __name__ == "__main__":
    main()

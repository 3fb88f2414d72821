"""Command-line interface for socks5d."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from .__about__ import __version__
from .config import DEFAULT_PORT, Config, ServerConfig
from .robustness import Socks5Error, setup_logging
from .server import Socks5Server

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="socks5d",
        description=f"Socks5 server, default listen port is {DEFAULT_PORT}.",
    )
    p.add_argument("-p", "--port", type=int, default=None, help=f"Listen port (default {DEFAULT_PORT})")
    p.add_argument("--host", default=None, help="Bind host (default 0.0.0.0)")
    p.add_argument("--config", default=None, help="Path to config YAML")
    p.add_argument("--local-address", default=None, help="Source address for outbound connections and DNS")
    p.add_argument(
        "--dns",
        action="append",
        default=None,
        help="DNS server for domain destinations (repeatable)",
    )
    p.add_argument(
        "--loglevel",
        default="INFO",
        help="Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)",
    )
    p.add_argument("--logfile", default=None, help="Optional log file path")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


async def _serve(config: ServerConfig):
    server = Socks5Server(config)
    await server.start()
    print(f"socks5 server listen at {server.port}")
    await server.serve_forever()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.loglevel, args.logfile)

    try:
        config = Config(args.config).server_config(
            host=args.host,
            port=args.port,
            local_address=args.local_address,
            dns=args.dns,
        )
    except Socks5Error as e:
        logger.error(f"{e}: {e.context.get('errors')}")
        return 2

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logger.info("SOCKS5 server shutting down")
    except OSError as e:
        logger.error(f"Could not start server on {config.host}:{config.port}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Command-line interface for socks5relay."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from .__about__ import __version__
from .config import Config, ConfigError
from .logs import setup_logging
from .server import serve

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="socks5relay", description="SOCKS5 CONNECT relay")
    p.add_argument(
        "bind",
        nargs="?",
        default=None,
        help="Address to listen on as host:port (default 0.0.0.0:1080)",
    )
    p.add_argument("--config", default=None, help="Path to config YAML")
    p.add_argument(
        "--max-connections",
        type=int,
        default=None,
        help="Maximum simultaneously served connections (0 = unbounded)",
    )
    p.add_argument(
        "--loglevel",
        default=None,
        help="Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)",
    )
    p.add_argument("--logfile", default=None, help="Optional log file path")
    p.add_argument("--version", action="version", version=__version__)
    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = Config(args.config)
        if args.bind is not None:
            config.set_nested("server", "bind", value=args.bind)
        if args.max_connections is not None:
            config.set_nested("server", "max_connections", value=args.max_connections)
        if args.loglevel is not None:
            config.set_nested("logging", "level", value=args.loglevel)
        if args.logfile is not None:
            config.set_nested("logging", "file", value=args.logfile)
        config.validate()
    except ConfigError as e:
        logging.basicConfig()
        logger.error(str(e))
        return 1

    setup_logging(config.logging.level, config.logging.file)

    try:
        asyncio.run(serve(config.server.bind, config.server.max_connections))
    except KeyboardInterrupt:
        logger.info("SOCKS5 server shutting down")
    except OSError as e:
        logger.error(f"Failed to serve on {config.server.bind}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

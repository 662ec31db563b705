"""CLI entry point: ``python -m sensor_bridge [--port P] [--serve]``."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )
    if level.upper() != "DEBUG":
        # one line per HTTP request and asyncio slow-callback noise
        for noisy in ("uvicorn.access", "asyncio"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def _print_ports() -> int:
    from sensor_bridge.discovery import is_candidate, list_ports

    ports = await list_ports()
    if not ports:
        print("No serial ports found.")
        return 1
    for port in ports:
        marker = "*" if is_candidate(port) else " "
        vendor = f" ({port.manufacturer})" if port.manufacturer else ""
        print(f"{marker} {port.path}{vendor}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sensor_bridge",
        description="Serial telemetry bridge for toucher/voltage sensors",
    )
    parser.add_argument(
        "--port",
        default=None,
        help="Serial device path (default: auto-discover)",
    )
    parser.add_argument(
        "--baud",
        type=int,
        default=None,
        help="Baud rate (default: from BAUD_RATE / BAUD_PROFILE)",
    )
    parser.add_argument(
        "--no-reconnect",
        action="store_true",
        default=False,
        help="Do not retry the link after a failure",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        default=False,
        help="Expose the HTTP status API and WebSocket event stream",
    )
    parser.add_argument(
        "--list-ports",
        action="store_true",
        default=False,
        help="List serial ports (* marks likely devices) then exit",
    )
    args = parser.parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from sensor_bridge.config import BridgeSettings

    overrides = {}
    if args.port is not None:
        overrides["serial_port"] = args.port
    if args.baud is not None:
        overrides["baud_rate"] = args.baud
    if args.no_reconnect:
        overrides["auto_reconnect"] = False
    settings = BridgeSettings(**overrides)

    _configure_logging(settings.log_level, settings.log_format)

    if args.list_ports:
        sys.exit(asyncio.run(_print_ports()))

    logger = structlog.get_logger("sensor_bridge")
    config = settings.connection_config()
    logger.info(
        "bridge_starting",
        version=__import__("sensor_bridge").__version__,
        port=config.port or "auto",
        baud=config.baud_rate,
        auto_reconnect=config.auto_reconnect,
        reconnect_delay_ms=config.reconnect_delay_ms,
        serve=args.serve,
    )

    from sensor_bridge.bridge_loop import run_bridge

    try:
        asyncio.run(run_bridge(settings, serve=args.serve))
    except KeyboardInterrupt:
        logger.info("bridge_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()

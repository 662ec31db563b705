"""Main asyncio loop: wire discovery, manager, fan-out and the API."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional, Tuple

import structlog
import uvicorn

from sensor_bridge.api import create_app
from sensor_bridge.config import BridgeSettings
from sensor_bridge.connection_manager import ConnectionManager
from sensor_bridge.fanout import EventFanout, LoggingSubscriber
from sensor_bridge.link.base import LinkFactory
from sensor_bridge.link.live import SerialLink

logger = structlog.get_logger(__name__)


def build_bridge(
    settings: BridgeSettings,
    *,
    link_factory: LinkFactory = SerialLink,
) -> Tuple[ConnectionManager, EventFanout]:
    """Create a manager and fan-out wired to each other."""
    fanout = EventFanout(
        delivery_timeout=settings.subscriber_timeout_seconds,
        max_backlog=settings.subscriber_backlog,
    )
    manager = ConnectionManager(
        settings.connection_config(),
        link_factory=link_factory,
        publish=fanout.publish,
    )
    fanout.set_command_sink(manager.write)
    return manager, fanout


async def run_bridge(
    settings: BridgeSettings,
    *,
    serve: bool = False,
    link_factory: LinkFactory = SerialLink,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the bridge until SIGINT/SIGTERM or *shutdown_event* is set.

    Parameters
    ----------
    settings:
        Fully-resolved bridge configuration.
    serve:
        If ``True``, also run the HTTP/WebSocket API under uvicorn.
    shutdown_event:
        Optional externally owned stop signal (used when embedding).
    """
    shutdown_event = shutdown_event or asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
    # On Windows, SIGINT is handled by the default KeyboardInterrupt.

    manager, fanout = build_bridge(settings, link_factory=link_factory)
    fanout.subscribe(LoggingSubscriber())

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    if serve:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(manager, fanout),
                host=settings.api_host,
                port=settings.api_port,
                log_level=settings.log_level.lower(),
            )
        )
        server_task = asyncio.create_task(server.serve())
        server_task.add_done_callback(lambda _: shutdown_event.set())
        logger.info("api_starting", host=settings.api_host, port=settings.api_port)

    connect_task = asyncio.create_task(manager.connect())
    try:
        await shutdown_event.wait()
    finally:
        await manager.disconnect()
        await asyncio.gather(connect_task, return_exceptions=True)
        await fanout.close()
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        logger.info("bridge_stopped")

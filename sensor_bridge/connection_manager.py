"""Device link lifecycle: discover, open, pump, detect failure, reconnect.

State machine::

    DISCONNECTED/ERROR --connect()--> CONNECTING
    CONNECTING  --open ok------> OPEN                 (publish connected)
    CONNECTING  --no port------> RECONNECT_SCHEDULED | DISCONNECTED
    CONNECTING  --open failed--> RECONNECT_SCHEDULED | ERROR
    OPEN        --link error---> RECONNECT_SCHEDULED | ERROR
    OPEN        --link closed--> RECONNECT_SCHEDULED | DISCONNECTED
    RECONNECT_SCHEDULED --timer--> CONNECTING
    any         --disconnect()--> DISCONNECTED       (auto-reconnect off for good)

Every ``connect()`` episode and every ``disconnect()`` bumps an epoch
counter.  Work belonging to an older epoch (an open that completes after
teardown, a pump reading from a closed link) publishes nothing.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from sensor_bridge import discovery
from sensor_bridge.errors import BridgeError, DiscoveryFailure
from sensor_bridge.line_parser import parse_line
from sensor_bridge.link.base import DeviceLink, LinkFactory
from sensor_bridge.link.live import SerialLink
from sensor_bridge.schemas import (
    ConnectedPayload,
    ConnectionConfig,
    ConnectionState,
    ErrorPayload,
    EventKind,
    PortDescriptor,
    StatusSnapshot,
)

logger = structlog.get_logger(__name__)

Publisher = Callable[[EventKind, Dict[str, Any]], Awaitable[None]]
Discoverer = Callable[[], Awaitable[Optional[PortDescriptor]]]

_LINE_TERMINATOR = "\n"


async def _discard(kind: EventKind, payload: Dict[str, Any]) -> None:
    return None


class ConnectionManager:
    """Owns the single device link and its reconnect timer."""

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        link_factory: LinkFactory = SerialLink,
        discover: Discoverer = discovery.discover,
        publish: Optional[Publisher] = None,
    ) -> None:
        self._config = config
        self._link_factory = link_factory
        self._discover = discover
        self._publish: Publisher = publish or _discard

        self._auto_reconnect = config.auto_reconnect
        self._state = ConnectionState.DISCONNECTED
        self._port: Optional[str] = config.port
        self._link: Optional[DeviceLink] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._epoch = 0

    # -- read-only views ----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def status(self) -> StatusSnapshot:
        """Snapshot of the link; never mutates anything."""
        return StatusSnapshot(
            connected=self._state is ConnectionState.OPEN,
            port=self._port,
            baud=self._config.baud_rate,
            link_open=self._link is not None and self._link.is_open(),
            state=self._state,
        )

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> bool:
        """Resolve a port and open it.  Returns ``True`` once ``OPEN``.

        A call while ``CONNECTING`` or ``OPEN`` is a no-op.  Failures are
        published as ``error`` events, never raised.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug("connect_ignored", state=self._state.value)
            return self._state is ConnectionState.OPEN

        self._cancel_reconnect()
        self._epoch += 1
        epoch = self._epoch
        self._state = ConnectionState.CONNECTING

        port = self._config.port
        if port is None:
            descriptor = await self._discover()
            if epoch != self._epoch:
                return False
            if descriptor is None:
                return await self._fail(
                    epoch,
                    DiscoveryFailure("No serial device found. Please check connection."),
                    ConnectionState.DISCONNECTED,
                )
            port = descriptor.path
        self._port = port

        link = self._link_factory(port, self._config.baud_rate)
        try:
            await link.open()
        except Exception as exc:
            if epoch != self._epoch:
                return False
            return await self._fail(epoch, exc, ConnectionState.ERROR)

        if epoch != self._epoch:
            # disconnect() ran while the port was opening
            logger.info("open_abandoned", port=port)
            await link.close()
            return False

        self._link = link
        self._state = ConnectionState.OPEN
        logger.info("link_open", port=port, baud=self._config.baud_rate)

        await self._emit(epoch, EventKind.CONNECTED, ConnectedPayload(port=port).model_dump())
        if epoch != self._epoch:
            return False
        self._pump_task = asyncio.create_task(self._pump(link, epoch))
        return True

    async def disconnect(self) -> None:
        """Tear down the link and disable auto-reconnect for good.

        State changes and cancellations happen before the first await,
        so no event from the torn-down episode can slip out afterwards.
        """
        self._auto_reconnect = False
        self._epoch += 1
        self._cancel_reconnect()

        current = asyncio.current_task()
        pump, self._pump_task = self._pump_task, None
        if pump is current:
            pump = None
        reconnecting, self._reconnect_task = self._reconnect_task, None
        if reconnecting is current:
            reconnecting = None
        for task in (pump, reconnecting):
            if task is not None:
                task.cancel()
        link, self._link = self._link, None
        self._state = ConnectionState.DISCONNECTED

        if link is not None:
            await link.close()
        pending = [task for task in (pump, reconnecting) if task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("link_disconnected", port=self._port)

    async def wait_closed(self) -> None:
        """Wait until the current read pump (if any) has finished."""
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)

    # -- commands -----------------------------------------------------------

    def write(self, command: str) -> bool:
        """Send *command* plus a newline.  ``False`` unless ``OPEN``."""
        if self._state is not ConnectionState.OPEN or self._link is None:
            logger.warning("write_rejected", state=self._state.value, command=command)
            return False
        try:
            self._link.write(command + _LINE_TERMINATOR)
        except (BridgeError, OSError) as exc:
            logger.error("write_failed", port=self._port, error=str(exc))
            return False
        logger.info("command_sent", port=self._port, command=command)
        return True

    # -- reconnect ----------------------------------------------------------

    def schedule_reconnect(self) -> bool:
        """Arm the reconnect timer.  Returns ``False`` if not armed.

        A request while a timer is already pending is ignored; the
        pending timer is neither reset nor stacked.
        """
        if not self._auto_reconnect:
            logger.debug("reconnect_disabled")
            return False
        if self._reconnect_handle is not None:
            logger.debug("reconnect_already_pending")
            return False
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug("reconnect_not_needed", state=self._state.value)
            return False

        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(
            self._config.reconnect_delay_seconds, self._fire_reconnect
        )
        self._state = ConnectionState.RECONNECT_SCHEDULED
        logger.info("reconnect_scheduled", delay_ms=self._config.reconnect_delay_ms)
        return True

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        logger.info("reconnect_attempt", port=self._port)
        self._reconnect_task = asyncio.get_running_loop().create_task(self.connect())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
            logger.debug("reconnect_cancelled")

    # -- internal -----------------------------------------------------------

    async def _pump(self, link: DeviceLink, epoch: int) -> None:
        """Read lines until the link closes or fails."""
        try:
            while True:
                line = await link.readline()
                if line is None:
                    break
                reading = parse_line(line)
                if reading is not None:
                    await self._emit(epoch, EventKind.DATA, reading.model_dump())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if epoch != self._epoch:
                return
            logger.error("link_failed", port=self._port, error=str(exc))
            await self._end_episode(link, epoch, ConnectionState.ERROR)
            await self._emit(epoch, EventKind.ERROR, ErrorPayload(message=str(exc)).model_dump())
            self._maybe_reconnect(epoch)
            return

        if epoch != self._epoch:
            return
        logger.info("link_closed", port=self._port)
        await self._end_episode(link, epoch, ConnectionState.DISCONNECTED)
        await self._emit(epoch, EventKind.DISCONNECTED, {})
        self._maybe_reconnect(epoch)

    async def _end_episode(
        self, link: DeviceLink, epoch: int, next_state: ConnectionState
    ) -> None:
        if self._link is link:
            self._link = None
        self._state = next_state
        await link.close()

    async def _fail(
        self, epoch: int, exc: BaseException, next_state: ConnectionState
    ) -> bool:
        message = str(exc) or type(exc).__name__
        self._state = next_state
        logger.warning(
            "connect_failed",
            port=self._port,
            error=message,
            error_type=type(exc).__name__,
        )
        await self._emit(epoch, EventKind.ERROR, ErrorPayload(message=message).model_dump())
        self._maybe_reconnect(epoch)
        return False

    def _maybe_reconnect(self, epoch: int) -> None:
        if epoch == self._epoch and self._auto_reconnect:
            self.schedule_reconnect()

    async def _emit(self, epoch: int, kind: EventKind, payload: Dict[str, Any]) -> None:
        if epoch != self._epoch:
            logger.debug("event_suppressed", kind=kind.value)
            return
        await self._publish(kind, payload)

"""SerialLink -- pyserial-asyncio stream wrapper.

``serial_asyncio.open_serial_connection`` yields an asyncio
``StreamReader``/``StreamWriter`` pair, so reads suspend on the event
loop instead of blocking a thread.
"""

from __future__ import annotations

from typing import Optional

import serial
import serial_asyncio
import structlog

from sensor_bridge.errors import OpenFailure, RuntimeLinkError
from sensor_bridge.link.base import DeviceLink

logger = structlog.get_logger(__name__)

# Longest line the stream reader buffers before discarding it.
_READ_LIMIT = 64 * 1024


class SerialLink(DeviceLink):
    """Line-oriented link to a local serial port."""

    def __init__(
        self, port: str, baud_rate: int = 9600, *, read_limit: int = _READ_LIMIT
    ) -> None:
        self._port = port
        self._baud_rate = baud_rate
        self._read_limit = read_limit
        self._reader = None  # asyncio.StreamReader once open
        self._writer = None  # asyncio.StreamWriter once open

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        try:
            self._reader, self._writer = await serial_asyncio.open_serial_connection(
                url=self._port, baudrate=self._baud_rate, limit=self._read_limit
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise OpenFailure(f"Cannot open {self._port}: {exc}") from exc
        logger.info("serial_port_opened", port=self._port, baud=self._baud_rate)

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (serial.SerialException, OSError) as exc:
            logger.warning("serial_close_error", port=self._port, error=str(exc))
        logger.info("serial_port_closed", port=self._port)

    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    # -- I/O ----------------------------------------------------------------

    async def readline(self) -> Optional[str]:
        if self._reader is None:
            return None
        try:
            raw = await self._reader.readline()
        except (serial.SerialException, OSError) as exc:
            raise RuntimeLinkError(f"Serial port {self._port} failed: {exc}") from exc
        except ValueError as exc:
            # StreamReader dropped a line longer than its limit; the next one is intact
            logger.warning(
                "serial_line_overrun",
                port=self._port,
                limit=self._read_limit,
                error=str(exc),
            )
            return ""
        if not raw:
            return None
        return raw.decode("utf-8", errors="ignore")

    def write(self, data: str) -> None:
        if self._writer is None:
            raise RuntimeLinkError(f"Serial port {self._port} is not open")
        try:
            self._writer.write(data.encode("utf-8"))
        except (serial.SerialException, OSError) as exc:
            raise RuntimeLinkError(f"Write to {self._port} failed: {exc}") from exc

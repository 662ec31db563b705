"""Serial port enumeration and device selection.

Enumeration goes through pyserial's ``list_ports`` in a worker thread so
the event loop is never blocked.  Selection is a fixed heuristic: the
first port (in enumeration order) whose path looks like a USB CDC/serial
device, or whose manufacturer names a known Arduino-family vendor or
USB-serial bridge chip.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional

import serial.tools.list_ports
import structlog

from sensor_bridge.schemas import PortDescriptor

logger = structlog.get_logger(__name__)

# Matched case-insensitively against the device path
# (/dev/ttyACM0, /dev/ttyUSB0, /dev/cu.usbmodem1101, ...).
_DEVICE_PATH_MARKERS = ("acm", "usb")

# Matched case-insensitively against the manufacturer string.
_VENDOR_TOKENS = ("arduino", "ch340", "ftdi")


def _enumerate() -> List[PortDescriptor]:
    return [
        PortDescriptor(
            path=info.device,
            manufacturer=info.manufacturer,
            description=info.description,
            hwid=info.hwid,
        )
        for info in serial.tools.list_ports.comports()
    ]


async def list_ports() -> List[PortDescriptor]:
    """Return every serial endpoint visible to the host.

    Unlike ``discover`` this propagates enumeration errors to the caller.
    """
    return await asyncio.to_thread(_enumerate)


def is_candidate(port: PortDescriptor) -> bool:
    """Return ``True`` if *port* matches the device heuristic."""
    path = port.path.lower()
    if any(marker in path for marker in _DEVICE_PATH_MARKERS):
        return True
    if port.manufacturer:
        manufacturer = port.manufacturer.lower()
        return any(token in manufacturer for token in _VENDOR_TOKENS)
    return False


def select_port(ports: Iterable[PortDescriptor]) -> Optional[PortDescriptor]:
    """Return the first qualifying port, or ``None``."""
    for port in ports:
        if is_candidate(port):
            return port
    return None


async def discover() -> Optional[PortDescriptor]:
    """Find the likely target device.  Never raises."""
    try:
        ports = await list_ports()
    except Exception:
        logger.exception("port_enumeration_failed")
        return None

    for port in ports:
        logger.debug(
            "port_enumerated", path=port.path, manufacturer=port.manufacturer
        )

    selected = select_port(ports)
    if selected is None:
        logger.warning("device_not_found", scanned=len(ports))
        return None

    logger.info(
        "device_found", path=selected.path, manufacturer=selected.manufacturer
    )
    return selected

"""Tests for sensor_bridge.discovery -- enumeration and selection."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from sensor_bridge.discovery import discover, is_candidate, list_ports, select_port
from sensor_bridge.schemas import PortDescriptor

_COMPORTS = "serial.tools.list_ports.comports"


def _info(device: str, manufacturer: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        device=device,
        manufacturer=manufacturer,
        description="n/a",
        hwid="n/a",
    )


def test_select_device_class_path() -> None:
    ports = [PortDescriptor(path="/dev/x0"), PortDescriptor(path="/dev/acm0")]
    selected = select_port(ports)
    assert selected is not None
    assert selected.path == "/dev/acm0"


def test_select_first_match_wins() -> None:
    ports = [
        PortDescriptor(path="/dev/ttyS0"),
        PortDescriptor(path="/dev/ttyUSB0"),
        PortDescriptor(path="/dev/ttyACM0"),
    ]
    selected = select_port(ports)
    assert selected is not None
    assert selected.path == "/dev/ttyUSB0"


@pytest.mark.parametrize(
    "manufacturer",
    ["Arduino (www.arduino.cc)", "wch.cn CH340", "FTDI", "ftdi chip"],
)
def test_vendor_token_match(manufacturer: str) -> None:
    assert is_candidate(PortDescriptor(path="COM7", manufacturer=manufacturer))


def test_no_candidate() -> None:
    ports = [
        PortDescriptor(path="/dev/ttyS0"),
        PortDescriptor(path="COM1", manufacturer="(Standard port types)"),
    ]
    assert select_port(ports) is None
    assert select_port([]) is None


@pytest.mark.asyncio
async def test_discover_returns_matching_port() -> None:
    infos = [_info("/dev/x0"), _info("/dev/acm0")]
    with patch(_COMPORTS, return_value=infos):
        port = await discover()
    assert port is not None
    assert port.path == "/dev/acm0"


@pytest.mark.asyncio
async def test_discover_by_manufacturer() -> None:
    infos = [_info("/dev/ttyS0"), _info("/dev/ttyS4", "Arduino LLC")]
    with patch(_COMPORTS, return_value=infos):
        port = await discover()
    assert port is not None
    assert port.path == "/dev/ttyS4"
    assert port.manufacturer == "Arduino LLC"


@pytest.mark.asyncio
async def test_discover_none_found() -> None:
    with patch(_COMPORTS, return_value=[_info("/dev/ttyS0")]):
        assert await discover() is None


@pytest.mark.asyncio
async def test_discover_swallows_enumeration_error() -> None:
    with patch(_COMPORTS, side_effect=OSError("udev unavailable")):
        assert await discover() is None


@pytest.mark.asyncio
async def test_list_ports_propagates_errors() -> None:
    with patch(_COMPORTS, side_effect=OSError("udev unavailable")):
        with pytest.raises(OSError):
            await list_ports()


@pytest.mark.asyncio
async def test_list_ports_maps_fields() -> None:
    with patch(_COMPORTS, return_value=[_info("/dev/ttyACM0", "Arduino")]):
        ports = await list_ports()
    assert ports == [
        PortDescriptor(
            path="/dev/ttyACM0",
            manufacturer="Arduino",
            description="n/a",
            hwid="n/a",
        )
    ]

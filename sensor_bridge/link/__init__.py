"""Device link abstraction layer.

Provides ``DeviceLink`` ABC with one concrete implementation:

* ``SerialLink`` -- pyserial-asyncio stream over a local serial port.
"""

from sensor_bridge.link.base import DeviceLink, LinkFactory
from sensor_bridge.link.live import SerialLink

__all__ = ["DeviceLink", "LinkFactory", "SerialLink"]

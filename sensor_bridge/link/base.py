"""Abstract base class for device links."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional


class DeviceLink(ABC):
    """One open byte stream to the device, read line by line.

    Owned exclusively by ``ConnectionManager``; a link is opened at most
    once and discarded after ``close``.
    """

    @abstractmethod
    async def open(self) -> None:
        """Open the underlying port.

        Raises ``OpenFailure`` if the OS or driver rejects it.
        """

    @abstractmethod
    async def readline(self) -> Optional[str]:
        """Return the next decoded line, or ``None`` once the link closed.

        An over-long line is skipped and reported as ``""``.

        Raises ``RuntimeLinkError`` if the link fails while open.
        """

    @abstractmethod
    def write(self, data: str) -> None:
        """Queue *data* for transmission (no terminator is added)."""

    @abstractmethod
    async def close(self) -> None:
        """Close the link.  Safe to call more than once."""

    @abstractmethod
    def is_open(self) -> bool:
        """Return ``True`` while the port is open."""


# (port, baud_rate) -> unopened link
LinkFactory = Callable[[str, int], DeviceLink]

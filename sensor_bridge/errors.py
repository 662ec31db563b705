"""Exception types shared across the bridge.

Parse failures and rejected writes are deliberately *not* exceptions:
``parse_line`` returns ``None`` and ``ConnectionManager.write`` returns
``False``.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for recoverable device-link failures."""


class DiscoveryFailure(BridgeError):
    """No candidate serial port was found, or enumeration failed."""


class OpenFailure(BridgeError):
    """The OS or driver refused to open the resolved port."""


class RuntimeLinkError(BridgeError):
    """The link failed after it had been opened (unplug, driver fault)."""


class SubscriberGone(Exception):
    """Raised by a subscriber whose peer has gone away.

    The fan-out drops the subscriber from its active set.
    """

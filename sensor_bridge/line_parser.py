"""Turn raw device lines into ``SensorReading`` objects.

Accepted line format (one record per line, fields in any order,
labels case-insensitive)::

    toucher: 1, voltage: 3.45

Lines missing either field are discarded.  They never reach subscribers
and never interrupt the stream.
"""

from __future__ import annotations

import re
import time
from typing import Optional

import structlog

from sensor_bridge.schemas import SensorReading

logger = structlog.get_logger(__name__)

_TOUCHER_RE = re.compile(r"toucher:\s*(\d+)", re.IGNORECASE)
_VOLTAGE_RE = re.compile(r"voltage:\s*(\d+(?:\.\d*)?|\.\d+)", re.IGNORECASE)
_LOGGED_CHARS = 200


def parse_line(raw: str) -> Optional[SensorReading]:
    """Parse *raw* into a reading, or return ``None`` on mismatch.

    The voltage is passed through unclamped; range checks belong to
    consumers.
    """
    line = raw.strip()
    if not line:
        return None

    toucher_match = _TOUCHER_RE.search(line)
    voltage_match = _VOLTAGE_RE.search(line)
    if toucher_match is None or voltage_match is None:
        logger.debug(
            "line_discarded",
            raw=line[:_LOGGED_CHARS],
            missing="toucher" if toucher_match is None else "voltage",
        )
        return None

    try:
        toucher = int(toucher_match.group(1))
        voltage = float(voltage_match.group(1))
    except ValueError as exc:
        # int() refuses digit runs past the interpreter's conversion limit
        logger.debug("line_discarded", raw=line[:_LOGGED_CHARS], reason=str(exc))
        return None

    reading = SensorReading(
        toucher=toucher, voltage=voltage, timestamp=_now_ms(), raw=line
    )
    logger.debug(
        "line_parsed", toucher=reading.toucher, voltage=reading.voltage
    )
    return reading


def _now_ms() -> int:
    return time.time_ns() // 1_000_000

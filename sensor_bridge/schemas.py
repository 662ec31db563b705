"""Pydantic v2 models for ports, readings, events and status."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Discovery / configuration
# ---------------------------------------------------------------------------

class PortDescriptor(BaseModel):
    """A serial endpoint as reported by the host."""

    model_config = {"frozen": True}

    path: str = Field(..., description="Device path, e.g. /dev/ttyACM0 or COM3")
    manufacturer: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    hwid: Optional[str] = Field(default=None)


class ConnectionConfig(BaseModel):
    """Read-only link parameters, built once at startup."""

    model_config = {"frozen": True}

    port: Optional[str] = Field(
        default=None,
        description="Explicit device path; ``None`` triggers discovery",
    )
    baud_rate: int = Field(default=9600, gt=0)
    auto_reconnect: bool = Field(default=True)
    reconnect_delay_ms: int = Field(default=3000, ge=0)

    @property
    def reconnect_delay_seconds(self) -> float:
        return self.reconnect_delay_ms / 1000.0


class ConnectionState(str, Enum):
    """Lifecycle states of the device link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    RECONNECT_SCHEDULED = "reconnect_scheduled"


# ---------------------------------------------------------------------------
# Readings and events
# ---------------------------------------------------------------------------

class SensorReading(BaseModel):
    """One successfully parsed telemetry line."""

    model_config = {"frozen": True}

    toucher: int = Field(..., description="Touch sensor state, 0 or 1")
    voltage: float = Field(..., description="Analog reading in volts (~0-5)")
    timestamp: int = Field(
        ..., description="Ingestion time in ms since epoch (host clock)"
    )
    raw: str = Field(..., description="Trimmed source line")


class EventKind(str, Enum):
    """Kinds of events published to subscribers."""

    CONNECTED = "connected"
    DATA = "data"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ConnectedPayload(BaseModel):
    port: str


class ErrorPayload(BaseModel):
    message: str


class BridgeEvent(BaseModel):
    """A published event as seen by subscribers."""

    model_config = {"frozen": True}

    kind: EventKind
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        """Flatten into the wire shape ``{"event": kind, **payload}``."""
        return {"event": self.kind.value, **self.payload}


class StatusSnapshot(BaseModel):
    """On-demand view of the connection manager.

    Serialised with ``linkOpen`` (camelCase) to match the event payloads
    consumed by browser clients.
    """

    model_config = {"frozen": True, "populate_by_name": True}

    connected: bool
    port: Optional[str] = None
    baud: int
    link_open: bool = Field(..., alias="linkOpen")
    state: ConnectionState

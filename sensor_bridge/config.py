"""Bridge configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an env var
or a ``.env`` file in the working directory.  Leaving ``SERIAL_PORT``
unset (or blank) makes the bridge discover the device on each connect
attempt.

``env_prefix`` is empty, so field names map directly to env vars
(e.g. ``BAUD_RATE``, ``AUTO_RECONNECT``).
"""

from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from sensor_bridge.schemas import ConnectionConfig

# Baud rate per firmware profile when BAUD_RATE is not given.
_PROFILE_BAUD_RATES: Dict[str, int] = {
    "standard": 9600,
    "fast": 115200,
}


class BridgeSettings(BaseSettings):
    """Sensor bridge runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- device link --------------------------------------------------------
    serial_port: Optional[str] = Field(
        default=None,
        description="Serial device path; unset to auto-discover",
    )
    baud_profile: Literal["standard", "fast"] = Field(
        default="standard",
        description="Firmware profile: 'standard' (9600) or 'fast' (115200)",
    )
    baud_rate: Optional[int] = Field(
        default=None,
        gt=0,
        description="Explicit baud rate; overrides the profile default",
    )
    auto_reconnect: bool = Field(
        default=True,
        description="Retry the link after failures until shutdown",
    )
    reconnect_delay_ms: int = Field(
        default=3000,
        ge=0,
        description="Fixed delay between reconnect attempts",
    )

    # -- fan-out ------------------------------------------------------------
    subscriber_timeout_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Max time a single subscriber may take per event",
    )
    subscriber_backlog: int = Field(
        default=256,
        gt=0,
        description="Events buffered per subscriber before the oldest is dropped",
    )

    # -- HTTP / WebSocket surface ---------------------------------------------
    api_host: str = Field(default="127.0.0.1", description="Bind address")
    api_port: int = Field(default=3000, description="Bind port")

    # -- behaviour ----------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    @field_validator("serial_port")
    @classmethod
    def blank_port_means_discover(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    # -- derived ------------------------------------------------------------
    @property
    def effective_baud_rate(self) -> int:
        if self.baud_rate is not None:
            return self.baud_rate
        return _PROFILE_BAUD_RATES[self.baud_profile]

    def connection_config(self) -> ConnectionConfig:
        """Freeze the link-related settings into a ``ConnectionConfig``.

        An explicit ``auto_reconnect=False`` is honoured.
        """
        return ConnectionConfig(
            port=self.serial_port,
            baud_rate=self.effective_baud_rate,
            auto_reconnect=self.auto_reconnect,
            reconnect_delay_ms=self.reconnect_delay_ms,
        )

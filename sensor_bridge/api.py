"""FastAPI surface: status, port listing and a WebSocket subscriber.

GET  /health      -- liveness
GET  /api/status  -- connection snapshot
GET  /api/ports   -- serial endpoints visible to the host
WS   /ws          -- every published event; accepts outbound commands
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, status
from fastapi.websockets import WebSocketDisconnect

from sensor_bridge import __version__, discovery
from sensor_bridge.connection_manager import ConnectionManager
from sensor_bridge.errors import SubscriberGone
from sensor_bridge.fanout import EventFanout, Subscriber
from sensor_bridge.schemas import BridgeEvent, PortDescriptor, StatusSnapshot

logger = structlog.get_logger(__name__)

router = APIRouter()


class WebSocketSubscriber(Subscriber):
    """Relays published events to one WebSocket client."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def deliver(self, event: BridgeEvent) -> None:
        await self._send(event.to_message())

    async def command_rejected(self, command: str, reason: str) -> None:
        await self._send(
            {"event": "command_rejected", "command": command, "reason": reason}
        )

    async def _send(self, message: Dict[str, Any]) -> None:
        try:
            await self._websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as exc:
            # starlette raises RuntimeError once the socket is closed
            raise SubscriberGone(str(exc)) from exc


def _status_message(snapshot: StatusSnapshot) -> Dict[str, Any]:
    return {"event": "status", **snapshot.model_dump(mode="json", by_alias=True)}


def _extract_command(text: str) -> Optional[str]:
    """Accept ``{"type": "command", "command": "..."}`` or a bare string."""
    try:
        message = json.loads(text)
    except ValueError:
        return text
    if isinstance(message, dict):
        command = message.get("command")
        return command if isinstance(command, str) else None
    if isinstance(message, str):
        return message
    return text


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/health", tags=["Health"])
async def health() -> Dict[str, str]:
    return {"status": "ok", "version": __version__}


@router.get(
    "/api/status",
    response_model=StatusSnapshot,
    tags=["Device"],
    status_code=status.HTTP_200_OK,
)
async def get_status(request: Request) -> StatusSnapshot:
    """Return the current connection snapshot."""
    manager: ConnectionManager = request.app.state.manager
    return manager.status()


@router.get(
    "/api/ports",
    response_model=List[PortDescriptor],
    tags=["Device"],
    status_code=status.HTTP_200_OK,
)
async def get_ports() -> List[PortDescriptor]:
    """List serial endpoints visible to the host.

    Raises:
        HTTPException: 500 if the OS port enumeration fails.
    """
    try:
        return await discovery.list_ports()
    except Exception as exc:
        logger.exception("port_listing_failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc


@router.websocket("/ws")
async def events(websocket: WebSocket) -> None:
    """Stream events to the client and accept commands from it."""
    manager: ConnectionManager = websocket.app.state.manager
    fanout: EventFanout = websocket.app.state.fanout

    await websocket.accept()
    subscriber = WebSocketSubscriber(websocket)
    logger.info("ws_client_connected", subscribers=fanout.subscriber_count + 1)

    try:
        await websocket.send_json(_status_message(manager.status()))
        fanout.subscribe(subscriber)
        while True:
            text = await websocket.receive_text()
            command = _extract_command(text)
            if command is None:
                logger.warning("ws_message_ignored", message=text[:200])
                continue
            logger.info("ws_command_received", command=command)
            await fanout.submit_command(subscriber, command)
    except WebSocketDisconnect:
        logger.info("ws_client_disconnected")
    finally:
        fanout.unsubscribe(subscriber)


def create_app(manager: ConnectionManager, fanout: EventFanout) -> FastAPI:
    """Build the FastAPI app bound to a running manager and fan-out."""
    app = FastAPI(
        title="Sensor Bridge",
        version=__version__,
        description="Serial telemetry bridge -- status and live events",
    )
    app.state.manager = manager
    app.state.fanout = fanout
    app.include_router(router)
    return app

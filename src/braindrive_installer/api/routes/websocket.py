"""
Websocket endpoint shared by the UI and the execution agent.

Each connection announces its role with its first ``*_connect`` message;
after that every frame is parsed into the inbound message union and
handed to the connection hub.
"""

import contextlib
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from braindrive_installer.application.hub import ConnectionHub
from braindrive_installer.core.domain.errors import InputValidationError
from braindrive_installer.core.domain.messages import parse_inbound

router = APIRouter()
logger = structlog.get_logger()


class WebSocketLink:
    """Adapts a FastAPI websocket to the link protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_json(self, message: dict[str, Any]) -> None:
        if not self.is_open:
            raise ConnectionError("websocket is closed")
        await self.websocket.send_json(message)

    async def close(self) -> None:
        self._closed = True
        with contextlib.suppress(RuntimeError):
            await self.websocket.close()


@router.websocket("/ws")
async def relay(websocket: WebSocket):
    """Serve one UI or execution-agent connection."""
    hub: ConnectionHub = websocket.app.state.hub
    await websocket.accept()
    link = WebSocketLink(websocket)
    logger.debug("ws.connected", client=str(websocket.client))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_inbound(raw)
            except InputValidationError as e:
                await hub.send_error(link, e.message)
                continue
            await hub.handle(message, link)
    except WebSocketDisconnect:
        pass
    finally:
        link.mark_closed()
        await hub.handle_disconnect(link)
        logger.debug("ws.disconnected", client=str(websocket.client))

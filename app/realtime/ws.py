from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.realtime.gateway import SessionGateway
from app.services.errors import StoreUnavailable, Unauthenticated
from app.services.identity import extract_bearer

router = APIRouter()
_LOG = logging.getLogger("app.gateway")

CLOSE_UNAUTHENTICATED = 4401
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the gateway's connection interface.

    The handshake is accepted lazily on the first outbound frame, so a refused
    credential closes the socket before it is ever accepted.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, event: str, data: Any) -> None:
        if self.websocket.application_state == WebSocketState.CONNECTING:
            await self.websocket.accept()
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        await self.websocket.send_json({"event": event, "data": data})

    async def close(self, code: int = 1000) -> None:
        if self.websocket.application_state != WebSocketState.DISCONNECTED:
            await self.websocket.close(code=code)


def _credential(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token.strip()
    return extract_bearer(websocket.headers.get("authorization"))


async def _reject_frame(connection: WebSocketConnection, message: str) -> None:
    await connection.send("error", {"message": message, "code": "INVALID_PAYLOAD", "event": ""})


@router.websocket("/ws")
async def session_socket(websocket: WebSocket):
    gateway: SessionGateway = websocket.app.state.gateway
    connection = WebSocketConnection(websocket)
    try:
        session = await gateway.connect(connection, _credential(websocket))
    except Unauthenticated as exc:
        _LOG.info("connection refused: %s", exc.message)
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
        return
    except StoreUnavailable:
        _LOG.warning("connection refused: store unavailable")
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code") or 1000)
            raw = message.get("text")
            if raw is None:
                await _reject_frame(connection, "Only text frames are accepted")
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                await _reject_frame(connection, "Malformed frame")
                continue
            if not isinstance(frame, dict):
                await _reject_frame(connection, "Malformed frame")
                continue
            await gateway.handle(session, str(frame.get("event") or ""), frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(session)

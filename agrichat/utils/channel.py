"""Transport-neutral channel interface and its FastAPI WebSocket adapter."""
import json
import uuid
from enum import Enum
from typing import Any, Dict, Protocol, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from agrichat.schemas.frames import Inbound, Outbound


NORMAL_CLOSE_CODE = 1000
AUTH_FAILED_CLOSE_CODE = 4401


class ChannelClosed(Exception):
    """The peer went away; nothing more can be sent or received."""


class InvalidFrame(ValueError):
    """A frame arrived that is not a valid ``{"event", "data"}`` envelope."""


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Channel(Protocol):

    channel_id: str

    async def send(self, event: str, data: Dict[str, Any]) -> None: ...

    async def receive(self) -> Tuple[str, Dict[str, Any]]: ...

    async def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = "") -> None: ...


class WebSocketChannel:

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self.channel_id = uuid.uuid4().hex

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        frame = Outbound(event=event, data=data).model_dump(mode="json")
        try:
            await self._websocket.send_text(json.dumps(frame))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise ChannelClosed(str(exc)) from exc

    async def receive(self) -> Tuple[str, Dict[str, Any]]:
        try:
            raw = await self._websocket.receive_text()
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise ChannelClosed(str(exc)) from exc
        try:
            frame = Inbound.model_validate_json(raw)
        except ValidationError as exc:
            raise InvalidFrame("Frames must be JSON objects with an 'event' field") from exc
        return frame.event, frame.data

    async def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = "") -> None:
        if self._websocket.client_state == WebSocketState.DISCONNECTED:
            return
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close(code=code, reason=reason)
        except RuntimeError:
            # already closed by the peer
            return

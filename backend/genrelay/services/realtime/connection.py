"""Server-side handle for one accepted WebSocket."""

import uuid
from typing import Protocol

from starlette.websockets import WebSocket, WebSocketState


class Connection(Protocol):
    """What the registry needs from a live socket."""

    id: str
    user_id: str

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, text: str) -> None: ...


class WebSocketConnection:
    """Connection backed by a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        await self.websocket.send_text(text)

    def __repr__(self) -> str:
        return f"WebSocketConnection(id={self.id!r}, user_id={self.user_id!r})"

"""Transport abstraction for the realtime client.

The connection manager only needs to open a socket, send text frames, iterate
received frames until the socket closes, and close it with a code. The
default implementation uses the `websockets` asyncio client; tests inject an
in-memory transport.
"""

from collections.abc import AsyncIterator
from typing import Protocol

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = structlog.get_logger(__name__)


class Socket(Protocol):
    @property
    def is_open(self) -> bool: ...

    @property
    def close_code(self) -> int | None: ...

    @property
    def close_reason(self) -> str | None: ...

    async def send(self, text: str) -> None: ...

    def frames(self) -> AsyncIterator[str]: ...

    async def close(self, code: int, reason: str) -> None: ...


class Transport(Protocol):
    async def open(self, uri: str) -> Socket: ...


class WebsocketsSocket:
    """Socket backed by a `websockets` client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    @property
    def close_code(self) -> int | None:
        return self._ws.close_code

    @property
    def close_reason(self) -> str | None:
        return self._ws.close_reason

    async def send(self, text: str) -> None:
        await self._ws.send(text)

    async def frames(self) -> AsyncIterator[str]:
        try:
            async for frame in self._ws:
                yield frame.decode("utf-8") if isinstance(frame, bytes) else frame
        except ConnectionClosed as e:
            logger.debug("Socket closed while reading", code=e.rcvd.code if e.rcvd else None)

    async def close(self, code: int, reason: str) -> None:
        await self._ws.close(code=code, reason=reason)


class WebsocketsTransport:
    """Opens realtime sockets with the `websockets` library.

    Protocol-level pings are disabled; liveness is checked by the
    application heartbeat (ping/pong messages).
    """

    def __init__(self, open_timeout: float = 10.0) -> None:
        self.open_timeout = open_timeout

    async def open(self, uri: str) -> WebsocketsSocket:
        ws = await connect(uri, ping_interval=None, open_timeout=self.open_timeout)
        return WebsocketsSocket(ws)

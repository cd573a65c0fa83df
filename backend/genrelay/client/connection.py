"""Realtime connection manager.

Owns exactly one authenticated socket per client session: refuses to connect
with an expired credential, keeps the socket alive with an application-level
heartbeat and reconnects with bounded retries on abnormal closure.
"""

import asyncio
import inspect
import json
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from pydantic import BaseModel

from genrelay.client.credentials import CredentialStore
from genrelay.client.transport import Socket, Transport, WebsocketsTransport
from genrelay.config import Settings, settings
from genrelay.models.enums import (
    CLOSE_ABNORMAL,
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    CLOSE_REASON_TOKEN_EXPIRED,
)
from genrelay.models.messages import Envelope, MessageType, Ping, WireModel
from genrelay.services.exceptions import AuthExpiredError, AuthRejectedError, TransportError
from genrelay.utils.background_tasks import BackgroundTasks

logger = structlog.get_logger(__name__)

Listener = Callable[..., Any]


def _is_expiry_reason(reason: str | None) -> bool:
    if not reason:
        return False
    lowered = reason.lower()
    return CLOSE_REASON_TOKEN_EXPIRED in lowered or "expired" in lowered


def build_uri(base_url: str, token: str) -> str:
    """Embed the credential as the `token` query parameter."""
    parts = urlsplit(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ConnectionManager:
    """Maintains one live, authenticated realtime socket with automatic recovery.

    Listeners are plain attributes; each may be a sync or async callable:

        on_message(message: dict)                    decoded inbound frame, pongs excluded
        on_connect()                                 socket opened
        on_disconnect(code: int, reason: str)        socket closed for any reason
        on_auth_expired(error: AuthExpiredError)     credential expired, session halted
        on_auth_rejected(error: AuthRejectedError)   server refused the credential, session halted
        on_unstable(error: TransportError)           reconnection gave up

    Listener exceptions are logged and never reach the read loop.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        url: str | None = None,
        transport: Transport | None = None,
        config: Settings | None = None,
        tasks: BackgroundTasks | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or settings
        self.credentials = credentials
        self.url = url or self.config.websocket_url
        self.transport: Transport = transport or WebsocketsTransport()
        self.tasks = tasks or BackgroundTasks()
        self._clock = clock

        self.is_connected = False
        self.last_heartbeat_ack: float | None = None
        self.reconnect_attempt = 0
        self.stopped = False
        self.unstable = False

        self.on_message: Listener | None = None
        self.on_connect: Listener | None = None
        self.on_disconnect: Listener | None = None
        self.on_auth_expired: Listener | None = None
        self.on_auth_rejected: Listener | None = None
        self.on_unstable: Listener | None = None

        self._socket: Socket | None = None
        self._connecting = False
        self._closed_manually = False
        self._auth_retry_used = False
        self._forced_close_code: int | None = None
        self._heartbeat_task: asyncio.Task[Any] | None = None
        self._reconnect_task: asyncio.Task[Any] | None = None

    async def _emit(self, listener: Listener | None, *args: Any) -> None:
        if listener is None:
            return
        try:
            result = listener(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Connection listener failed", listener=getattr(listener, "__qualname__", repr(listener)))

    # -------------------------------------------------------------------------
    # Opening
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the socket. Returns False when skipped or when opening failed."""
        if self._connecting or self.is_connected:
            logger.debug("Connect skipped, connection open or in flight")
            return False

        token = self.credentials.token
        if self.credentials.is_expired(now=self._clock()):
            logger.warning("Cached credential expired, not connecting")
            self.credentials.purge()
            self.stopped = True
            await self._emit(self.on_auth_expired, AuthExpiredError("Cached credential expired"))
            return False

        self._connecting = True
        self._closed_manually = False
        self.stopped = False
        try:
            socket = await self.transport.open(build_uri(self.url, token or ""))
        except Exception as e:
            self._connecting = False
            logger.warning("Realtime connection failed", url=self.url, error=str(e))
            await self._handle_close(CLOSE_ABNORMAL, str(e))
            return False

        self._connecting = False
        self._socket = socket
        self._forced_close_code = None
        self.is_connected = True
        self.unstable = False
        self.reconnect_attempt = 0
        self.last_heartbeat_ack = self._clock()
        logger.info("Realtime connection open", url=self.url)

        self._heartbeat_task = self.tasks.run(self._heartbeat_loop(socket))
        self.tasks.run(self._read_loop(socket))
        await self._emit(self.on_connect)
        return True

    # -------------------------------------------------------------------------
    # Sending and receiving
    # -------------------------------------------------------------------------

    async def send(self, message: WireModel | dict[str, Any]) -> bool:
        """Fire-and-forget send. Returns False if the socket is not open."""
        socket = self._socket
        if not self.is_connected or socket is None:
            logger.debug("Send skipped, socket not open", type=_message_type(message))
            return False

        if isinstance(message, Envelope):
            text = message.to_json()
        elif isinstance(message, WireModel):
            text = json.dumps(message.to_wire())
        elif isinstance(message, BaseModel):
            text = message.model_dump_json(by_alias=True, exclude_none=True)
        else:
            text = json.dumps(message)

        try:
            await socket.send(text)
        except Exception as e:
            logger.warning("Realtime send failed", type=_message_type(message), error=str(e))
            return False
        return True

    async def _read_loop(self, socket: Socket) -> None:
        async for frame in socket.frames():
            await self._on_frame(frame)

        code = self._forced_close_code or socket.close_code or CLOSE_ABNORMAL
        await self._handle_close(code, socket.close_reason or "")

    async def _on_frame(self, frame: str) -> None:
        try:
            message = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning("Dropping non-JSON frame", frame=frame[:200])
            return
        if not isinstance(message, dict):
            logger.warning("Dropping non-object frame")
            return

        message_type = message.get("type")
        if message_type == MessageType.PONG:
            self.last_heartbeat_ack = self._clock()
            return
        if message_type == MessageType.CONNECTED:
            # Server accepted the credential
            self._auth_retry_used = False

        await self._emit(self.on_message, message)

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def _heartbeat_loop(self, socket: Socket) -> None:
        while self.is_connected and self._socket is socket:
            await asyncio.sleep(self.config.heartbeat_interval)
            await self.heartbeat_tick()

    async def heartbeat_tick(self) -> None:
        """One heartbeat step: force-close a silent connection, otherwise ping."""
        if not self.is_connected or self._socket is None:
            return

        now = self._clock()
        if self.last_heartbeat_ack is not None and now - self.last_heartbeat_ack > self.config.heartbeat_timeout:
            logger.warning(
                "Heartbeat timed out, forcing reconnect",
                silent_for=round(now - self.last_heartbeat_ack, 1),
            )
            self._forced_close_code = CLOSE_HEARTBEAT_TIMEOUT
            await self._socket.close(CLOSE_HEARTBEAT_TIMEOUT, "heartbeat timeout")
            return

        await self.send(Ping())

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        # A heartbeat-forced close finishes on its own once is_connected drops
        if self._forced_close_code is None:
            task.cancel()

    # -------------------------------------------------------------------------
    # Closing and reconnecting
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Manual close. Never triggers a reconnect."""
        self._closed_manually = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        socket = self._socket
        if socket is not None:
            await socket.close(CLOSE_NORMAL, "Manual disconnect")
        self._stop_heartbeat()
        self.is_connected = False
        self.reconnect_attempt = 0
        logger.info("Realtime connection closed manually")

    async def _handle_close(self, code: int, reason: str) -> None:
        self._socket = None
        self.is_connected = False
        self._connecting = False
        self._stop_heartbeat()
        logger.info("Realtime connection closed", code=code, reason=reason or None)
        await self._emit(self.on_disconnect, code, reason)

        if self._closed_manually or code == CLOSE_NORMAL:
            return

        if code == CLOSE_POLICY_VIOLATION:
            await self._handle_auth_close(reason)
            return

        if self.reconnect_attempt >= self.config.reconnect_attempts:
            logger.error("Realtime reconnection attempts exhausted", attempts=self.reconnect_attempt)
            self.unstable = True
            await self._emit(self.on_unstable, TransportError("Reconnection attempts exhausted", code))
            return

        self.reconnect_attempt += 1
        logger.info(
            "Scheduling realtime reconnect",
            attempt=self.reconnect_attempt,
            max_attempts=self.config.reconnect_attempts,
            delay=self.config.reconnect_interval,
        )
        self._schedule_reconnect()

    async def _handle_auth_close(self, reason: str) -> None:
        if not _is_expiry_reason(reason):
            logger.warning("Realtime authentication rejected", reason=reason or None)
            self.stopped = True
            await self._emit(self.on_auth_rejected, AuthRejectedError(reason or "Authentication rejected"))
            return

        if self.credentials.is_expired(now=self._clock()):
            logger.warning("Credential expired, halting reconnection")
            self.credentials.purge()
            self.stopped = True
            await self._emit(self.on_auth_expired, AuthExpiredError(reason))
            return

        if self._auth_retry_used:
            logger.error("Server still reports an expired credential, halting reconnection")
            self.stopped = True
            self.unstable = True
            await self._emit(self.on_unstable, TransportError(reason, CLOSE_POLICY_VIOLATION))
            return

        # Credential may have been refreshed out-of-band; try once more
        self._auth_retry_used = True
        logger.info("Server reported expired credential, retrying once")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._reconnect_task = self.tasks.later(self.config.reconnect_interval, self._reconnect)

    async def _reconnect(self) -> None:
        self._reconnect_task = None
        if self._closed_manually or self.stopped:
            return
        await self.connect()


def _message_type(message: Any) -> str | None:
    if isinstance(message, dict):
        return message.get("type")
    return getattr(message, "type", None)

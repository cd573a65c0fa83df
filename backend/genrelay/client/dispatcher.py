"""Typed message router for inbound realtime frames."""

import inspect
import json
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import ValidationError

from genrelay.models.messages import Envelope, MessageType

logger = structlog.get_logger(__name__)

Handler = Callable[[Envelope], Any]


class EventDispatcher:
    """Routes each envelope by `type` through a single table.

    Dispatch never raises: decoding failures and handler errors are logged so
    the transport read loop keeps going.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, message_type: MessageType | str, handler: Handler) -> None:
        self._handlers[str(message_type)] = handler

    def on(self, *message_types: MessageType | str) -> Callable[[Handler], Handler]:
        """Decorator form of `register` for one or more types."""

        def decorator(handler: Handler) -> Handler:
            for message_type in message_types:
                self.register(message_type, handler)
            return handler

        return decorator

    async def dispatch(self, raw: str | bytes | dict[str, Any]) -> bool:
        """Decode and route one message. Returns True if a handler ran successfully."""
        try:
            payload = json.loads(raw) if isinstance(raw, str | bytes) else raw
            envelope = Envelope.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Dropping undecodable message", error=str(e))
            return False

        handler = self._handlers.get(envelope.type)
        if handler is None:
            logger.debug("No handler for message type", type=envelope.type)
            return False

        try:
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Message handler failed", type=envelope.type)
            return False
        return True

"""Handle client -> server control messages on a realtime connection."""

import json
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from genrelay.models.enums import Topic
from genrelay.models.messages import (
    ControlMessage,
    MessageType,
    Ping,
    SubscribeGeneration,
    SubscribeMasks,
    UnsubscribeGeneration,
    UnsubscribeMasks,
    make_message,
)
from genrelay.services.realtime.registry import ResourceKey, SubscriptionRegistry

logger = structlog.get_logger(__name__)

_control_adapter: TypeAdapter[Any] = TypeAdapter(ControlMessage)

_KNOWN_TYPES = frozenset(
    {
        MessageType.SUBSCRIBE_GENERATION,
        MessageType.UNSUBSCRIBE_GENERATION,
        MessageType.SUBSCRIBE_MASKS,
        MessageType.UNSUBSCRIBE_MASKS,
        MessageType.PING,
    }
)


class ControlMessageHandler:
    """Route control messages for a single connection to the registry."""

    def __init__(self, registry: SubscriptionRegistry, connection_id: str) -> None:
        self.registry = registry
        self.connection_id = connection_id

    async def handle_text(self, raw: str) -> None:
        """Process one inbound text frame."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error("Invalid message format")
            return
        if not isinstance(payload, dict):
            await self._send_error("Invalid message format")
            return
        await self.handle(payload)

    async def handle(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type not in _KNOWN_TYPES:
            logger.info("Unknown control message type", type=message_type, connection_id=self.connection_id)
            return

        try:
            message = _control_adapter.validate_python(payload)
        except ValidationError:
            topic = "mask" if "masks" in str(message_type) else "generation"
            await self._send_error(f"inputImageId is required for {topic} subscription")
            return

        if isinstance(message, Ping):
            await self._send(make_message(MessageType.PONG))
        elif isinstance(message, SubscribeGeneration):
            await self._subscribe(message.input_image_id, Topic.GENERATION)
        elif isinstance(message, SubscribeMasks):
            await self._subscribe(message.input_image_id, Topic.MASKS)
        elif isinstance(message, UnsubscribeGeneration):
            self.registry.unsubscribe(self.connection_id, ResourceKey(message.input_image_id, Topic.GENERATION))
        elif isinstance(message, UnsubscribeMasks):
            self.registry.unsubscribe(self.connection_id, ResourceKey(message.input_image_id, Topic.MASKS))

    async def _subscribe(self, input_image_id: int | str, topic: Topic) -> None:
        self.registry.subscribe(self.connection_id, ResourceKey(input_image_id, topic))
        ack_type = MessageType.SUBSCRIBED_GENERATION if topic == Topic.GENERATION else MessageType.SUBSCRIBED
        label = "generation" if topic == Topic.GENERATION else "mask"
        await self._send(
            make_message(
                ack_type,
                input_image_id=input_image_id,
                message=f"Subscribed to {label} updates for image {input_image_id}",
            )
        )

    async def _send_error(self, detail: str) -> None:
        await self._send(make_message(MessageType.ERROR, message=detail))

    async def _send(self, message: Any) -> None:
        await self.registry.send(self.connection_id, message)

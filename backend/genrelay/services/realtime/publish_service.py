"""Realtime publishing service - the interface job-completion producers use."""

from typing import Any

import structlog

from genrelay.models.enums import Topic
from genrelay.models.messages import (
    BatchCompletedData,
    CreditUpdateData,
    Envelope,
    MasksCompletedData,
    MessageType,
    VariationEventData,
    make_message,
)
from genrelay.services.realtime.registry import InterestKey, ResourceKey, SubscriptionRegistry, UserKey

logger = structlog.get_logger(__name__)


def keys_for(
    user_id: str | int | None,
    input_image_id: int | str | None,
    topic: Topic = Topic.GENERATION,
) -> list[InterestKey]:
    """Interest keys an event for this user/resource is addressed to."""
    keys: list[InterestKey] = []
    if user_id is not None:
        keys.append(UserKey(str(user_id)))
    if input_image_id is not None:
        keys.append(ResourceKey(input_image_id, topic))
    return keys


class RealtimePublishService:
    """Service for publishing events to connected clients.

    Events are addressed to interest keys; the registry delivers each event
    once per connection even when several of its keys match.

    Usage:
        realtime = RealtimePublishService(registry)
        await realtime.notify_credit_update(user_id, credits=42)
        await realtime.notify_variation(
            MessageType.VARIATION_COMPLETED, user_id=7, input_image_id=12, data=payload
        )
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self.registry = registry

    async def publish(self, keys: list[InterestKey], message: Envelope) -> int:
        """Publish any envelope to the given keys. Never raises on delivery failure."""
        if not keys:
            logger.warning("Event has no recipients, skipping publish", type=message.type)
            return 0
        return await self.registry.publish(keys, message)

    async def notify_credit_update(self, user_id: str | int, credits: int) -> int:
        return await self.publish(
            keys_for(user_id, None),
            make_message(MessageType.CREDIT_UPDATE, CreditUpdateData(credits=credits)),
        )

    async def notify_generation_started(
        self,
        user_id: str | int,
        input_image_id: int | str | None,
        data: dict[str, Any],
        message_type: MessageType = MessageType.GENERATION_STARTED,
    ) -> int:
        return await self.publish(
            keys_for(user_id, input_image_id),
            make_message(message_type, data, input_image_id=_int_or_none(input_image_id)),
        )

    async def notify_variation(
        self,
        message_type: MessageType,
        *,
        user_id: str | int | None,
        input_image_id: int | str | None,
        data: VariationEventData,
    ) -> int:
        """Publish a variation lifecycle event to the owner and the resource viewers."""
        return await self.publish(
            keys_for(user_id, input_image_id),
            make_message(message_type, data, input_image_id=_int_or_none(input_image_id)),
        )

    async def notify_batch_completed(
        self,
        *,
        user_id: str | int | None,
        input_image_id: int | str | None,
        data: BatchCompletedData,
    ) -> int:
        return await self.publish(
            keys_for(user_id, input_image_id),
            make_message(MessageType.BATCH_COMPLETED, data, input_image_id=_int_or_none(input_image_id)),
        )

    async def notify_masks_started(self, *, user_id: str | int | None, input_image_id: int | str) -> int:
        return await self.publish(
            keys_for(user_id, input_image_id, Topic.MASKS),
            make_message(MessageType.MASKS_STARTED, input_image_id=_int_or_none(input_image_id)),
        )

    async def notify_masks_completed(
        self,
        *,
        user_id: str | int | None,
        input_image_id: int | str,
        data: MasksCompletedData,
    ) -> int:
        return await self.publish(
            keys_for(user_id, input_image_id, Topic.MASKS),
            make_message(MessageType.MASKS_COMPLETED, data, input_image_id=_int_or_none(input_image_id)),
        )

    async def notify_masks_failed(self, *, user_id: str | int | None, input_image_id: int | str, error: str) -> int:
        return await self.publish(
            keys_for(user_id, input_image_id, Topic.MASKS),
            make_message(MessageType.MASKS_FAILED, input_image_id=_int_or_none(input_image_id), error=error),
        )


def _int_or_none(value: int | str | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value) if str(value).isdigit() else None

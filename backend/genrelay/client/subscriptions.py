"""Client-side mirror of the server subscription registry."""

import structlog

from genrelay.client.connection import ConnectionManager
from genrelay.config import Settings, settings
from genrelay.models.enums import Topic
from genrelay.models.messages import (
    SubscribeGeneration,
    SubscribeMasks,
    UnsubscribeGeneration,
    UnsubscribeMasks,
    WireModel,
)

logger = structlog.get_logger(__name__)

_SUBSCRIBE: dict[Topic, type[WireModel]] = {
    Topic.GENERATION: SubscribeGeneration,
    Topic.MASKS: SubscribeMasks,
}
_UNSUBSCRIBE: dict[Topic, type[WireModel]] = {
    Topic.GENERATION: UnsubscribeGeneration,
    Topic.MASKS: UnsubscribeMasks,
}


class ClientSubscriptions:
    """Keeps resource subscriptions in sync with the viewed resource.

    Changes made while disconnected are deferred; on (re)connect the resource
    viewed *at that moment* is subscribed, once per topic.
    """

    def __init__(self, connection: ConnectionManager, *, config: Settings | None = None) -> None:
        cfg = config or settings
        self.connection = connection
        self.topics = [Topic(t) for t in cfg.subscription_topics]
        self.viewed_resource_id: int | str | None = None
        # (topic, resource id) pairs the server currently holds for this connection
        self._held: set[tuple[Topic, int | str]] = set()

    @property
    def held(self) -> frozenset[tuple[Topic, int | str]]:
        return frozenset(self._held)

    async def set_viewed_resource(self, resource_id: int | str | None) -> None:
        previous = self.viewed_resource_id
        self.viewed_resource_id = resource_id
        if previous == resource_id:
            return
        if not self.connection.is_connected:
            logger.debug("Not connected, deferring subscription change", resource_id=resource_id)
            return

        if previous is not None:
            for topic in self.topics:
                await self._unsubscribe(topic, previous)
        if resource_id is not None:
            for topic in self.topics:
                await self._subscribe(topic, resource_id)

    async def on_connect(self) -> None:
        self._held.clear()
        if self.viewed_resource_id is None:
            return
        for topic in self.topics:
            await self._subscribe(topic, self.viewed_resource_id)

    def on_disconnect(self, code: int | None = None, reason: str | None = None) -> None:
        self._held.clear()

    async def _subscribe(self, topic: Topic, resource_id: int | str) -> None:
        if (topic, resource_id) in self._held:
            return
        if await self.connection.send(_SUBSCRIBE[topic](input_image_id=resource_id)):
            self._held.add((topic, resource_id))
            logger.debug("Subscribed", topic=topic, resource_id=resource_id)

    async def _unsubscribe(self, topic: Topic, resource_id: int | str) -> None:
        if (topic, resource_id) not in self._held:
            return
        self._held.discard((topic, resource_id))
        await self.connection.send(_UNSUBSCRIBE[topic](input_image_id=resource_id))

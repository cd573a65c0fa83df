"""Tests for the server-side subscription registry and publish service."""

import json

import pytest

from genrelay.models.enums import Topic
from genrelay.models.messages import MessageType, VariationEventData, make_message
from genrelay.services.realtime.control import ControlMessageHandler
from genrelay.services.realtime.publish_service import RealtimePublishService, keys_for
from genrelay.services.realtime.registry import ResourceKey, SubscriptionRegistry, UserKey


class FakeConnection:
    def __init__(self, connection_id: str, user_id: str = "7") -> None:
        self.id = connection_id
        self.user_id = user_id
        self.is_open = True
        self.received: list[dict] = []
        self.fail = False

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("broken pipe")
        self.received.append(json.loads(text))


@pytest.fixture
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry()


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================


class TestSubscriptions:
    def test_register_subscribes_user_key(self, registry):
        registry.register(FakeConnection("a", user_id="7"))
        assert registry.keys_for("a") == {UserKey("7")}

    def test_subscribe_is_idempotent(self, registry):
        registry.register(FakeConnection("a"))
        key = ResourceKey(12)
        assert registry.subscribe("a", key) is True
        assert registry.subscribe("a", key) is False
        assert registry.keys_for("a") == {UserKey("7"), key}

    def test_unsubscribe_missing_key_is_noop(self, registry):
        registry.register(FakeConnection("a"))
        assert registry.unsubscribe("a", ResourceKey(99)) is False

    def test_topics_are_distinct_keys(self, registry):
        registry.register(FakeConnection("a"))
        registry.subscribe("a", ResourceKey(12, Topic.MASKS))
        assert registry.connections_for([ResourceKey(12, Topic.GENERATION)]) == []
        assert len(registry.connections_for([ResourceKey(12, Topic.MASKS)])) == 1

    def test_unregister_purges_all_keys(self, registry):
        registry.register(FakeConnection("a"))
        registry.register(FakeConnection("b"))
        registry.subscribe("a", ResourceKey(12))
        registry.unregister("a")

        assert registry.keys_for("a") == frozenset()
        assert registry.connections_for([ResourceKey(12)]) == []
        assert registry.stats() == {"totalConnections": 1, "subscribedKeys": 1}

    def test_unregister_unknown_is_ignored(self, registry):
        registry.unregister("missing")


# ============================================================================
# DELIVERY
# ============================================================================


class TestPublish:
    async def test_single_delivery_when_several_keys_match(self, registry):
        conn = FakeConnection("a", user_id="7")
        registry.register(conn)
        registry.subscribe("a", ResourceKey(12))

        sent = await registry.publish([UserKey("7"), ResourceKey(12)], make_message(MessageType.CREDIT_UPDATE))

        assert sent == 1
        assert len(conn.received) == 1

    async def test_routing_miss_returns_zero(self, registry):
        assert await registry.publish([ResourceKey(404)], make_message(MessageType.MASKS_STARTED)) == 0

    async def test_dead_connection_is_dropped(self, registry):
        dead = FakeConnection("dead", user_id="7")
        alive = FakeConnection("alive", user_id="7")
        registry.register(dead)
        registry.register(alive)
        dead.fail = True

        sent = await registry.publish([UserKey("7")], make_message(MessageType.CREDIT_UPDATE))

        assert sent == 1
        assert registry.stats()["totalConnections"] == 1
        assert len(alive.received) == 1

    async def test_closed_connection_is_dropped(self, registry):
        conn = FakeConnection("a")
        registry.register(conn)
        conn.is_open = False

        assert await registry.send("a", make_message(MessageType.PONG)) is False
        assert registry.stats()["totalConnections"] == 0


class TestPublishService:
    def test_keys_for_user_and_resource(self):
        assert keys_for(7, 12, Topic.MASKS) == [UserKey("7"), ResourceKey(12, Topic.MASKS)]
        assert keys_for(None, None) == []

    async def test_variation_reaches_owner_and_viewer(self, registry):
        owner = FakeConnection("owner", user_id="7")
        viewer = FakeConnection("viewer", user_id="8")
        registry.register(owner)
        registry.register(viewer)
        registry.subscribe("viewer", ResourceKey(12))
        realtime = RealtimePublishService(registry)

        sent = await realtime.notify_variation(
            MessageType.VARIATION_COMPLETED,
            user_id=7,
            input_image_id=12,
            data=VariationEventData(batch_id=5, image_id=51, status="COMPLETED", image_url="https://cdn/51.png"),
        )

        assert sent == 2
        message = viewer.received[0]
        assert message["type"] == "variation_completed"
        assert message["inputImageId"] == 12
        assert message["data"]["imageId"] == 51
        assert message["data"]["imageUrl"] == "https://cdn/51.png"

    async def test_credit_update_is_user_scoped(self, registry):
        owner = FakeConnection("owner", user_id="7")
        other = FakeConnection("other", user_id="8")
        registry.register(owner)
        registry.register(other)

        await RealtimePublishService(registry).notify_credit_update(7, credits=41)

        assert owner.received[0]["data"] == {"credits": 41}
        assert other.received == []


# ============================================================================
# CONTROL MESSAGES
# ============================================================================


class TestControlMessages:
    @pytest.fixture
    def conn(self, registry) -> FakeConnection:
        conn = FakeConnection("a")
        registry.register(conn)
        return conn

    async def test_subscribe_generation_acks(self, registry, conn):
        await ControlMessageHandler(registry, "a").handle_text('{"type": "subscribe_generation", "inputImageId": 12}')

        assert ResourceKey(12, Topic.GENERATION) in registry.keys_for("a")
        assert conn.received[0]["type"] == "subscribed_generation"
        assert conn.received[0]["inputImageId"] == 12

    async def test_subscribe_masks_acks(self, registry, conn):
        await ControlMessageHandler(registry, "a").handle({"type": "subscribe_masks", "inputImageId": "12"})

        assert ResourceKey(12, Topic.MASKS) in registry.keys_for("a")
        assert conn.received[0]["type"] == "subscribed"

    async def test_unsubscribe(self, registry, conn):
        handler = ControlMessageHandler(registry, "a")
        await handler.handle({"type": "subscribe_generation", "inputImageId": 12})
        await handler.handle({"type": "unsubscribe_generation", "inputImageId": 12})

        assert registry.keys_for("a") == {UserKey("7")}

    async def test_missing_input_image_id(self, registry, conn):
        await ControlMessageHandler(registry, "a").handle({"type": "subscribe_masks"})

        assert conn.received[0]["type"] == "error"
        assert conn.received[0]["message"] == "inputImageId is required for mask subscription"
        assert registry.keys_for("a") == {UserKey("7")}

    async def test_ping_pong(self, registry, conn):
        await ControlMessageHandler(registry, "a").handle({"type": "ping", "timestamp": "now"})
        assert conn.received[0]["type"] == "pong"

    async def test_invalid_json(self, registry, conn):
        await ControlMessageHandler(registry, "a").handle_text("{not json")
        assert conn.received[0]["message"] == "Invalid message format"

    async def test_unknown_type_is_ignored(self, registry, conn):
        await ControlMessageHandler(registry, "a").handle({"type": "dance"})
        assert conn.received == []

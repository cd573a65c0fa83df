"""Subscription registry - routes events to the connections interested in them.

Every connection is implicitly subscribed to its own UserKey. Resource-scoped
events additionally require an explicit subscribe_* control message.

State is kept per connection: each entry owns its key set and an asyncio lock
that serialises sends to that socket, so one slow or closing connection never
blocks routing to others. The key -> connection index is only touched from
synchronous code and needs no lock on a single event loop.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field

import structlog

from genrelay.models.enums import Topic
from genrelay.models.messages import Envelope
from genrelay.services.realtime.connection import Connection

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UserKey:
    """Account-wide interest: credit changes, user-addressed job events."""

    user_id: str

    def __str__(self) -> str:
        return f"user:{self.user_id}"


@dataclass(frozen=True)
class ResourceKey:
    """Interest in one input image, per topic (generation or masks)."""

    resource_id: int | str
    topic: Topic = Topic.GENERATION

    def __str__(self) -> str:
        return f"{self.topic}:{self.resource_id}"


InterestKey = UserKey | ResourceKey


@dataclass
class ConnectionEntry:
    connection: Connection
    keys: set[InterestKey] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SubscriptionRegistry:
    """Multimap from InterestKey to live connections."""

    def __init__(self) -> None:
        self._entries: dict[str, ConnectionEntry] = {}
        self._index: dict[InterestKey, set[str]] = defaultdict(set)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def register(self, connection: Connection) -> ConnectionEntry:
        """Track a newly authenticated connection and subscribe its UserKey."""
        entry = self._entries.get(connection.id)
        if entry is None:
            entry = ConnectionEntry(connection=connection)
            self._entries[connection.id] = entry
        self.subscribe(connection.id, UserKey(connection.user_id))
        logger.info("Realtime connection registered", connection_id=connection.id, user_id=connection.user_id)
        return entry

    def unregister(self, connection_id: str) -> None:
        """Drop a connection and every key it held. Unknown ids are ignored."""
        entry = self._entries.pop(connection_id, None)
        if entry is None:
            return
        for key in entry.keys:
            self._discard_from_index(key, connection_id)
        logger.info("Realtime connection unregistered", connection_id=connection_id, keys=len(entry.keys))
        entry.keys.clear()

    def _discard_from_index(self, key: InterestKey, connection_id: str) -> None:
        ids = self._index.get(key)
        if ids is None:
            return
        ids.discard(connection_id)
        if not ids:
            del self._index[key]

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, connection_id: str, key: InterestKey) -> bool:
        """Add a key to a connection. Returns False if already subscribed or unknown."""
        entry = self._entries.get(connection_id)
        if entry is None or key in entry.keys:
            return False
        entry.keys.add(key)
        self._index[key].add(connection_id)
        logger.debug("Subscribed", connection_id=connection_id, key=str(key))
        return True

    def unsubscribe(self, connection_id: str, key: InterestKey) -> bool:
        """Remove a key from a connection. Returns False if it was not subscribed."""
        entry = self._entries.get(connection_id)
        if entry is None or key not in entry.keys:
            return False
        entry.keys.discard(key)
        self._discard_from_index(key, connection_id)
        logger.debug("Unsubscribed", connection_id=connection_id, key=str(key))
        return True

    def keys_for(self, connection_id: str) -> frozenset[InterestKey]:
        entry = self._entries.get(connection_id)
        return frozenset(entry.keys) if entry else frozenset()

    def connections_for(self, keys: list[InterestKey]) -> list[Connection]:
        """Distinct connections subscribed to any of the keys."""
        seen: set[str] = set()
        result: list[Connection] = []
        for key in keys:
            for connection_id in self._index.get(key, ()):
                if connection_id in seen:
                    continue
                seen.add(connection_id)
                result.append(self._entries[connection_id].connection)
        return result

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def send(self, connection_id: str, message: Envelope) -> bool:
        """Send to one connection under its own lock. Dead connections are dropped."""
        entry = self._entries.get(connection_id)
        if entry is None:
            return False
        async with entry.lock:
            if not entry.connection.is_open:
                self.unregister(connection_id)
                return False
            try:
                await entry.connection.send_text(message.to_json())
            except Exception as e:
                logger.warning("Dropping connection after failed send", connection_id=connection_id, error=str(e))
                self.unregister(connection_id)
                return False
        return True

    async def publish(self, keys: list[InterestKey], message: Envelope) -> int:
        """Deliver a message once to every connection interested in any key.

        Returns the number of connections reached. Nobody listening is not an
        error: unsubscribe races with in-flight events.
        """
        targets = self.connections_for(keys)
        if not targets:
            logger.debug("No subscribers for event", type=message.type, keys=[str(k) for k in keys])
            return 0

        results = await asyncio.gather(*(self.send(c.id, message) for c in targets))
        sent = sum(1 for ok in results if ok)
        logger.info("Published realtime event", type=message.type, keys=[str(k) for k in keys], sent=sent)
        return sent

    def stats(self) -> dict[str, int]:
        return {
            "totalConnections": len(self._entries),
            "subscribedKeys": len(self._index),
        }

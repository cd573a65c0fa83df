"""Server half of the realtime protocol: registry, control messages, publishing."""

from genrelay.services.realtime.publish_service import RealtimePublishService
from genrelay.services.realtime.registry import InterestKey, ResourceKey, SubscriptionRegistry, UserKey

__all__ = [
    "InterestKey",
    "RealtimePublishService",
    "ResourceKey",
    "SubscriptionRegistry",
    "UserKey",
]

"""FastAPI dependencies for service injection."""

from typing import Annotated

from fastapi import Depends, Request

from genrelay.services.realtime.publish_service import RealtimePublishService
from genrelay.services.realtime.registry import SubscriptionRegistry


def get_registry(request: Request) -> SubscriptionRegistry:
    """Get the process-wide SubscriptionRegistry created by create_app()."""
    registry: SubscriptionRegistry = request.app.state.registry
    return registry


def get_publish_service(
    registry: Annotated[SubscriptionRegistry, Depends(get_registry)],
) -> RealtimePublishService:
    """Get a RealtimePublishService bound to the app registry."""
    return RealtimePublishService(registry)


# Type aliases for cleaner endpoint signatures
RegistryDep = Annotated[SubscriptionRegistry, Depends(get_registry)]
PublishServiceDep = Annotated[RealtimePublishService, Depends(get_publish_service)]

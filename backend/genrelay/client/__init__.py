"""Transport-agnostic asyncio client for the realtime generation protocol."""

from genrelay.client.api import CollaboratorClient, EnqueueResult
from genrelay.client.connection import ConnectionManager
from genrelay.client.credentials import CredentialStore
from genrelay.client.dispatcher import EventDispatcher
from genrelay.client.handlers import GenerationEventHandlers
from genrelay.client.pipeline import PipelineCoordinator
from genrelay.client.reconciler import StateReconciler
from genrelay.client.session import GenerationClient
from genrelay.client.subscriptions import ClientSubscriptions

__all__ = [
    "ClientSubscriptions",
    "CollaboratorClient",
    "ConnectionManager",
    "CredentialStore",
    "EnqueueResult",
    "EventDispatcher",
    "GenerationClient",
    "GenerationEventHandlers",
    "PipelineCoordinator",
    "StateReconciler",
]

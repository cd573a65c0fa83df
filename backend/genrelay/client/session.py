"""Client façade wiring the realtime core together."""

import time
from collections.abc import Callable
from typing import Any

import structlog

from genrelay.client.api import CollaboratorClient, EnqueueResult
from genrelay.client.connection import ConnectionManager
from genrelay.client.credentials import CredentialStore
from genrelay.client.dispatcher import EventDispatcher
from genrelay.client.handlers import GenerationEventHandlers
from genrelay.client.pipeline import PipelineCoordinator
from genrelay.client.reconciler import StateReconciler
from genrelay.client.subscriptions import ClientSubscriptions
from genrelay.client.transport import Transport
from genrelay.config import Settings, settings
from genrelay.models.enums import OperationType
from genrelay.models.state import ClientState, PipelineState
from genrelay.services.exceptions import AuthExpiredError, AuthRejectedError, CollaboratorError, TransportError
from genrelay.utils.background_tasks import BackgroundTasks

logger = structlog.get_logger(__name__)


class GenerationClient:
    """One client session: socket, subscriptions, dispatch, pipeline and state.

    Usage:
        client = GenerationClient(token)
        await client.start()
        await client.view(input_image_id)
        await client.create({"inputImageId": 12, "variations": 3})
        ...
        await client.stop()
    """

    def __init__(
        self,
        token: str | None,
        *,
        config: Settings | None = None,
        transport: Transport | None = None,
        api: CollaboratorClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        cfg = config or settings
        self.config = cfg
        self.credentials = CredentialStore(token)
        self.tasks = BackgroundTasks()
        self.reconciler = StateReconciler()

        self._owns_api = api is None
        self.api = api or CollaboratorClient(self.credentials, config=cfg)

        self.connection = ConnectionManager(
            self.credentials,
            transport=transport,
            config=cfg,
            tasks=self.tasks,
            clock=clock,
        )
        self.subscriptions = ClientSubscriptions(self.connection, config=cfg)
        self.dispatcher = EventDispatcher()
        self.coordinator = PipelineCoordinator(self.api, self.reconciler, tasks=self.tasks, config=cfg)
        self.handlers = GenerationEventHandlers(
            self.reconciler,
            self.coordinator,
            self.api,
            tasks=self.tasks,
            config=cfg,
        )
        self.handlers.register(self.dispatcher)

        self.auth_expired = False
        self.auth_rejected = False
        self._has_connected = False
        self.connection.on_message = self.dispatcher.dispatch
        self.connection.on_connect = self._on_connect
        self.connection.on_disconnect = self.subscriptions.on_disconnect
        self.connection.on_auth_expired = self._on_auth_expired
        self.connection.on_auth_rejected = self._on_auth_rejected
        self.connection.on_unstable = self._on_unstable

    @property
    def state(self) -> ClientState:
        return self.reconciler.state

    async def start(self) -> bool:
        return await self.connection.connect()

    async def stop(self) -> None:
        await self.connection.close()
        self.tasks.cancel_all()
        if self._owns_api:
            await self.api.aclose()

    async def view(self, resource_id: int | str | None) -> None:
        """Switch the viewed input image; resource subscriptions follow it."""
        await self.subscriptions.set_viewed_resource(resource_id)

    async def create(self, params: dict[str, Any]) -> EnqueueResult:
        """Enqueue a multi-variation create batch with PROCESSING placeholders."""
        return await self.run_single(OperationType.CREATE, params)

    async def edit(
        self,
        pipeline_id: str,
        outpaint_params: dict[str, Any],
        inpaint_params: dict[str, Any],
    ) -> PipelineState:
        state = await self.coordinator.start(pipeline_id, outpaint_params, inpaint_params)
        self.handlers.arm_soft_timeout()
        return state

    async def run_single(self, operation_type: OperationType | str, params: dict[str, Any]) -> EnqueueResult:
        """Enqueue one single-phase job and track it until its completion event."""
        op = OperationType(operation_type)
        try:
            result = await self.api.enqueue_job(op, params)
        except CollaboratorError:
            self.reconciler.stop_generating()
            raise

        self.reconciler.add_placeholders(
            result.batch_id,
            result.variation_ids,
            operation_type=op,
            original_base_image_id=params.get("originalBaseImageId"),
        )
        self.reconciler.track_batch(result.batch_id)
        if op.is_edit:
            self.handlers.arm_soft_timeout()
        return result

    async def _on_connect(self) -> None:
        self.reconciler.set_connection_unstable(False)
        await self.subscriptions.on_connect()
        if self._has_connected:
            self._resync()
        self._has_connected = True

    def _resync(self) -> None:
        """Recover events that were dropped while the socket was down."""
        batch_id = self.state.tracked_batch_id
        logger.info("Reconnected, resyncing state", tracked_batch_id=batch_id)
        self.handlers.request_refresh()
        if batch_id is not None:
            self.tasks.run(self.handlers.resync_batch(batch_id))

    def _on_auth_expired(self, error: AuthExpiredError) -> None:
        logger.warning("Session credential expired, sign-in required", error=str(error))
        self.auth_expired = True
        self.reconciler.stop_generating()

    def _on_auth_rejected(self, error: AuthRejectedError) -> None:
        logger.warning("Session credential rejected, sign-in required", error=str(error))
        self.auth_rejected = True
        self.reconciler.stop_generating()

    def _on_unstable(self, error: TransportError) -> None:
        logger.error("Realtime connection unstable", error=str(error), code=error.code)
        self.reconciler.set_connection_unstable(True)

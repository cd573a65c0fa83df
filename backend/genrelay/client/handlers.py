"""Handlers turning dispatched realtime events into state mutations.

Every handler applies its reconciler upserts synchronously before any other
step (pipeline handoff, auto-selection, refresh), so whatever runs next sees
the updated state.
"""

import inspect
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from genrelay.client.dispatcher import EventDispatcher
from genrelay.client.pipeline import PipelineCoordinator
from genrelay.client.reconciler import StateReconciler
from genrelay.config import Settings, settings
from genrelay.models.enums import BatchStatus, OperationType, SelectionKind, VariationStatus
from genrelay.models.messages import (
    BatchCompletedData,
    CreditUpdateData,
    Envelope,
    GenerationStartedData,
    MasksCompletedData,
    MessageType,
    VariationEventData,
)
from genrelay.models.state import Batch, Variation
from genrelay.services.exceptions import CollaboratorError, JobFailure
from genrelay.utils.background_tasks import BackgroundTasks

logger = structlog.get_logger(__name__)

Handler = Callable[[Envelope], Awaitable[None] | None]

COMPLETED_TYPES = (
    MessageType.VARIATION_COMPLETED,
    MessageType.USER_VARIATION_COMPLETED,
    MessageType.USER_IMAGE_COMPLETED,
    MessageType.REFINE_IMAGE_COMPLETED,
    MessageType.UPSCALE_COMPLETED,
)
FAILED_TYPES = (
    MessageType.VARIATION_FAILED,
    MessageType.REFINE_IMAGE_FAILED,
    MessageType.UPSCALE_FAILED,
)
STARTED_TYPES = (
    MessageType.GENERATION_STARTED,
    MessageType.REFINE_GENERATION_STARTED,
    MessageType.UPSCALE_GENERATION_STARTED,
)
ACK_TYPES = (
    MessageType.SUBSCRIBED,
    MessageType.SUBSCRIBED_GENERATION,
    MessageType.PONG,
)

# Operation implied by a type when the payload omits operationType
_TYPE_OPERATION: dict[str, OperationType] = {
    MessageType.REFINE_IMAGE_STATUS_UPDATE: OperationType.REFINE,
    MessageType.REFINE_IMAGE_COMPLETED: OperationType.REFINE,
    MessageType.REFINE_IMAGE_FAILED: OperationType.REFINE,
    MessageType.REFINE_GENERATION_STARTED: OperationType.REFINE,
    MessageType.UPSCALE_PROCESSING: OperationType.UPSCALE,
    MessageType.UPSCALE_COMPLETED: OperationType.UPSCALE,
    MessageType.UPSCALE_FAILED: OperationType.UPSCALE,
    MessageType.UPSCALE_GENERATION_STARTED: OperationType.UPSCALE,
}


class VariationSource(Protocol):
    async def list_variations(self, **filters: Any) -> list[Variation]: ...

    async def get_batch_snapshot(self, batch_id: int | str) -> tuple[Batch, list[Variation]]: ...


def _operation(envelope: Envelope, value: str | None) -> OperationType | None:
    return OperationType.parse(value) or _TYPE_OPERATION.get(envelope.type)


class GenerationEventHandlers:
    """The dispatch table of the client core.

    `on_job_failure(JobFailure)` is an optional listener for surfacing failed
    jobs; failures are otherwise only visible as FAILED records.
    """

    def __init__(
        self,
        reconciler: StateReconciler,
        coordinator: PipelineCoordinator,
        api: VariationSource,
        *,
        tasks: BackgroundTasks | None = None,
        config: Settings | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.coordinator = coordinator
        self.api = api
        self.tasks = tasks or BackgroundTasks()
        self.config = config or settings
        self.on_job_failure: Callable[[JobFailure], Any] | None = None

        # Recent variation ids whose completion side effects already ran
        self._completed_seen: OrderedDict[int | str, None] = OrderedDict()
        self._refresh_running = False
        self._refresh_pending = False
        self._soft_timeout_generation = 0

    def register(self, dispatcher: EventDispatcher) -> None:
        table: dict[MessageType, Handler] = {
            MessageType.CONNECTED: self.on_connected,
            MessageType.ERROR: self.on_error,
            MessageType.CREDIT_UPDATE: self.on_credit_update,
            MessageType.VARIATION_STARTED: self.on_variation_started,
            MessageType.VARIATION_PROGRESS: self.on_variation_progress,
            MessageType.REFINE_IMAGE_STATUS_UPDATE: self.on_variation_progress,
            MessageType.UPSCALE_PROCESSING: self.on_variation_progress,
            MessageType.VARIATION_STATUS_UPDATE: self.on_variation_status_update,
            MessageType.BATCH_COMPLETED: self.on_batch_completed,
            MessageType.MASKS_STARTED: self.on_masks_started,
            MessageType.MASKS_COMPLETED: self.on_masks_completed,
            MessageType.MASKS_FAILED: self.on_masks_failed,
        }
        table.update(dict.fromkeys(ACK_TYPES, self.on_ack))
        table.update(dict.fromkeys(STARTED_TYPES, self.on_generation_started))
        table.update(dict.fromkeys(COMPLETED_TYPES, self.on_variation_completed))
        table.update(dict.fromkeys(FAILED_TYPES, self.on_variation_failed))

        for message_type, handler in table.items():
            dispatcher.register(message_type, self._with_credits(handler))

    def _with_credits(self, handler: Handler) -> Handler:
        async def wrapped(envelope: Envelope) -> None:
            remaining = (envelope.data or {}).get("remainingCredits")
            if isinstance(remaining, int) and not isinstance(remaining, bool):
                self.reconciler.set_credits(remaining)
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result

        wrapped.__qualname__ = getattr(handler, "__qualname__", "handler")
        return wrapped

    # -------------------------------------------------------------------------
    # Connection and account
    # -------------------------------------------------------------------------

    def on_connected(self, envelope: Envelope) -> None:
        logger.info("Realtime session authenticated", message=envelope.message)

    def on_error(self, envelope: Envelope) -> None:
        logger.warning("Server reported an error", message=envelope.message or envelope.error)

    def on_ack(self, envelope: Envelope) -> None:
        logger.debug("Server acknowledgement", type=envelope.type, input_image_id=envelope.input_image_id)

    def on_credit_update(self, envelope: Envelope) -> None:
        data = CreditUpdateData.model_validate(envelope.data or {})
        self.reconciler.set_credits(data.credits)

    # -------------------------------------------------------------------------
    # Generation lifecycle
    # -------------------------------------------------------------------------

    def on_generation_started(self, envelope: Envelope) -> None:
        data = GenerationStartedData.model_validate(envelope.data or {})
        op = _operation(envelope, data.operation_type)
        if data.batch_id is not None:
            self.reconciler.upsert_batch(data.batch_id, operation_type=op, total_variations=data.total_variations)
        self.coordinator.on_started(op, data.batch_id)

    def _upsert_from_event(
        self, envelope: Envelope, status: VariationStatus
    ) -> tuple[VariationEventData, Variation | None]:
        data = VariationEventData.model_validate(envelope.data or {})
        record = self.reconciler.upsert_variation(
            data.image_id,
            status=status,
            batch_id=data.batch_id,
            variation_number=data.variation_number,
            image_url=data.image_url,
            thumbnail_url=data.thumbnail_url,
            processed_image_url=data.processed_image_url,
            operation_type=_operation(envelope, data.operation_type),
            original_base_image_id=data.original_base_image_id,
            prompt_snapshot=data.prompt_data.to_wire() if data.prompt_data else None,
        )
        return data, record

    def on_variation_started(self, envelope: Envelope) -> None:
        data, record = self._upsert_from_event(envelope, VariationStatus.PROCESSING)
        if record is not None:
            self.coordinator.on_started(record.operation_type, data.batch_id)

    def on_variation_progress(self, envelope: Envelope) -> None:
        self._upsert_from_event(envelope, VariationStatus.PROCESSING)

    async def on_variation_status_update(self, envelope: Envelope) -> None:
        status = str((envelope.data or {}).get("status") or "").upper()
        if status == VariationStatus.COMPLETED:
            await self.on_variation_completed(envelope)
        elif status == VariationStatus.FAILED:
            self.on_variation_failed(envelope)
        else:
            self.on_variation_progress(envelope)

    async def on_variation_completed(self, envelope: Envelope) -> None:
        data, record = self._upsert_from_event(envelope, VariationStatus.COMPLETED)
        if record is None:
            return
        self._after_completion(record, data.prompt_data.prompt if data.prompt_data else None)

    def _after_completion(self, record: Variation, prompt: str | None) -> None:
        # Upsert already applied; the coordinator sees the merged record
        in_pipeline = self.coordinator.on_completed(record)

        if not self._first_completion(record.id):
            return

        op = record.operation_type
        if op is not None and op.is_edit:
            self._schedule_selection(record, op)
            if prompt:
                self.tasks.later(self.config.prompt_restore_delay, self.reconciler.set_prompt, prompt)

        if in_pipeline:
            return
        if op is not OperationType.CREATE and self._single_job_settled(record.batch_id):
            self.reconciler.stop_generating()
        self.request_refresh()

    def _first_completion(self, variation_id: int | str) -> bool:
        if variation_id in self._completed_seen:
            return False
        self._completed_seen[variation_id] = None
        while len(self._completed_seen) > self.config.completion_memory:
            self._completed_seen.popitem(last=False)
        return True

    def _single_job_settled(self, batch_id: int | str | None) -> bool:
        """Has the tracked job outside any pipeline finished as far as local state knows?"""
        if self.coordinator.active is not None or not self.reconciler.is_tracked(batch_id):
            return False
        return batch_id is None or self.reconciler.batch_settled(batch_id)

    def _after_failure(self, op: OperationType | None, batch_id: int | str | None) -> None:
        if not self.coordinator.on_failed(op, batch_id) and self._single_job_settled(batch_id):
            self.reconciler.stop_generating()

    def on_variation_failed(self, envelope: Envelope) -> None:
        data, record = self._upsert_from_event(envelope, VariationStatus.FAILED)
        op = record.operation_type if record is not None else _operation(envelope, data.operation_type)

        self._after_failure(op, data.batch_id)
        self._emit_failure(JobFailure(op, data.batch_id, data.error or envelope.error))

    def on_batch_completed(self, envelope: Envelope) -> None:
        data = BatchCompletedData.model_validate(envelope.data or {})
        op = OperationType.parse(data.operation_type)
        status = data.status.upper()
        batch = self.reconciler.upsert_batch(
            data.batch_id,
            status=status,
            operation_type=op,
            total_variations=data.total_variations,
            successful_variations=data.successful_variations,
            failed_variations=data.failed_variations,
            original_base_image_id=data.original_base_image_id,
        )

        for image in data.completed_images:
            record = self.reconciler.upsert_variation(
                image.id,
                status=VariationStatus.COMPLETED,
                batch_id=data.batch_id,
                variation_number=image.variation_number,
                image_url=image.url,
                thumbnail_url=image.thumbnail_url,
                operation_type=op,
                original_base_image_id=data.original_base_image_id,
            )
            if record is not None and op is not None and op.is_edit:
                self.coordinator.on_completed(record)

        self._after_batch(data.batch_id, op, batch)

    def _after_batch(self, batch_id: int | str, op: OperationType | None, batch: Batch | None) -> None:
        if batch is not None and batch.status is BatchStatus.FAILED:
            if self.coordinator.on_failed(op, batch_id):
                self._emit_failure(JobFailure(op, batch_id, "batch failed"))
        if self.reconciler.is_tracked(batch_id) and (self.coordinator.active is None or op is OperationType.CREATE):
            self.reconciler.stop_generating()
        self.request_refresh()

    async def resync_batch(self, batch_id: int | str) -> None:
        """Catch up on a batch whose events may have been missed while disconnected.

        The snapshot goes through the same upsert rules and completion steps as
        push events, so nothing already applied runs twice.
        """
        try:
            snapshot, variations = await self.api.get_batch_snapshot(batch_id)
        except CollaboratorError as e:
            logger.warning("Batch resync failed", batch_id=batch_id, error=str(e))
            return

        batch, records = self.reconciler.apply_snapshot(snapshot, variations)
        op = snapshot.operation_type
        logger.info("Batch resynced", batch_id=batch_id, status=snapshot.status, variations=len(records))
        for record in records:
            if record.status is VariationStatus.COMPLETED:
                self._after_completion(record, None)
            elif record.status is VariationStatus.FAILED:
                self._after_failure(record.operation_type or op, batch_id)
        if batch is not None and batch.status.is_terminal:
            self._after_batch(batch_id, op, batch)

    # -------------------------------------------------------------------------
    # Masks
    # -------------------------------------------------------------------------

    def on_masks_started(self, envelope: Envelope) -> None:
        self.reconciler.masks_started(envelope.input_image_id)

    def on_masks_completed(self, envelope: Envelope) -> None:
        data = MasksCompletedData.model_validate(envelope.data or {})
        self.reconciler.masks_completed(envelope.input_image_id, data.mask_count, data.masks)

    def on_masks_failed(self, envelope: Envelope) -> None:
        error = envelope.error or (envelope.data or {}).get("error")
        self.reconciler.masks_failed(envelope.input_image_id, error)

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    def _schedule_selection(self, record: Variation, op: OperationType) -> None:
        if op is OperationType.INPAINT:
            delay, clear_overlays = self.config.inpaint_select_delay, True
        else:
            delay, clear_overlays = self.config.outpaint_select_delay, False
        self.tasks.later(delay, self._select_generated, record.id, clear_overlays)

    def _select_generated(self, image_id: int | str, clear_overlays: bool) -> None:
        record = self.reconciler.state.variations.get(image_id)
        if record is None or record.status is not VariationStatus.COMPLETED:
            return
        self.reconciler.select(
            image_id,
            kind=SelectionKind.GENERATED,
            base_input_image_id=record.original_base_image_id,
            clear_overlays=clear_overlays,
        )

    def arm_soft_timeout(self) -> None:
        """Hide the spinner if the current operation is still running after the soft timeout."""
        self._soft_timeout_generation += 1
        self.tasks.later(self.config.generation_soft_timeout, self._soft_timeout, self._soft_timeout_generation)

    def _soft_timeout(self, generation: int) -> None:
        if generation != self._soft_timeout_generation or not self.reconciler.state.is_generating:
            return
        logger.info("Generation soft timeout reached, hiding spinner", batch_id=self.reconciler.state.tracked_batch_id)
        self.reconciler.hide_spinner()

    def request_refresh(self) -> None:
        """Pull authoritative variations; concurrent requests coalesce into one rerun."""
        if self._refresh_running:
            self._refresh_pending = True
            return
        self._refresh_running = True
        self.tasks.run(self._refresh())

    async def _refresh(self) -> None:
        try:
            while True:
                self._refresh_pending = False
                try:
                    variations = await self.api.list_variations()
                except CollaboratorError as e:
                    logger.warning("Variation refresh failed", error=str(e))
                    return
                accepted = self.reconciler.apply_refresh(variations)
                logger.debug("Variation refresh applied", received=len(variations), accepted=accepted)
                if not self._refresh_pending:
                    return
        finally:
            self._refresh_running = False

    def _emit_failure(self, failure: JobFailure) -> None:
        logger.warning(
            "Generation job failed",
            operation_type=failure.operation_type,
            batch_id=failure.batch_id,
            error=failure.error,
        )
        if self.on_job_failure is not None:
            self.on_job_failure(failure)

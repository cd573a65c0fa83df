"""Two-phase outpaint -> inpaint pipeline coordinator.

    start --enqueue outpaint--> OUTPAINT_STARTING --started--> OUTPAINT_STARTED
    OUTPAINT_STARTED --completed(outpaint)--> INPAINT_STARTING  (enqueue inpaint on the outpaint result)
    INPAINT_STARTING --started--> INPAINT_STARTED
    INPAINT_STARTED --completed(inpaint)--> DONE
    *_STARTED --failed--> FAILED

The coordinator owns a single pipeline slot. DONE and FAILED pipelines are
discarded immediately.

Completions and failures only count once the phase's job is running (a
`*_STARTED` phase). A started event in a `*_STARTING` phase only counts while
that phase's enqueue call is in flight, so an unrelated job cannot take over
the pipeline during the settle window before phase 2 is enqueued.
"""

from typing import Any, Protocol

import structlog

from genrelay.client.api import EnqueueResult
from genrelay.client.reconciler import StateReconciler
from genrelay.config import Settings, settings
from genrelay.models.enums import OperationType, PipelinePhase, VariationStatus
from genrelay.models.state import PipelineState, Variation
from genrelay.services.exceptions import CollaboratorError
from genrelay.utils.background_tasks import BackgroundTasks

logger = structlog.get_logger(__name__)

_PHASE_OPERATION: dict[PipelinePhase, OperationType] = {
    PipelinePhase.OUTPAINT_STARTING: OperationType.OUTPAINT,
    PipelinePhase.OUTPAINT_STARTED: OperationType.OUTPAINT,
    PipelinePhase.INPAINT_STARTING: OperationType.INPAINT,
    PipelinePhase.INPAINT_STARTED: OperationType.INPAINT,
}

_STARTED_PHASE: dict[PipelinePhase, PipelinePhase] = {
    PipelinePhase.OUTPAINT_STARTING: PipelinePhase.OUTPAINT_STARTED,
    PipelinePhase.INPAINT_STARTING: PipelinePhase.INPAINT_STARTED,
}


class JobEnqueuer(Protocol):
    async def enqueue_job(self, operation_type: OperationType | str, params: dict[str, Any]) -> EnqueueResult: ...


class PipelineCoordinator:
    """Sequences the outpaint and inpaint jobs of one edit as a single operation."""

    def __init__(
        self,
        api: JobEnqueuer,
        reconciler: StateReconciler,
        *,
        tasks: BackgroundTasks | None = None,
        config: Settings | None = None,
    ) -> None:
        self.api = api
        self.reconciler = reconciler
        self.tasks = tasks or BackgroundTasks()
        self.config = config or settings
        self._slot: PipelineState | None = None
        self._enqueuing: OperationType | None = None

    @property
    def active(self) -> PipelineState | None:
        return self._slot

    def _expected(self, state: PipelineState) -> tuple[OperationType | None, int | str | None]:
        op = _PHASE_OPERATION.get(state.phase)
        if op is OperationType.OUTPAINT:
            return op, state.outpaint_batch_id
        if op is OperationType.INPAINT:
            return op, state.inpaint_batch_id
        return None, None

    def _matches(
        self,
        state: PipelineState,
        op: OperationType | None,
        batch_id: int | str | None,
        *,
        lenient: bool = False,
    ) -> bool:
        """Does an event for (op, batch_id) belong to the phase the pipeline is in?

        With `lenient`, an event carrying neither operation type nor batch id
        is attributed to the pipeline.
        """
        expected_op, expected_batch = self._expected(state)
        if expected_op is None:
            return False
        if op is not None and op != expected_op:
            return False
        if expected_batch is not None and batch_id is not None:
            return batch_id == expected_batch
        return op is not None or (lenient and batch_id is None)

    def _job_running(self, state: PipelineState) -> bool:
        return state.phase in _PHASE_OPERATION and state.phase not in _STARTED_PHASE

    async def _enqueue(self, op: OperationType, params: dict[str, Any]) -> EnqueueResult:
        self._enqueuing = op
        try:
            return await self.api.enqueue_job(op, params)
        finally:
            self._enqueuing = None

    async def start(
        self,
        pipeline_id: str,
        outpaint_params: dict[str, Any],
        inpaint_params: dict[str, Any],
    ) -> PipelineState:
        """Begin a pipeline by enqueuing its outpaint job.

        Raises:
            CollaboratorError: The outpaint enqueue failed; the pipeline is FAILED
        """
        if self._slot is not None:
            logger.warning("Replacing active pipeline", previous=self._slot.pipeline_id, phase=self._slot.phase)

        state = PipelineState(
            pipeline_id=pipeline_id,
            outpaint_params=dict(outpaint_params),
            inpaint_params=dict(inpaint_params),
        )
        self._slot = state
        self.reconciler.track_batch(None)
        logger.info("Pipeline started", pipeline_id=pipeline_id)

        try:
            result = await self._enqueue(OperationType.OUTPAINT, state.outpaint_params)
        except CollaboratorError as e:
            self._fail(state, f"outpaint enqueue failed: {e}")
            raise

        self._on_enqueued(state, OperationType.OUTPAINT, result)
        return state

    def _on_enqueued(self, state: PipelineState, op: OperationType, result: EnqueueResult) -> None:
        if self._slot is not state:
            return
        if op is OperationType.OUTPAINT:
            state.outpaint_batch_id = result.batch_id
        else:
            state.inpaint_batch_id = result.batch_id

        params = state.outpaint_params if op is OperationType.OUTPAINT else state.inpaint_params
        self.reconciler.track_batch(result.batch_id)
        self.reconciler.add_placeholders(
            result.batch_id,
            result.variation_ids,
            operation_type=op,
            original_base_image_id=params.get("originalBaseImageId"),
        )
        # A lost "started" event must not wedge the pipeline
        if _PHASE_OPERATION.get(state.phase) is op and state.phase in _STARTED_PHASE:
            state.phase = _STARTED_PHASE[state.phase]
        self._catch_up(state, op, result.batch_id)

    def _catch_up(self, state: PipelineState, op: OperationType, batch_id: int | str) -> None:
        """Apply a completion or failure that arrived before the enqueue response."""
        siblings = self.reconciler.variations_in_batch(batch_id)
        done = [v for v in siblings if v.status is VariationStatus.COMPLETED]
        if done:
            logger.debug("Pipeline job finished before its enqueue returned", pipeline_id=state.pipeline_id, op=op)
            self.on_completed(done[0])
        elif siblings and all(v.status is VariationStatus.FAILED for v in siblings):
            self.on_failed(op, batch_id)

    def on_started(self, op: OperationType | None, batch_id: int | str | None) -> bool:
        state = self._slot
        if state is None or state.phase not in _STARTED_PHASE:
            return False
        if self._enqueuing is not _PHASE_OPERATION[state.phase]:
            return False
        if not self._matches(state, op, batch_id, lenient=True):
            return False

        expected_op, _ = self._expected(state)
        if batch_id is not None:
            if expected_op is OperationType.OUTPAINT:
                state.outpaint_batch_id = batch_id
            else:
                state.inpaint_batch_id = batch_id
        state.phase = _STARTED_PHASE[state.phase]
        logger.debug("Pipeline phase started", pipeline_id=state.pipeline_id, phase=state.phase)
        return True

    def on_completed(self, variation: Variation) -> bool:
        """Advance on a completed variation. False means "not ours, handle normally"."""
        state = self._slot
        if state is None or not self._job_running(state):
            return False
        if not self._matches(state, variation.operation_type, variation.batch_id):
            return False

        if _PHASE_OPERATION[state.phase] is OperationType.OUTPAINT:
            state.outpaint_batch_id = state.outpaint_batch_id or variation.batch_id
            state.outpaint_result_image_id = variation.id
            state.outpaint_result_image_url = variation.image_url
            state.phase = PipelinePhase.INPAINT_STARTING
            logger.info(
                "Outpaint completed, scheduling inpaint",
                pipeline_id=state.pipeline_id,
                base_image_id=variation.id,
                delay=self.config.phase_two_delay,
            )
            self.tasks.later(self.config.phase_two_delay, self._enqueue_inpaint, state)
            return True

        state.phase = PipelinePhase.DONE
        self._slot = None
        self.reconciler.stop_generating()
        logger.info("Pipeline done", pipeline_id=state.pipeline_id, result_image_id=variation.id)
        return True

    def on_failed(self, op: OperationType | None, batch_id: int | str | None) -> bool:
        state = self._slot
        if state is None or not self._job_running(state):
            return False
        if not self._matches(state, op, batch_id, lenient=True):
            return False
        self._fail(state, "job failed")
        return True

    async def _enqueue_inpaint(self, state: PipelineState) -> None:
        if self._slot is not state or state.phase is not PipelinePhase.INPAINT_STARTING:
            return

        params = dict(state.inpaint_params)
        params["baseImageId"] = state.outpaint_result_image_id
        if state.outpaint_result_image_url:
            params["baseImageUrl"] = state.outpaint_result_image_url

        try:
            result = await self._enqueue(OperationType.INPAINT, params)
        except CollaboratorError as e:
            # No retry here; retries belong to the collaborator
            self._fail(state, f"inpaint enqueue failed: {e}")
            return

        self._on_enqueued(state, OperationType.INPAINT, result)

    def _fail(self, state: PipelineState, reason: str) -> None:
        state.phase = PipelinePhase.FAILED
        if self._slot is state:
            self._slot = None
        self.reconciler.stop_generating()
        logger.warning("Pipeline failed", pipeline_id=state.pipeline_id, reason=reason)

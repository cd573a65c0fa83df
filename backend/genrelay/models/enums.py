"""Enum definitions for the realtime protocol."""

from enum import StrEnum

from genrelay.models.status import Flags, LifecycleStatusEnum, Status


class BatchStatus(LifecycleStatusEnum):
    """Status of a generation batch.

    Status flow:
        PROCESSING -> COMPLETED | PARTIALLY_COMPLETED | FAILED
    """

    PROCESSING = Status("PROCESSING", Flags.ACTIVE)
    COMPLETED = Status("COMPLETED", Flags.FINAL)
    PARTIALLY_COMPLETED = Status("PARTIALLY_COMPLETED", Flags.FINAL)
    FAILED = Status("FAILED", Flags.FINAL | Flags.FAILURE)


class VariationStatus(LifecycleStatusEnum):
    """Status of a single output image. Transitions out of PROCESSING exactly once."""

    PROCESSING = Status("PROCESSING", Flags.ACTIVE)
    COMPLETED = Status("COMPLETED", Flags.FINAL)
    FAILED = Status("FAILED", Flags.FINAL | Flags.FAILURE)


class OperationType(StrEnum):
    """Kind of generation job a batch was enqueued for."""

    CREATE = "create"
    OUTPAINT = "outpaint"
    INPAINT = "inpaint"
    REFINE = "refine"
    UPSCALE = "upscale"

    @property
    def is_edit(self) -> bool:
        """Edit-pipeline operations drive auto-selection and the pipeline coordinator."""
        return self in (OperationType.OUTPAINT, OperationType.INPAINT)

    @classmethod
    def parse(cls, value: object) -> "OperationType | None":
        """Lenient parse for wire values; unknown operation types map to None."""
        if value is None:
            return None
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class PipelinePhase(StrEnum):
    """Phase of a two-job outpaint -> inpaint pipeline."""

    OUTPAINT_STARTING = "OUTPAINT_STARTING"
    OUTPAINT_STARTED = "OUTPAINT_STARTED"
    INPAINT_STARTING = "INPAINT_STARTING"
    INPAINT_STARTED = "INPAINT_STARTED"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelinePhase.DONE, PipelinePhase.FAILED)


class Topic(StrEnum):
    """Resource-scoped subscription topics."""

    GENERATION = "generation"
    MASKS = "masks"


class SelectionKind(StrEnum):
    """Whether the selected image is an uploaded input or a generated output."""

    INPUT = "input"
    GENERATED = "generated"


class MaskStatus(StrEnum):
    """Mask segmentation state for the viewed input image."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Close codes shared by client and server
CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006
CLOSE_POLICY_VIOLATION = 1008
# Local code used when the heartbeat detects a silently dead connection
CLOSE_HEARTBEAT_TIMEOUT = 4000

CLOSE_REASON_TOKEN_EXPIRED = "token_expired"
CLOSE_REASON_INVALID_TOKEN = "invalid_token"

"""Client-visible state records.

These are plain dataclasses owned by the reconciler. They are rebuilt from
authoritative push events and pull-based refreshes; nothing outside the
reconciler mutates them.
"""

from dataclasses import dataclass, field, fields
from typing import Any

from genrelay.models.enums import (
    BatchStatus,
    MaskStatus,
    OperationType,
    PipelinePhase,
    SelectionKind,
    VariationStatus,
)


@dataclass
class Variation:
    """One output image belonging to a batch. Unique by id across all batches."""

    id: int | str
    batch_id: int | str | None = None
    variation_number: int | None = None
    status: VariationStatus = VariationStatus.PROCESSING
    image_url: str | None = None
    thumbnail_url: str | None = None
    processed_image_url: str | None = None
    operation_type: OperationType | None = None
    original_base_image_id: int | str | None = None
    prompt_snapshot: dict[str, Any] | None = None


@dataclass
class Batch:
    """A generation request that may produce several variations."""

    id: int | str
    status: BatchStatus = BatchStatus.PROCESSING
    operation_type: OperationType | None = None
    total_variations: int | None = None
    successful_variations: int | None = None
    failed_variations: int | None = None
    original_base_image_id: int | str | None = None


def record_fields(record_type: type) -> frozenset[str]:
    """Field names of a state dataclass, used to filter merge input."""
    return frozenset(f.name for f in fields(record_type))


@dataclass
class PipelineState:
    """In-flight state of one outpaint -> inpaint operation."""

    pipeline_id: str
    phase: PipelinePhase = PipelinePhase.OUTPAINT_STARTING
    outpaint_params: dict[str, Any] = field(default_factory=dict)
    inpaint_params: dict[str, Any] = field(default_factory=dict)
    outpaint_batch_id: int | str | None = None
    outpaint_result_image_id: int | str | None = None
    outpaint_result_image_url: str | None = None
    inpaint_batch_id: int | str | None = None


@dataclass(frozen=True)
class Selection:
    """The image currently shown as active in the viewer."""

    image_id: int | str
    kind: SelectionKind = SelectionKind.GENERATED
    base_input_image_id: int | str | None = None


@dataclass
class MaskState:
    status: MaskStatus = MaskStatus.IDLE
    input_image_id: int | str | None = None
    mask_count: int = 0
    masks: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


@dataclass
class ClientState:
    """Every client-visible slice kept consistent with the server timeline."""

    # Insertion-ordered; dict keys give dedup by id
    variations: dict[int | str, Variation] = field(default_factory=dict)
    batches: dict[int | str, Batch] = field(default_factory=dict)
    selection: Selection | None = None
    overlay_objects: list[dict[str, Any]] = field(default_factory=list)
    credits: int | None = None
    is_generating: bool = False
    tracked_batch_id: int | str | None = None
    spinner_visible: bool = False
    prompt: str | None = None
    masks: MaskState = field(default_factory=MaskState)
    connection_unstable: bool = False

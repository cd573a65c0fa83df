"""Protocol models: enums, wire messages and client-visible state."""

from genrelay.models.enums import (
    BatchStatus,
    OperationType,
    PipelinePhase,
    Topic,
    VariationStatus,
)
from genrelay.models.state import Batch, ClientState, PipelineState, Variation

__all__ = [
    "Batch",
    "BatchStatus",
    "ClientState",
    "OperationType",
    "PipelinePhase",
    "PipelineState",
    "Topic",
    "Variation",
    "VariationStatus",
]

"""Realtime message schemas - shared contract between server, producers and clients.

Every frame in both directions is a JSON envelope:

    {"type": str, "data"?: object, "inputImageId"?: int, "error"?: str,
     "message"?: str, "timestamp"?: str}

Payload models use camelCase on the wire and snake_case in Python.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _coerce_id(value: Any) -> Any:
    """Producers send ids as numbers or numeric strings; normalise to int when possible."""
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return value


WireId = Annotated[int | str, BeforeValidator(_coerce_id)]


class MessageType(StrEnum):
    """All message types known to the protocol."""

    # Client -> server
    SUBSCRIBE_GENERATION = "subscribe_generation"
    UNSUBSCRIBE_GENERATION = "unsubscribe_generation"
    SUBSCRIBE_MASKS = "subscribe_masks"
    UNSUBSCRIBE_MASKS = "unsubscribe_masks"
    PING = "ping"

    # Server -> client: connection
    CONNECTED = "connected"
    ERROR = "error"
    PONG = "pong"
    SUBSCRIBED = "subscribed"
    SUBSCRIBED_GENERATION = "subscribed_generation"

    # Server -> client: account
    CREDIT_UPDATE = "credit_update"

    # Server -> client: generation lifecycle
    GENERATION_STARTED = "generation_started"
    REFINE_GENERATION_STARTED = "refine_generation_started"
    UPSCALE_GENERATION_STARTED = "upscale_generation_started"
    VARIATION_STARTED = "variation_started"
    VARIATION_PROGRESS = "variation_progress"
    VARIATION_STATUS_UPDATE = "variation_status_update"
    VARIATION_COMPLETED = "variation_completed"
    VARIATION_FAILED = "variation_failed"
    USER_VARIATION_COMPLETED = "user_variation_completed"
    USER_IMAGE_COMPLETED = "user_image_completed"
    REFINE_IMAGE_STATUS_UPDATE = "refine_image_status_update"
    REFINE_IMAGE_COMPLETED = "refine_image_completed"
    REFINE_IMAGE_FAILED = "refine_image_failed"
    UPSCALE_PROCESSING = "upscale_processing"
    UPSCALE_COMPLETED = "upscale_completed"
    UPSCALE_FAILED = "upscale_failed"
    BATCH_COMPLETED = "batch_completed"

    # Server -> client: masks
    MASKS_STARTED = "masks_started"
    MASKS_COMPLETED = "masks_completed"
    MASKS_FAILED = "masks_failed"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used in message envelopes."""
    return datetime.now(UTC).isoformat()


class WireModel(BaseModel):
    """Base for payload models: camelCase aliases, unknown fields preserved."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Envelope
# =============================================================================


class Envelope(WireModel):
    """Generic message envelope used for decoding any inbound frame."""

    type: str
    data: dict[str, Any] | None = None
    input_image_id: WireId | None = None
    error: str | None = None
    message: str | None = None
    timestamp: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def make_message(
    message_type: MessageType | str,
    data: BaseModel | dict[str, Any] | None = None,
    *,
    input_image_id: int | None = None,
    error: str | None = None,
    message: str | None = None,
) -> Envelope:
    """Build a timestamped outbound envelope."""
    payload: dict[str, Any] | None
    if isinstance(data, WireModel):
        payload = data.to_wire()
    elif isinstance(data, BaseModel):
        payload = data.model_dump(by_alias=True, exclude_none=True, mode="json")
    else:
        payload = data
    return Envelope(
        type=str(message_type),
        data=payload,
        input_image_id=input_image_id,
        error=error,
        message=message,
        timestamp=utc_timestamp(),
    )


# =============================================================================
# Client -> server control messages
# =============================================================================


class SubscribeGeneration(WireModel):
    type: Literal["subscribe_generation"] = "subscribe_generation"
    input_image_id: WireId


class UnsubscribeGeneration(WireModel):
    type: Literal["unsubscribe_generation"] = "unsubscribe_generation"
    input_image_id: WireId


class SubscribeMasks(WireModel):
    type: Literal["subscribe_masks"] = "subscribe_masks"
    input_image_id: WireId


class UnsubscribeMasks(WireModel):
    type: Literal["unsubscribe_masks"] = "unsubscribe_masks"
    input_image_id: WireId


class Ping(WireModel):
    type: Literal["ping"] = "ping"
    timestamp: str = Field(default_factory=utc_timestamp)


ControlMessage = Annotated[
    SubscribeGeneration | UnsubscribeGeneration | SubscribeMasks | UnsubscribeMasks | Ping,
    Field(discriminator="type"),
]


# =============================================================================
# Server -> client payloads
# =============================================================================


class PromptData(WireModel):
    """Prompt snapshot attached to a completed variation."""

    prompt: str | None = None


class CreditUpdateData(WireModel):
    credits: int


class GenerationStartedData(WireModel):
    batch_id: WireId | None = None
    operation_type: str | None = None
    total_variations: int | None = None
    remaining_credits: int | None = None


class VariationEventData(WireModel):
    """Payload of variation_started / _progress / _completed / _failed."""

    batch_id: WireId | None = None
    image_id: WireId
    variation_number: int | None = None
    status: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    processed_image_url: str | None = None
    operation_type: str | None = None
    original_base_image_id: WireId | None = None
    prompt_data: PromptData | None = None
    remaining_credits: int | None = None
    error: str | None = None


class CompletedImage(WireModel):
    id: WireId
    url: str | None = None
    thumbnail_url: str | None = None
    variation_number: int | None = None


class BatchCompletedData(WireModel):
    batch_id: WireId
    status: str
    operation_type: str | None = None
    total_variations: int | None = None
    successful_variations: int | None = None
    failed_variations: int | None = None
    original_base_image_id: WireId | None = None
    completed_images: list[CompletedImage] = Field(default_factory=list)
    remaining_credits: int | None = None


class MasksCompletedData(WireModel):
    mask_count: int = 0
    masks: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Schema exposure
# =============================================================================


class VariationMessage(WireModel):
    type: Literal[
        "variation_started",
        "variation_progress",
        "variation_completed",
        "variation_failed",
    ]
    data: VariationEventData
    input_image_id: WireId | None = None
    timestamp: str | None = None


class BatchCompletedMessage(WireModel):
    type: Literal["batch_completed"]
    data: BatchCompletedData
    input_image_id: WireId | None = None
    timestamp: str | None = None


class CreditUpdateMessage(WireModel):
    type: Literal["credit_update"]
    data: CreditUpdateData
    timestamp: str | None = None


class MasksCompletedMessage(WireModel):
    type: Literal["masks_completed"]
    input_image_id: WireId
    data: MasksCompletedData
    timestamp: str | None = None


class MasksFailedMessage(WireModel):
    type: Literal["masks_failed"]
    input_image_id: WireId
    error: str
    timestamp: str | None = None


# Union for API schema exposure
ServerMessageUnion = (
    VariationMessage | BatchCompletedMessage | CreditUpdateMessage | MasksCompletedMessage | MasksFailedMessage
)

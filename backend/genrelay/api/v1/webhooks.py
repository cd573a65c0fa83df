"""Producer webhook endpoints.

GPU workers and the mask-segmentation service report job lifecycle changes
here; each callback becomes a realtime event for the owning user and for the
viewers of the input image.
"""

import hashlib
import hmac
import json
from typing import Any, Literal

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from genrelay.api.v1.dependencies import PublishServiceDep
from genrelay.config import settings
from genrelay.models.messages import (
    BatchCompletedData,
    CreditUpdateData,
    MasksCompletedData,
    MessageType,
    VariationEventData,
    WireId,
)
from genrelay.services.realtime.publish_service import RealtimePublishService

logger = structlog.get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Genrelay-Signature"

_VARIATION_TYPES = frozenset(
    {
        MessageType.VARIATION_STARTED,
        MessageType.VARIATION_PROGRESS,
        MessageType.VARIATION_STATUS_UPDATE,
        MessageType.VARIATION_COMPLETED,
        MessageType.VARIATION_FAILED,
        MessageType.USER_VARIATION_COMPLETED,
        MessageType.USER_IMAGE_COMPLETED,
        MessageType.REFINE_IMAGE_STATUS_UPDATE,
        MessageType.REFINE_IMAGE_COMPLETED,
        MessageType.REFINE_IMAGE_FAILED,
        MessageType.UPSCALE_PROCESSING,
        MessageType.UPSCALE_COMPLETED,
        MessageType.UPSCALE_FAILED,
    }
)

_STARTED_TYPES = frozenset(
    {
        MessageType.GENERATION_STARTED,
        MessageType.REFINE_GENERATION_STARTED,
        MessageType.UPSCALE_GENERATION_STARTED,
    }
)


class _WebhookModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobEventPayload(_WebhookModel):
    """Job lifecycle callback from a generation worker."""

    type: MessageType
    user_id: WireId | None = None
    input_image_id: WireId | None = None
    data: dict[str, Any] = {}


class MaskEventPayload(_WebhookModel):
    """Callback from the mask-segmentation service."""

    status: Literal["started", "completed", "failed"]
    user_id: WireId | None = None
    input_image_id: WireId
    data: dict[str, Any] = {}
    error: str | None = None


def verify_signature(body: bytes, signature_header: str | None) -> bool:
    """Verify the hex HMAC-SHA256 signature of a producer callback.

    Args:
        body: Raw request body bytes
        signature_header: X-Genrelay-Signature header value

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header or not settings.webhook_secret:
        return False

    computed = hmac.new(settings.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature_header)


async def _read_signed_json(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Invalid producer webhook signature", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in webhook payload", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")
    return payload


@router.post("/webhooks/jobs", operation_id="jobEventWebhook")
async def job_event_webhook(request: Request, realtime: PublishServiceDep) -> dict[str, int]:
    """Publish a job lifecycle event.

    Returns the number of connections reached; zero is a normal outcome when
    nobody is watching.
    """
    raw = await _read_signed_json(request)
    try:
        payload = JobEventPayload.model_validate(raw)
        sent = await _publish_job_event(payload, realtime)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e
    return {"sent": sent}


async def _publish_job_event(payload: JobEventPayload, realtime: RealtimePublishService) -> int:
    if payload.type in _VARIATION_TYPES:
        return await realtime.notify_variation(
            payload.type,
            user_id=payload.user_id,
            input_image_id=payload.input_image_id,
            data=VariationEventData.model_validate(payload.data),
        )
    if payload.type == MessageType.BATCH_COMPLETED:
        return await realtime.notify_batch_completed(
            user_id=payload.user_id,
            input_image_id=payload.input_image_id,
            data=BatchCompletedData.model_validate(payload.data),
        )
    if payload.type == MessageType.CREDIT_UPDATE:
        if payload.user_id is None:
            raise HTTPException(status_code=400, detail="credit_update requires userId")
        credits = CreditUpdateData.model_validate(payload.data).credits
        return await realtime.notify_credit_update(payload.user_id, credits)
    if payload.type in _STARTED_TYPES:
        if payload.user_id is None:
            raise HTTPException(status_code=400, detail=f"{payload.type} requires userId")
        return await realtime.notify_generation_started(
            payload.user_id, payload.input_image_id, payload.data, message_type=payload.type
        )
    raise HTTPException(status_code=400, detail=f"Unsupported event type: {payload.type}")


@router.post("/webhooks/masks", operation_id="maskEventWebhook")
async def mask_event_webhook(request: Request, realtime: PublishServiceDep) -> dict[str, int]:
    """Publish a mask segmentation event to the input image's mask viewers."""
    raw = await _read_signed_json(request)
    try:
        payload = MaskEventPayload.model_validate(raw)
        if payload.status == "started":
            sent = await realtime.notify_masks_started(user_id=payload.user_id, input_image_id=payload.input_image_id)
        elif payload.status == "completed":
            sent = await realtime.notify_masks_completed(
                user_id=payload.user_id,
                input_image_id=payload.input_image_id,
                data=MasksCompletedData.model_validate(payload.data),
            )
        else:
            sent = await realtime.notify_masks_failed(
                user_id=payload.user_id,
                input_image_id=payload.input_image_id,
                error=payload.error or "Mask generation failed",
            )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e
    return {"sent": sent}

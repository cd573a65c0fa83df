"""Collaborator HTTP API client.

The realtime core needs three things from the CRUD backend: enqueue a job,
fetch authoritative batch state, and list variations for bulk refreshes.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from pydantic import Field, ValidationError

from genrelay.client.credentials import CredentialStore
from genrelay.config import Settings, settings
from genrelay.models.enums import BatchStatus, OperationType, VariationStatus
from genrelay.models.messages import WireId, WireModel
from genrelay.models.state import Batch, Variation
from genrelay.services.exceptions import CollaboratorError
from genrelay.utils.request_retry import RequestRetryConfig, get_request_retrying

logger = structlog.get_logger(__name__)

ENQUEUE_PATHS: dict[OperationType, str] = {
    OperationType.CREATE: "/runpod/generate",
    OperationType.OUTPAINT: "/tweak/outpaint",
    OperationType.INPAINT: "/tweak/inpaint",
    OperationType.REFINE: "/refine/generate",
    OperationType.UPSCALE: "/upscale/generate",
}


@dataclass
class EnqueueResult:
    """Identifiers returned when a job is accepted."""

    batch_id: int | str
    job_id: str | None = None
    variation_ids: list[int | str] = field(default_factory=list)


class _JobRef(WireModel):
    image_id: WireId


class _EnqueueResponse(WireModel):
    batch_id: WireId
    runpod_id: str | None = None
    job_id: str | None = None
    runpod_jobs: list[_JobRef] = Field(default_factory=list)
    image_ids: list[WireId] = Field(default_factory=list)


class _RemoteImage(WireModel):
    id: WireId
    batch_id: WireId | None = None
    url: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    processed_image_url: str | None = None
    variation_number: int | None = None
    status: str | None = None
    operation_type: str | None = None
    original_base_image_id: WireId | None = None

    def to_variation(self, batch_id: int | str | None = None) -> Variation:
        status = (self.status or VariationStatus.COMPLETED).upper()
        return Variation(
            id=self.id,
            batch_id=self.batch_id if self.batch_id is not None else batch_id,
            variation_number=self.variation_number,
            status=VariationStatus(status) if status in VariationStatus.__members__ else VariationStatus.PROCESSING,
            image_url=self.image_url or self.url,
            thumbnail_url=self.thumbnail_url,
            processed_image_url=self.processed_image_url,
            operation_type=OperationType.parse(self.operation_type),
            original_base_image_id=self.original_base_image_id,
        )


class _BatchStatusResponse(WireModel):
    batch_id: WireId
    status: str
    operation_type: str | None = None
    total_variations: int | None = None
    successful_variations: int | None = None
    failed_variations: int | None = None
    original_base_image_id: WireId | None = None
    images: list[_RemoteImage] = Field(default_factory=list)


class _VariationListResponse(WireModel):
    variations: list[_RemoteImage] = Field(default_factory=list)


class CollaboratorClient:
    """Async client for the collaborator CRUD API.

    Network errors are retried with tenacity; HTTP status errors and
    malformed responses raise CollaboratorError immediately.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        config: Settings | None = None,
        retry: RequestRetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or settings
        self.credentials = credentials
        self.retry = retry or RequestRetryConfig.from_settings(self.config)
        self._client = httpx.AsyncClient(
            base_url=self.config.api_base_url,
            timeout=self.config.api_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CollaboratorClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.credentials.token:
            headers["Authorization"] = f"Bearer {self.credentials.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async for attempt in get_request_retrying(self.retry):
                with attempt:
                    response = await self._client.request(method, path, headers=self._get_headers(), **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Collaborator request failed",
                method=method,
                path=path,
                status_code=e.response.status_code,
                response=e.response.text[:500],
            )
            raise CollaboratorError(f"HTTP error: {e.response.status_code}", status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error("Collaborator request error", method=method, path=path, error=str(e))
            raise CollaboratorError(f"Request error: {e}") from e
        except ValueError as e:
            raise CollaboratorError(f"Invalid JSON from {path}") from e

    async def enqueue_job(self, operation_type: OperationType | str, params: dict[str, Any]) -> EnqueueResult:
        """Submit a generation job.

        Args:
            operation_type: Which generation endpoint to call
            params: Request body, already in wire (camelCase) form

        Returns:
            Batch id, job id and the ids of the placeholder variations

        Raises:
            CollaboratorError: If the job was not accepted
        """
        op = OperationType(operation_type)
        data = await self._request("POST", ENQUEUE_PATHS[op], json=params)
        try:
            parsed = _EnqueueResponse.model_validate(data)
        except ValidationError as e:
            raise CollaboratorError(f"Unexpected enqueue response for {op}") from e

        variation_ids = [job.image_id for job in parsed.runpod_jobs] or list(parsed.image_ids)
        result = EnqueueResult(
            batch_id=parsed.batch_id,
            job_id=parsed.job_id or parsed.runpod_id,
            variation_ids=variation_ids,
        )
        logger.info("Enqueued generation job", operation_type=op, batch_id=result.batch_id, job_id=result.job_id)
        return result

    async def get_batch_snapshot(self, batch_id: int | str) -> tuple[Batch, list[Variation]]:
        """Authoritative batch record plus its images."""
        data = await self._request("GET", f"/runpod/status/{batch_id}")
        try:
            parsed = _BatchStatusResponse.model_validate(data)
        except ValidationError as e:
            raise CollaboratorError(f"Unexpected status response for batch {batch_id}") from e

        status = parsed.status.upper()
        batch = Batch(
            id=parsed.batch_id,
            status=BatchStatus(status) if status in BatchStatus.__members__ else BatchStatus.PROCESSING,
            operation_type=OperationType.parse(parsed.operation_type),
            total_variations=parsed.total_variations,
            successful_variations=parsed.successful_variations,
            failed_variations=parsed.failed_variations,
            original_base_image_id=parsed.original_base_image_id,
        )
        return batch, [image.to_variation(parsed.batch_id) for image in parsed.images]

    async def get_batch_status(self, batch_id: int | str) -> Batch:
        batch, _ = await self.get_batch_snapshot(batch_id)
        return batch

    async def list_variations(self, **filters: Any) -> list[Variation]:
        """List variations, newest first. Filters are passed as query parameters."""
        params = {"page": 1, "limit": self.config.refresh_page_limit}
        params.update({k: v for k, v in filters.items() if v is not None})
        data = await self._request("GET", "/runpod/variations", params=params)
        try:
            parsed = _VariationListResponse.model_validate(data)
        except ValidationError as e:
            raise CollaboratorError("Unexpected variations response") from e
        return [image.to_variation() for image in parsed.variations]

"""Tests for the collaborator HTTP client."""

import json

import httpx
import pytest

from genrelay.client.api import CollaboratorClient
from genrelay.models.enums import BatchStatus, OperationType, VariationStatus
from genrelay.services.exceptions import CollaboratorError
from genrelay.utils.request_retry import RequestRetryConfig


class Recorder:
    """httpx MockTransport handler returning queued responses."""

    def __init__(self, *responses) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def make_client(credentials, test_settings):
    def factory(*responses) -> tuple[CollaboratorClient, Recorder]:
        recorder = Recorder(*responses)
        client = CollaboratorClient(
            credentials,
            config=test_settings,
            retry=RequestRetryConfig(max_attempts=2, min_wait=0, max_wait=0),
            transport=httpx.MockTransport(recorder),
        )
        return client, recorder

    return factory


class TestEnqueue:
    @pytest.mark.parametrize(
        ("op", "path"),
        [
            (OperationType.CREATE, "/api/runpod/generate"),
            (OperationType.OUTPAINT, "/api/tweak/outpaint"),
            (OperationType.INPAINT, "/api/tweak/inpaint"),
            (OperationType.REFINE, "/api/refine/generate"),
            (OperationType.UPSCALE, "/api/upscale/generate"),
        ],
    )
    async def test_posts_to_operation_endpoint(self, make_client, user_token, op, path):
        client, recorder = make_client(httpx.Response(200, json={"batchId": 5, "jobId": "j-1", "imageIds": [51]}))
        async with client:
            result = await client.enqueue_job(op, {"prompt": "sky"})

        [request] = recorder.requests
        assert request.method == "POST"
        assert request.url.path == path
        assert request.headers["Authorization"] == f"Bearer {user_token}"
        assert json.loads(request.content) == {"prompt": "sky"}
        assert result.batch_id == 5
        assert result.job_id == "j-1"
        assert result.variation_ids == [51]

    async def test_runpod_jobs_give_variation_ids(self, make_client):
        client, _ = make_client(
            httpx.Response(
                200,
                json={"batchId": "7", "runpodId": "rp-1", "runpodJobs": [{"imageId": 71}, {"imageId": "72"}]},
            )
        )
        async with client:
            result = await client.enqueue_job("create", {})

        assert result.batch_id == 7
        assert result.job_id == "rp-1"
        assert result.variation_ids == [71, 72]

    async def test_http_error_is_not_retried(self, make_client):
        client, recorder = make_client(httpx.Response(402, json={"message": "Insufficient credits"}))
        async with client:
            with pytest.raises(CollaboratorError) as exc_info:
                await client.enqueue_job(OperationType.CREATE, {})

        assert exc_info.value.status_code == 402
        assert len(recorder.requests) == 1

    async def test_network_error_is_retried(self, make_client):
        client, recorder = make_client(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"batchId": 5}),
        )
        async with client:
            result = await client.enqueue_job(OperationType.CREATE, {})

        assert result.batch_id == 5
        assert len(recorder.requests) == 2

    async def test_network_error_after_retries(self, make_client):
        client, _ = make_client(httpx.ConnectError("down"), httpx.ConnectError("down"))
        async with client:
            with pytest.raises(CollaboratorError) as exc_info:
                await client.enqueue_job(OperationType.CREATE, {})
        assert exc_info.value.status_code is None

    async def test_malformed_response(self, make_client):
        client, _ = make_client(httpx.Response(200, json={"unexpected": True}))
        async with client:
            with pytest.raises(CollaboratorError):
                await client.enqueue_job(OperationType.CREATE, {})


class TestQueries:
    async def test_batch_snapshot(self, make_client):
        client, recorder = make_client(
            httpx.Response(
                200,
                json={
                    "batchId": 5,
                    "status": "partially_completed",
                    "operationType": "create",
                    "images": [
                        {"id": 51, "url": "https://cdn/51.png", "status": "COMPLETED"},
                        {"id": 52, "status": "FAILED"},
                    ],
                },
            )
        )
        async with client:
            batch, variations = await client.get_batch_snapshot(5)

        assert recorder.requests[0].url.path == "/api/runpod/status/5"
        assert batch.status is BatchStatus.PARTIALLY_COMPLETED
        assert [v.status for v in variations] == [VariationStatus.COMPLETED, VariationStatus.FAILED]
        assert variations[0].batch_id == 5
        assert variations[0].image_url == "https://cdn/51.png"

    async def test_batch_status(self, make_client):
        client, _ = make_client(
            httpx.Response(200, json={"batchId": 5, "status": "COMPLETED", "operationType": "upscale", "images": []})
        )
        async with client:
            batch = await client.get_batch_status(5)

        assert batch.id == 5
        assert batch.status is BatchStatus.COMPLETED
        assert batch.operation_type is OperationType.UPSCALE

    async def test_list_variations_paging(self, make_client, test_settings):
        client, recorder = make_client(
            httpx.Response(200, json={"variations": [{"id": 51, "batchId": 5, "imageUrl": "https://cdn/51.png"}]})
        )
        async with client:
            variations = await client.list_variations(inputImageId=12, status=None)

        params = recorder.requests[0].url.params
        assert params["page"] == "1"
        assert params["limit"] == str(test_settings.refresh_page_limit)
        assert params["inputImageId"] == "12"
        assert "status" not in params
        assert variations[0].status is VariationStatus.COMPLETED
        assert variations[0].batch_id == 5

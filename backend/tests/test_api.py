"""Tests for the realtime WebSocket endpoint and the HTTP API."""

import json

import pytest
from starlette.websockets import WebSocketDisconnect

from genrelay.api.v1.webhooks import SIGNATURE_HEADER
from genrelay.services.tokens import create_token
from tests.helpers import sign


def _post_signed(client, path: str, payload: dict, signature: str | None = None):
    body = json.dumps(payload).encode()
    headers = {SIGNATURE_HEADER: signature or sign(body), "Content-Type": "application/json"}
    return client.post(path, content=body, headers=headers)


# ============================================================================
# WEBSOCKET
# ============================================================================


class TestRealtimeSocket:
    def test_connect_sends_connected(self, client, user_token):
        with client.websocket_connect(f"/ws?token={user_token}") as ws:
            message = ws.receive_json()

        assert message["type"] == "connected"
        assert "timestamp" in message

    @pytest.mark.parametrize(
        ("query", "reason"),
        [
            ("", "invalid_token"),
            ("?token=garbage", "invalid_token"),
            ("?token={expired}", "token_expired"),
        ],
    )
    def test_auth_failure_closes_with_policy_violation(self, client, query, reason):
        url = "/ws" + query.format(expired=create_token(7, ttl=-10))
        with client.websocket_connect(url) as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1008
        assert exc_info.value.reason == reason

    def test_subscribe_ack_and_stats(self, client, user_token):
        with client.websocket_connect(f"/ws?token={user_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe_generation", "inputImageId": 12})
            ack = ws.receive_json()

            assert ack["type"] == "subscribed_generation"
            assert ack["inputImageId"] == 12
            assert client.get("/api/v1/realtime/stats").json() == {"totalConnections": 1, "subscribedKeys": 2}
            assert client.get("/api/v1/health").json() == {"status": "healthy", "connections": 1}

    def test_ping_and_bad_frames(self, client, user_token):
        with client.websocket_connect(f"/ws?token={user_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping", "timestamp": "2024-01-01T00:00:00Z"})
            assert ws.receive_json()["type"] == "pong"

            ws.send_text("not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["message"] == "Invalid message format"

            ws.send_json({"type": "subscribe_generation"})
            assert ws.receive_json()["message"] == "inputImageId is required for generation subscription"


# ============================================================================
# PRODUCER WEBHOOKS
# ============================================================================


class TestJobWebhook:
    def test_variation_event_reaches_subscriber(self, client, user_token):
        with client.websocket_connect(f"/ws?token={user_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe_generation", "inputImageId": 12})
            ws.receive_json()

            response = _post_signed(
                client,
                "/api/v1/webhooks/jobs",
                {
                    "type": "variation_completed",
                    "userId": 7,
                    "inputImageId": 12,
                    "data": {
                        "batchId": 5,
                        "imageId": 51,
                        "variationNumber": 1,
                        "status": "COMPLETED",
                        "imageUrl": "https://cdn.test/51.png",
                        "operationType": "inpaint",
                        "promptData": {"prompt": "brick wall"},
                    },
                },
            )
            event = ws.receive_json()

        # One delivery even though both the user key and the resource key match
        assert response.json() == {"sent": 1}
        assert event["type"] == "variation_completed"
        assert event["inputImageId"] == 12
        assert event["data"]["imageUrl"] == "https://cdn.test/51.png"
        assert event["data"]["promptData"] == {"prompt": "brick wall"}

    def test_nobody_listening_is_not_an_error(self, client):
        response = _post_signed(
            client,
            "/api/v1/webhooks/jobs",
            {"type": "batch_completed", "inputImageId": 99, "data": {"batchId": 1, "status": "COMPLETED"}},
        )
        assert response.status_code == 200
        assert response.json() == {"sent": 0}

    def test_credit_update_goes_to_user(self, client, user_token):
        with client.websocket_connect(f"/ws?token={user_token}") as ws:
            ws.receive_json()
            response = _post_signed(
                client, "/api/v1/webhooks/jobs", {"type": "credit_update", "userId": "7", "data": {"credits": 12}}
            )
            event = ws.receive_json()

        assert response.json() == {"sent": 1}
        assert event["data"] == {"credits": 12}

    def test_rejects_bad_signature(self, client):
        response = _post_signed(client, "/api/v1/webhooks/jobs", {"type": "credit_update"}, signature="deadbeef")
        assert response.status_code == 401

    def test_credit_update_requires_user(self, client):
        response = _post_signed(client, "/api/v1/webhooks/jobs", {"type": "credit_update", "data": {"credits": 1}})
        assert response.status_code == 400

    def test_rejects_client_message_types(self, client):
        response = _post_signed(client, "/api/v1/webhooks/jobs", {"type": "subscribe_masks", "userId": 7})
        assert response.status_code == 400

    def test_invalid_payload(self, client):
        response = _post_signed(
            client, "/api/v1/webhooks/jobs", {"type": "variation_failed", "userId": 7, "data": {"batchId": 1}}
        )
        assert response.status_code == 422


class TestMaskWebhook:
    def test_masks_completed_reaches_mask_subscriber_only(self, client, user_token):
        other_token = create_token(8)
        with (
            client.websocket_connect(f"/ws?token={user_token}") as masks_ws,
            client.websocket_connect(f"/ws?token={other_token}") as generation_ws,
        ):
            masks_ws.receive_json()
            masks_ws.send_json({"type": "subscribe_masks", "inputImageId": 12})
            assert masks_ws.receive_json()["type"] == "subscribed"
            generation_ws.receive_json()
            generation_ws.send_json({"type": "subscribe_generation", "inputImageId": 12})
            generation_ws.receive_json()

            response = _post_signed(
                client,
                "/api/v1/webhooks/masks",
                {"status": "completed", "inputImageId": 12, "data": {"maskCount": 2, "masks": [{"id": 1}, {"id": 2}]}},
            )
            event = masks_ws.receive_json()

        assert response.json() == {"sent": 1}
        assert event["type"] == "masks_completed"
        assert event["data"]["maskCount"] == 2

    def test_masks_failed_carries_error(self, client, user_token):
        with client.websocket_connect(f"/ws?token={user_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe_masks", "inputImageId": 12})
            ws.receive_json()
            _post_signed(
                client, "/api/v1/webhooks/masks", {"status": "failed", "inputImageId": 12, "error": "no objects"}
            )
            event = ws.receive_json()

        assert event["type"] == "masks_failed"
        assert event["error"] == "no objects"


class TestEventSchema:
    def test_schema_endpoint_is_documented(self, client):
        schema = client.get("/openapi.json").json()
        assert "/api/v1/events/schema" in schema["paths"]

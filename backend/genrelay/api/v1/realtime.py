"""Realtime WebSocket endpoint and connection statistics."""

import structlog
from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect

from genrelay.api.v1.dependencies import RegistryDep
from genrelay.models.enums import (
    CLOSE_POLICY_VIOLATION,
    CLOSE_REASON_INVALID_TOKEN,
    CLOSE_REASON_TOKEN_EXPIRED,
)
from genrelay.models.messages import MessageType, make_message
from genrelay.services.exceptions import AuthExpiredError, AuthRejectedError
from genrelay.services.realtime.connection import WebSocketConnection
from genrelay.services.realtime.control import ControlMessageHandler
from genrelay.services.realtime.registry import SubscriptionRegistry
from genrelay.services.tokens import verify_token

logger = structlog.get_logger(__name__)

router = APIRouter()
ws_router = APIRouter()


@ws_router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: str | None = None) -> None:
    """Authenticate, register and serve one client connection.

    The credential travels in the `token` query parameter. Authentication
    failures are reported as close code 1008 after accepting, so the client
    can read the reason.
    """
    await websocket.accept()
    try:
        user_id = verify_token(token)
    except AuthExpiredError:
        logger.info("Rejected realtime connection with expired token")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=CLOSE_REASON_TOKEN_EXPIRED)
        return
    except AuthRejectedError as e:
        logger.warning("Rejected realtime connection", error=str(e))
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=CLOSE_REASON_INVALID_TOKEN)
        return

    registry: SubscriptionRegistry = websocket.app.state.registry
    connection = WebSocketConnection(websocket, user_id)
    registry.register(connection)
    handler = ControlMessageHandler(registry, connection.id)

    try:
        await registry.send(
            connection.id,
            make_message(MessageType.CONNECTED, message="WebSocket connected successfully"),
        )
        while True:
            raw = await websocket.receive_text()
            await handler.handle_text(raw)
    except WebSocketDisconnect as e:
        logger.info("Realtime connection closed", connection_id=connection.id, code=e.code)
    finally:
        registry.unregister(connection.id)


@router.get("/realtime/stats", operation_id="realtimeStats")
async def realtime_stats(registry: RegistryDep) -> dict[str, int]:
    """Number of live connections and distinct subscribed keys."""
    return registry.stats()

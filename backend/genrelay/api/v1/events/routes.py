"""Events API routes - exposes the realtime message schema for client type generation."""

from fastapi import APIRouter

from genrelay.models.messages import ServerMessageUnion

router = APIRouter(tags=["events"])


@router.get(
    "/events/schema",
    response_model=ServerMessageUnion,
    operation_id="getRealtimeEventSchema",
    include_in_schema=True,
    summary="Realtime event schema (for documentation only)",
    description="This endpoint documents the shape of server -> client WebSocket messages. "
    "Do not call this endpoint directly - connect to /ws instead.",
)
async def get_event_schema() -> None:
    """This endpoint exists only to expose message types in the OpenAPI schema."""
    raise NotImplementedError("This endpoint is for schema documentation only")

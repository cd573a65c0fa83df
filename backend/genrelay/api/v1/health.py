"""Health check endpoints."""

from fastapi import APIRouter

from genrelay.api.v1.dependencies import RegistryDep

router = APIRouter()


@router.get("/health", operation_id="healthCheck")
async def health_check(registry: RegistryDep) -> dict[str, str | int]:
    """Liveness plus the number of realtime connections this process serves."""
    return {"status": "healthy", "connections": registry.stats()["totalConnections"]}

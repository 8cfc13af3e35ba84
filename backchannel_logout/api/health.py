"""Health check endpoints with database connectivity and circuit breaker status."""

from typing import Any

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from backchannel_logout.core.database import check_db_connection
from backchannel_logout.core.retry import CircuitBreaker

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    oidc_clients: int


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the service depends on the database and it is unavailable.
    """
    app_settings = request.app.state.settings
    session_factory = request.app.state.session_factory

    if session_factory is None:
        database = "not_used"
        healthy = True
    else:
        healthy = await check_db_connection(session_factory)
        database = "connected" if healthy else "disconnected"

    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=app_settings.app_version,
        database=database,
        oidc_clients=len(request.app.state.client_registry),
    )


@router.get("/health/circuits")
async def get_circuit_states() -> dict[str, Any]:
    """Get all circuit breaker states.

    One breaker per identity-provider host, keyed "jwks:<host>".
    """
    return {
        "circuits": CircuitBreaker.snapshots(),
    }

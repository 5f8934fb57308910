from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.core.auth import api_key_configured
from app.core.rate_limit import enforce_health_rate_limit
from app.schemas.process import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    dependencies=[Depends(enforce_health_rate_limit)],
)
def health_check() -> HealthResponse:
    """Health check endpoint.

    Used by load balancers and monitoring systems to determine service health.
    Counted against the health namespace, never the processing quota.

    Returns:
        HealthResponse: status "ok", the current UTC time and whether the
            public API has a key configured.
    """

    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        api_key_configured=api_key_configured(),
    )

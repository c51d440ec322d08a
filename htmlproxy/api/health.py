from fastapi import APIRouter, Depends
from fastapi.responses import Response

from htmlproxy.api.deps import get_orchestrator
from htmlproxy.config import settings
from htmlproxy.core.metrics import get_metrics, get_metrics_content_type
from htmlproxy.schemas.fetch import HealthResponse
from htmlproxy.services.orchestrator import FetchOrchestrator

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Returns HTTP 200 while the process is running. Does not touch the browser.",
)
async def health(orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    return orchestrator.health()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose application metrics in Prometheus exposition format. "
    "Returns HTTP 404 if metrics collection is disabled.",
)
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(content="Metrics disabled", status_code=404)

    return Response(content=get_metrics(), media_type=get_metrics_content_type())

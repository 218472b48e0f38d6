"""Health check and metrics endpoints."""

from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.dependencies import get_service
from catalog.base import bounded
from core import __version__
from core.errors import ReconciliationError
from core.observability.metrics import get_metrics
from vendor_bills.service import ReconciliationService


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(service: ReconciliationService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    try:
        await bounded(
            service.catalog.search_by_sku_or_barcode("__health__"),
            service.settings.catalog_timeout_seconds,
            "health check",
        )
        catalog_status = "up"
    except ReconciliationError:
        catalog_status = "down"

    return HealthResponse(
        status="healthy" if catalog_status == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={
            "api": "up",
            "catalog": catalog_status,
            "storage": "up",
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe for Kubernetes."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}


@router.get("/metrics")
async def metrics_summary() -> Dict[str, Any]:
    """In-process counters and timings."""
    return get_metrics().get_summary()

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from family_events.api.deps import get_services
from family_events.services.container import Services

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 while draining after SIGTERM."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "family-events"},
        )
    return {"status": "healthy", "service": "family-events"}


@router.get("/ready")
async def readiness_check(services: Services = Depends(get_services)):
    """Readiness check - verifies the event store is reachable."""
    checks = {"store": False}

    try:
        await services.store.ping()
        checks["store"] = True
    except Exception as e:
        logger.error("store_health_check_failed", error=str(e), error_type=type(e).__name__)

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )

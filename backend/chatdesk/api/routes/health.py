"""
Health check API routes.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import logging

from ...config import settings
from ...models.schemas import HealthResponse, utcnow
from ...session import RedisFeed, StoreError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=HealthResponse)
async def health_check():
    """Basic health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=utcnow(),
        version=settings.app_version,
        services={}
    )


@router.get("/live")
async def liveness_check():
    """Process is up."""
    return {"status": "alive"}


@router.get("/ready", response_model=HealthResponse)
async def readiness_check(request: Request):
    """
    Readiness check for the stores and the realtime feed.

    Returns 503 while any of them is unhealthy.
    """
    services = getattr(request.app.state, "services", None)
    checks = {}
    overall_status = "healthy"

    if services is None or not services.initialized:
        checks["services"] = "not_initialized"
        overall_status = "unhealthy"
    else:
        checks["services"] = "healthy"

        try:
            await services.session_store.query()
            checks["session_store"] = "healthy"
        except StoreError as e:
            logger.error(f"Session store health check failed: {e}")
            checks["session_store"] = "unhealthy"
            overall_status = "unhealthy"

        if isinstance(services.feed, RedisFeed):
            if await services.feed.ping():
                checks["realtime"] = "healthy"
            else:
                checks["realtime"] = "unhealthy"
                overall_status = "degraded"
        else:
            checks["realtime"] = "in_process"

        if services.cfg.store_backend == "sql":
            from ...database import check_db_connection, check_tables_exist

            if check_db_connection() and check_tables_exist():
                checks["database"] = "healthy"
            else:
                checks["database"] = "unhealthy"
                overall_status = "unhealthy"

        checks["responder"] = "configured" if services.cfg.responder_webhook_url else "not_configured"

    response = HealthResponse(
        status=overall_status,
        timestamp=utcnow(),
        version=settings.app_version,
        services=checks
    )

    if overall_status == "unhealthy":
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))
    return response

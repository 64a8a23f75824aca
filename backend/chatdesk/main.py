"""
FastAPI application entry point.

Version: 1.0.0
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Any, Dict, Optional

from .config import settings
from .api.routes import sessions, messages, health
from .api.websocket import ConnectionManager, websocket_endpoint
from .models.schemas import ErrorResponse
from .services.container import ServiceContainer
from .utils.telemetry import setup_telemetry
from .utils.middleware import (
    RequestIDMiddleware,
    TimingMiddleware,
    ErrorHandlingMiddleware
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Ready container; when omitted one is built from settings
            during startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")
        logger.info(f"Environment: {settings.environment}")
        logger.info("=" * 60)

        container = services or ServiceContainer(settings)
        try:
            await container.initialize()
        except Exception as e:
            logger.error(f"Failed to start application: {e}", exc_info=True)
            raise

        app.state.services = container
        app.state.connections = ConnectionManager()

        logger.info(f"✓ Session store: {type(container.session_store).__name__}")
        logger.info(f"✓ Realtime feed: {type(container.feed).__name__}")
        logger.info("✓ Application started successfully")

        yield  # === APPLICATION RUNS HERE ===

        logger.info("Shutting down application...")

        try:
            await app.state.connections.close()
        except Exception as e:
            logger.error(f"Error closing websocket subscriptions: {e}")

        if services is None:
            try:
                await container.cleanup()
            except Exception as e:
                logger.error(f"Error during service cleanup: {e}")

        logger.info("✓ Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Chat session lifecycle, realtime message sync and agent intervention",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None
    )

    # The widget is embedded on customer sites
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"]
    )

    # Custom middleware (applied in reverse)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(TimingMiddleware)

    if settings.enable_telemetry:
        setup_telemetry(app)

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(
        sessions.router,
        prefix=f"{settings.api_prefix}/sessions",
        tags=["Sessions"]
    )
    app.include_router(
        messages.router,
        prefix=f"{settings.api_prefix}/sessions",
        tags=["Messages"]
    )
    app.add_api_websocket_route("/ws", websocket_endpoint, name="websocket")

    @app.get("/", tags=["Root"])
    async def root() -> Dict[str, Any]:
        """API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "endpoints": {
                "docs": "/docs" if settings.debug else "disabled",
                "health": "/health",
                "metrics": "/metrics" if settings.enable_telemetry else "disabled",
                "api": settings.api_prefix,
                "websocket": "/ws"
            },
            "backends": {
                "store": settings.store_backend,
                "realtime": settings.realtime_backend
            }
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions gracefully."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            f"Unhandled exception in request {request_id}: {exc}",
            exc_info=True,
            extra={
                "path": request.url.path,
                "method": request.method
            }
        )
        error = ErrorResponse(
            error="Internal server error",
            message=str(exc) if settings.debug else "An unexpected error occurred",
            request_id=request_id
        )
        return JSONResponse(status_code=500, content=error.model_dump())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatdesk.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
        access_log=True
    )

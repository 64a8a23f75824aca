"""
Shared FastAPI dependencies.
"""
from fastapi import HTTPException, Request, status

from ..services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """Get the service container from app state."""
    services = getattr(request.app.state, "services", None)
    if services is None or not services.initialized:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized"
        )
    return services

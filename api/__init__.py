"""
API Module
FastAPI routers for the SideEffect Sentinel application
"""

from api.analytics import router as analytics_router

from api.deps import (
    get_db,
    get_analytics_service,
    pagination_params,
)


__all__ = [
    # Routers
    "analytics_router",
    # Dependencies
    "get_db",
    "get_analytics_service",
    "pagination_params",
]


def include_routers(app):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(analytics_router, prefix="/api/v1")

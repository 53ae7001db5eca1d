"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

from typing import Generator
from sqlalchemy.orm import Session

from database import SessionLocal
from services.analytics_service import AnalyticsService, analytics_service


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency
    Yields a SQLAlchemy session and ensures cleanup
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_analytics_service() -> AnalyticsService:
    """
    Analytics service dependency
    Override in tests to inject a fake text-analysis client
    """
    return analytics_service


def pagination_params(
    page: int = 1,
    page_size: int = 20
) -> dict:
    """
    Common pagination parameters
    """
    if page < 1:
        page = 1
    if page_size < 1:
        page_size = 20
    if page_size > 100:
        page_size = 100

    return {
        "page": page,
        "page_size": page_size,
        "offset": (page - 1) * page_size
    }

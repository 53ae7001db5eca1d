"""
Services Module
Data access and text-analysis layer for the SideEffect Sentinel application

The analytics facade lives in services.analytics_service; it depends on the
actions package and is imported from there directly.
"""

from services.llm_service import LLMService, llm_service
from services.text_analysis_service import TextAnalysisService, text_analysis_service
from services.analytics_repository import AnalyticsRepository, SQLAlchemyAnalyticsRepository


__all__ = [
    # Service classes
    "LLMService",
    "TextAnalysisService",
    "AnalyticsRepository",
    "SQLAlchemyAnalyticsRepository",
    # Singleton instances
    "llm_service",
    "text_analysis_service",
]

"""
Configuration management for SideEffect Sentinel
"""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "SideEffect Sentinel"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./side_effect_sentinel.db"
    DATABASE_ECHO: bool = False

    # LLM Configuration (OpenAI-compatible chat completions)
    LLM_API_KEY: Optional[str] = None
    LLM_BASE_URL: str = "https://api.groq.com/openai/v1"
    LLM_MODEL: str = "llama-3.1-8b-instant"
    LLM_TEMPERATURE: float = 0.2
    LLM_MAX_TOKENS: int = 1000
    LLM_TIMEOUT_SECONDS: float = 30.0

    # Analytics
    SIDE_EFFECT_SPIKE_THRESHOLD: float = 0.15
    DRUG_INTERACTION_CONFIDENCE_THRESHOLD: float = 0.7
    ANALYTICS_WINDOW_DAYS: int = 30
    SPIKE_MIN_DAILY_RATE: float = 0.1
    SPIKE_ZERO_BASELINE_MIN_COUNT: int = 5
    ALERT_DEDUP_WINDOW_DAYS: int = 30

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class AnalyticsConfig:
    """Fixed tuning constants for the analytics detectors"""

    # Spike detector
    SPIKE_HIGH_SEVERITY_RATIO: float = 0.5  # increase above 50% is high
    ZERO_BASELINE_CONFIDENCE: float = 0.5

    # Interaction detector
    ALERTING_INTERACTION_SEVERITIES: tuple[str, ...] = ("major", "contraindicated")
    MAX_EVIDENCE_REPORTS: int = 25

    # Alert materializer
    MAX_ALERT_TITLE_LENGTH: int = 200
    FALLBACK_RECOMMENDATION: str = "Consult healthcare provider"

    # Dashboard
    TOP_DRUGS_LIMIT: int = 10


settings = get_settings()
analytics_config = AnalyticsConfig()

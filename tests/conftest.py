"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all SideEffect Sentinel tests.
Fixtures include database sessions, test clients, data factories, and a
fake text-analysis client.
"""

import os
import sys
from datetime import datetime, date, timedelta
from typing import Generator, Callable, Optional
from unittest.mock import MagicMock, AsyncMock

# Keep the app off the on-disk database and away from the real LLM
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LLM_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db as database_get_db
from models import (
    Drug, Prescription, SideEffectReport, KnownDrugInteraction,
    SideEffectSeverity, InteractionSeverity
)
from services.analytics_repository import SQLAlchemyAnalyticsRepository
from services.analytics_service import AnalyticsService
from services.text_analysis_service import (
    InsightsResult,
    InteractionJudgment,
    SideEffectAssessment,
    fallback_insights,
    fallback_interaction_judgment,
    fallback_side_effect_assessment,
)
from api.deps import get_db, get_analytics_service
from app import app


# Fixed reference time for deterministic window arithmetic
NOW = datetime(2026, 3, 1, 12, 0, 0)


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a test database session"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def now() -> datetime:
    """Reference time of an analysis pass"""
    return NOW


@pytest.fixture
def repository(db_session: Session) -> SQLAlchemyAnalyticsRepository:
    """Analytics repository over the test session"""
    return SQLAlchemyAnalyticsRepository(db_session)


# ==================== TEXT ANALYSIS FIXTURES ====================

@pytest.fixture
def mock_text_analysis() -> MagicMock:
    """
    Fake text-analysis client.

    Every method answers with its documented fallback unless a test sets
    ``return_value`` or ``side_effect``.
    """
    client = MagicMock()
    client.analyze_side_effect = AsyncMock(
        side_effect=lambda description, severity, impact_on_daily_life=None, **kwargs:
            fallback_side_effect_assessment(severity, impact_on_daily_life)
    )
    client.analyze_drug_interaction = AsyncMock(
        return_value=fallback_interaction_judgment("No LLM available for interaction detection")
    )
    client.generate_insights = AsyncMock(return_value=fallback_insights())
    return client


@pytest.fixture
def interaction_judgment() -> Callable[..., InteractionJudgment]:
    """Build an accepted-looking AI interaction judgment"""
    def _make(
        confidence: float = 0.9,
        severity: str = "major",
        has_interaction: bool = True
    ) -> InteractionJudgment:
        return InteractionJudgment(
            has_interaction=has_interaction,
            severity=severity,
            description="Combined use raises bleeding risk",
            clinical_effect="Increased anticoagulant effect",
            management="Avoid combination or monitor INR closely",
            confidence=confidence,
        )
    return _make


@pytest.fixture
def insights_result() -> InsightsResult:
    return InsightsResult(
        patterns=["Nausea reports cluster in the first week of therapy"],
        alerts=["Warfarin reports rising"],
        summary="Reporting is stable except for warfarin",
    )


@pytest.fixture
def concerning_assessment() -> SideEffectAssessment:
    return SideEffectAssessment(
        concern_level="high",
        is_concerning=True,
        urgency="urgent",
        recommendations=["Contact your prescriber today"],
        suggested_actions=["Stop the medication if symptoms worsen"],
        reasoning="Severe dizziness with a new antihypertensive",
    )


# ==================== DATA FACTORIES ====================

@pytest.fixture
def make_drug(db_session: Session) -> Callable[..., Drug]:
    """Factory creating drugs"""
    def _make(name: str, drug_class: str = "general", is_active: bool = True, **kwargs) -> Drug:
        drug = Drug(
            name=name,
            drug_class=drug_class,
            description=kwargs.pop("description", f"{name} test drug"),
            is_active=is_active,
            **kwargs
        )
        db_session.add(drug)
        db_session.commit()
        db_session.refresh(drug)
        return drug
    return _make


@pytest.fixture
def make_prescription(db_session: Session) -> Callable[..., Prescription]:
    """Factory creating prescriptions active on NOW by default"""
    def _make(
        patient_id: int,
        drug: Drug,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        is_active: bool = True,
        doctor_id: int = 900
    ) -> Prescription:
        prescription = Prescription(
            patient_id=patient_id,
            doctor_id=doctor_id,
            drug_id=drug.id,
            dosage="10mg",
            frequency="once daily",
            start_date=start_date or (NOW.date() - timedelta(days=60)),
            end_date=end_date,
            is_active=is_active,
        )
        db_session.add(prescription)
        db_session.commit()
        db_session.refresh(prescription)
        return prescription
    return _make


@pytest.fixture
def make_reports(db_session: Session) -> Callable[..., list]:
    """Factory creating ``count`` side-effect reports at one timestamp"""
    def _make(
        prescription: Prescription,
        count: int,
        created_at: datetime,
        severity: SideEffectSeverity = SideEffectSeverity.MILD,
        is_anonymous: bool = True,
        is_concerning: bool = False,
        description: str = "Nausea after dose"
    ) -> list:
        reports = []
        for _ in range(count):
            report = SideEffectReport(
                drug_id=prescription.drug_id,
                prescription_id=prescription.id,
                patient_id=prescription.patient_id,
                description=description,
                severity=severity,
                is_anonymous=is_anonymous,
                is_concerning=is_concerning,
                created_at=created_at,
            )
            db_session.add(report)
            reports.append(report)
        db_session.commit()
        return reports
    return _make


@pytest.fixture
def make_known_interaction(db_session: Session) -> Callable[..., KnownDrugInteraction]:
    """Factory creating curated interactions"""
    def _make(
        drug_a: Drug,
        drug_b: Drug,
        severity: InteractionSeverity = InteractionSeverity.MAJOR,
        confidence_score: Optional[float] = 0.95
    ) -> KnownDrugInteraction:
        interaction = KnownDrugInteraction(
            drug_id_1=drug_a.id,
            drug_id_2=drug_b.id,
            severity=severity,
            description=f"{drug_a.name} interacts with {drug_b.name}",
            management="Monitor closely",
            confidence_score=confidence_score,
            is_detected_by_analytics=False,
        )
        db_session.add(interaction)
        db_session.commit()
        db_session.refresh(interaction)
        return interaction
    return _make


# ==================== API FIXTURES ====================

@pytest.fixture
def analytics(mock_text_analysis: MagicMock) -> AnalyticsService:
    """Analytics service backed by the fake text-analysis client"""
    return AnalyticsService(text_analysis=mock_text_analysis)


@pytest.fixture(scope="function")
def client(db_session: Session, analytics: AnalyticsService) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database and service overrides"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[database_get_db] = override_get_db
    app.dependency_overrides[get_analytics_service] = lambda: analytics

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ==================== MARKERS ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")

"""
Database Models
SQLAlchemy ORM models for SideEffect Sentinel
"""

from sqlalchemy import Column, Integer, String, Boolean, Float, DateTime, ForeignKey, Text, Date, Enum, Index, UniqueConstraint, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum

from database import Base


# ==================== ENUMS ====================

class SideEffectSeverity(str, PyEnum):
    """Patient-reported severity of a side effect"""
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class InteractionSeverity(str, PyEnum):
    """Clinical severity of a drug-drug interaction"""
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CONTRAINDICATED = "contraindicated"


class AlertSeverity(str, PyEnum):
    """Analytics alert severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, PyEnum):
    """Kinds of analytics alerts"""
    SIDE_EFFECT_SPIKE = "side_effect_spike"
    DRUG_INTERACTION = "drug_interaction"


# ==================== MODELS ====================

class Drug(Base):
    """Drug catalogue entry"""
    __tablename__ = "drugs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    generic_name = Column(String(100))
    drug_class = Column(String(50), index=True)
    description = Column(Text)  # Fed to the text-analysis client

    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    prescriptions = relationship("Prescription", back_populates="drug")
    side_effects = relationship("SideEffectReport", back_populates="drug")


class Prescription(Base):
    """Prescription of a drug to a patient by a doctor"""
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False, index=True)
    doctor_id = Column(Integer, nullable=False, index=True)
    drug_id = Column(Integer, ForeignKey("drugs.id"), nullable=False, index=True)

    dosage = Column(String(50))
    frequency = Column(String(50))
    instructions = Column(Text)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    drug = relationship("Drug", back_populates="prescriptions")
    side_effects = relationship("SideEffectReport", back_populates="prescription")

    __table_args__ = (
        Index("ix_prescriptions_patient_active", "patient_id", "is_active"),
    )


class SideEffectReport(Base):
    """Patient-reported side effect with AI concern assessment"""
    __tablename__ = "side_effect_reports"

    id = Column(Integer, primary_key=True, index=True)
    drug_id = Column(Integer, ForeignKey("drugs.id"), nullable=False)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=False)
    patient_id = Column(Integer, nullable=False, index=True)

    description = Column(Text, nullable=False)
    severity = Column(Enum(SideEffectSeverity), nullable=False)
    impact_on_daily_life = Column(String(20), default="minimal")

    # AI Analysis
    is_concerning = Column(Boolean, default=False)
    llm_analysis = Column(JSON)
    analyzed_at = Column(DateTime)

    # Only anonymous reports feed cross-patient analytics
    is_anonymous = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    drug = relationship("Drug", back_populates="side_effects")
    prescription = relationship("Prescription", back_populates="side_effects")

    __table_args__ = (
        Index("ix_side_effects_drug_anon_date", "drug_id", "is_anonymous", "created_at"),
    )


class KnownDrugInteraction(Base):
    """Curated or analytics-discovered interaction between two drugs"""
    __tablename__ = "drug_interactions"

    id = Column(Integer, primary_key=True, index=True)

    # Unordered pair, stored with drug_id_1 < drug_id_2
    drug_id_1 = Column(Integer, ForeignKey("drugs.id"), nullable=False)
    drug_id_2 = Column(Integer, ForeignKey("drugs.id"), nullable=False)

    severity = Column(Enum(InteractionSeverity), nullable=False)
    description = Column(Text, nullable=False)
    clinical_effect = Column(Text)
    management = Column(Text)
    confidence_score = Column(Float)

    is_detected_by_analytics = Column(Boolean, default=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("drug_id_1", "drug_id_2", name="uq_drug_interaction_pair"),
    )


class AnalyticsAlert(Base):
    """Append-only analytics alert with supporting evidence"""
    __tablename__ = "analytics_alerts"

    id = Column(Integer, primary_key=True, index=True)
    alert_type = Column(Enum(AlertType), nullable=False, index=True)
    subject_key = Column(String(100), nullable=False)  # "drug:3", "drugs:3:7"
    # "<alert_type>|<subject_key>" while this alert holds the open slot, NULL otherwise
    dedup_key = Column(String(150), unique=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(Enum(AlertSeverity), nullable=False, index=True)
    confidence_score = Column(Float, nullable=False)
    affected_patient_count = Column(Integer, default=0)

    drug_ids = Column(JSON, default=list)
    data_points = Column(JSON)
    recommendations = Column(JSON, default=list)

    # Resolution
    is_resolved = Column(Boolean, default=False, index=True)
    resolved_by = Column(Integer)
    resolved_at = Column(DateTime)
    resolution_notes = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_alerts_dedup", "alert_type", "subject_key", "is_resolved"),
    )

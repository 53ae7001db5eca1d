"""
Analytics Schemas
Pydantic models for analytics, alert and report API requests and responses
"""

from typing import Optional, List, Dict, Any
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict
from enum import Enum


class AlertTypeEnum(str, Enum):
    """Alert type values"""
    SIDE_EFFECT_SPIKE = "side_effect_spike"
    DRUG_INTERACTION = "drug_interaction"


class AlertSeverityEnum(str, Enum):
    """Alert severity values"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InteractionSeverityEnum(str, Enum):
    """Interaction severity values"""
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CONTRAINDICATED = "contraindicated"


# ==================== REQUEST SCHEMAS ====================

class AnalysisRequest(BaseModel):
    """Schema for triggering an analysis pass"""
    window_days: int = Field(default=30, ge=1, le=365)


class AlertResolve(BaseModel):
    """Schema for resolving an alert"""
    resolution_notes: Optional[str] = Field(None, max_length=2000)
    resolved_by: Optional[int] = None


# ==================== RESPONSE SCHEMAS ====================

class AnalysisUnitError(BaseModel):
    """Failing unit of work, without internal error details"""
    unit: str
    stage: str


class AnalysisRunResponse(BaseModel):
    """Outcome of an analysis pass"""
    window_days: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    drugs_analyzed: int
    spikes_detected: int
    interactions_detected: int
    pairs_checked: int
    alerts_generated: int
    alert_ids: List[int] = []
    error_count: int
    failed_units: List[AnalysisUnitError] = []
    summary: Dict[str, int] = {}


class AlertResponse(BaseModel):
    """Schema for alert response"""
    id: int
    alert_type: AlertTypeEnum
    subject_key: str
    title: str
    description: str
    severity: AlertSeverityEnum
    confidence_score: float
    affected_patient_count: int
    drug_ids: List[int] = []
    data_points: Dict[str, Any] = {}
    recommendations: List[str] = []
    is_resolved: bool
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AlertList(BaseModel):
    """Paginated list of alerts"""
    alerts: List[AlertResponse]
    total: int
    page: int
    page_size: int


class InteractionAlertsResponse(BaseModel):
    """Alerts raised by an interaction check"""
    alerts_generated: int
    alerts: List[AlertResponse]


class SpikeResponse(BaseModel):
    """Spike check result for one drug"""
    drug_id: int
    is_spike: bool
    severity: Optional[AlertSeverityEnum] = None
    confidence: Optional[float] = None
    metrics: Dict[str, Any]


class DrugAnalytics(BaseModel):
    """Per-drug statistics in the analytics report"""
    drug_id: int
    drug_name: str
    total_count: int
    severity_counts: Dict[str, int]
    concerning_count: int
    is_spike: bool
    spike_severity: Optional[str] = None
    spike_metrics: Dict[str, Any]


class ReportAlert(BaseModel):
    id: int
    type: str
    title: str
    severity: str
    confidence: float
    is_resolved: bool
    created_at: Optional[datetime] = None


class ReportSummary(BaseModel):
    total_drugs: int
    total_side_effects: int
    concerning_side_effects: int
    spike_detections: int
    total_alerts: int
    active_alerts: int


class AnalyticsReportResponse(BaseModel):
    """Analytics summary report"""
    window_days: int
    generated_at: datetime
    summary: ReportSummary
    drug_analytics: List[DrugAnalytics]
    alerts: List[ReportAlert]
    insights: List[str]
    insights_summary: str = ""


class TopDrug(BaseModel):
    drug_id: int
    drug_name: str
    report_count: int


class DashboardResponse(BaseModel):
    """Dashboard totals"""
    window_days: int
    total_side_effects: int
    concerning_side_effects: int
    concerning_rate: float
    active_alerts: int
    detected_interactions: int
    severity_breakdown: Dict[str, int]
    top_drugs: List[TopDrug]


class DailyTrend(BaseModel):
    date: date
    count: int
    concerning: int


class TrendsResponse(BaseModel):
    """Daily report trend"""
    window_days: int
    drug_id: Optional[int] = None
    total: int
    daily: List[DailyTrend]
    severity_totals: Dict[str, int]


class InteractionResponse(BaseModel):
    """Schema for known interaction response"""
    id: int
    drug_id_1: int
    drug_id_2: int
    drug_name_1: Optional[str] = None
    drug_name_2: Optional[str] = None
    severity: InteractionSeverityEnum
    description: str
    clinical_effect: Optional[str] = None
    management: Optional[str] = None
    confidence_score: Optional[float] = None
    is_detected_by_analytics: bool
    created_at: Optional[datetime] = None


class SideEffectAssessmentResponse(BaseModel):
    """Stored AI concern assessment for a side-effect report"""
    report_id: int
    is_concerning: bool
    analysis: Dict[str, Any]
    analyzed_at: Optional[datetime] = None
    cached: bool

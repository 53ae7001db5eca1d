"""
Analytics API Router
Endpoints for analysis runs, alerts, reports and dashboards
"""

from typing import Optional, List
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_analytics_service, pagination_params
from api.schemas.analytics import (
    AlertTypeEnum,
    AlertSeverityEnum,
    InteractionSeverityEnum,
    AnalysisRequest,
    AlertResolve,
    AnalysisRunResponse,
    AnalysisUnitError,
    AlertResponse,
    AlertList,
    InteractionAlertsResponse,
    SpikeResponse,
    AnalyticsReportResponse,
    DashboardResponse,
    TrendsResponse,
    InteractionResponse,
    SideEffectAssessmentResponse,
)
from services.analytics_service import (
    AnalyticsService,
    AlertNotFoundError,
    AlertAlreadyResolvedError,
    AnalyticsUnavailableError,
    DrugNotFoundError,
    PrescriptionNotFoundError,
    SideEffectNotFoundError,
)


router = APIRouter(prefix="/analytics", tags=["analytics"])


# ==================== ANALYSIS ====================

@router.post("/analyze", response_model=AnalysisRunResponse)
async def run_analysis(
    request: Optional[AnalysisRequest] = None,
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """
    Run spike and interaction detection across all active drugs

    Returns alert counts and the units that failed, never error details.
    """
    window_days = request.window_days if request else None

    try:
        result = await analytics.run_periodic_analysis(window_days=window_days, db=db)
    except AnalyticsUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analytics data store unavailable"
        )

    return AnalysisRunResponse(
        window_days=result.window_days,
        started_at=result.started_at,
        finished_at=result.finished_at,
        drugs_analyzed=result.drugs_analyzed,
        spikes_detected=result.spikes_detected,
        interactions_detected=result.interactions_detected,
        pairs_checked=result.pairs_checked,
        alerts_generated=result.alerts_generated,
        alert_ids=result.alert_ids,
        error_count=len(result.errors),
        failed_units=[AnalysisUnitError(unit=e.unit, stage=e.stage) for e in result.errors],
        summary=result.summary,
    )


@router.get("/report", response_model=AnalyticsReportResponse)
async def get_report(
    window_days: int = Query(30, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Get the analytics summary report for the window"""
    report = await analytics.generate_report(window_days=window_days, db=db)
    return AnalyticsReportResponse(**report)


@router.get("/drugs/{drug_id}/spike", response_model=SpikeResponse)
async def check_drug_spike(
    drug_id: int,
    window_days: int = Query(30, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Check one drug for a side-effect spike (no alert is raised)"""
    try:
        result = await analytics.detect_spike(drug_id, window_days=window_days, db=db)
    except DrugNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return SpikeResponse(**result.to_dict())


@router.post("/interactions/detect", response_model=InteractionAlertsResponse)
async def detect_interactions(
    window_days: int = Query(30, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Scan all patients on multiple drugs for interactions"""
    alerts = await analytics.detect_interactions(window_days=window_days, db=db)
    return InteractionAlertsResponse(
        alerts_generated=len(alerts),
        alerts=[AlertResponse.model_validate(a) for a in alerts],
    )


@router.post("/prescriptions/{prescription_id}/interactions", response_model=InteractionAlertsResponse)
async def detect_prescription_interactions(
    prescription_id: int,
    window_days: int = Query(30, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Check one prescription against the patient's other active prescriptions"""
    try:
        alerts = await analytics.detect_interactions_for(
            prescription_id, window_days=window_days, db=db
        )
    except PrescriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return InteractionAlertsResponse(
        alerts_generated=len(alerts),
        alerts=[AlertResponse.model_validate(a) for a in alerts],
    )


@router.get("/interactions", response_model=List[InteractionResponse])
async def list_interactions(
    drug_id: Optional[int] = Query(None),
    severity: Optional[InteractionSeverityEnum] = Query(None),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """List known drug interactions, most severe first"""
    interactions = await analytics.list_interactions(
        drug_id=drug_id,
        severity=severity.value if severity else None,
        db=db
    )
    return [InteractionResponse(**i) for i in interactions]


# ==================== ALERTS ====================

@router.get("/alerts", response_model=AlertList)
async def list_alerts(
    alert_type: Optional[AlertTypeEnum] = Query(None),
    severity: Optional[AlertSeverityEnum] = Query(None),
    is_resolved: Optional[bool] = Query(None),
    pagination: dict = Depends(pagination_params),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """
    List analytics alerts, newest first

    - **alert_type**: side_effect_spike or drug_interaction
    - **severity**: low, medium, high, or critical
    - **is_resolved**: filter by resolution state
    """
    alerts, total = await analytics.list_alerts(
        alert_type=alert_type.value if alert_type else None,
        severity=severity.value if severity else None,
        is_resolved=is_resolved,
        limit=pagination["page_size"],
        offset=pagination["offset"],
        db=db
    )

    return AlertList(
        alerts=[AlertResponse.model_validate(a) for a in alerts],
        total=total,
        page=pagination["page"],
        page_size=pagination["page_size"],
    )


@router.get("/alerts/{alert_id}", response_model=AlertResponse)
async def get_alert(
    alert_id: int,
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Get a single alert"""
    try:
        alert = await analytics.get_alert(alert_id, db=db)
    except AlertNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return AlertResponse.model_validate(alert)


@router.put("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: int,
    resolution: AlertResolve,
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """
    Resolve an alert

    Resolution is final; resolving an already-resolved alert returns 409.
    """
    try:
        alert = await analytics.resolve_alert(
            alert_id,
            notes=resolution.resolution_notes,
            resolved_by=resolution.resolved_by,
            db=db
        )
    except AlertNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AlertAlreadyResolvedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return AlertResponse.model_validate(alert)


# ==================== DASHBOARD ====================

@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    window_days: int = Query(30, ge=1, le=365),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Dashboard totals over anonymous reports"""
    dashboard = await analytics.get_dashboard(window_days=window_days, db=db)
    return DashboardResponse(**dashboard)


@router.get("/trends", response_model=TrendsResponse)
async def get_trends(
    window_days: int = Query(30, ge=1, le=365),
    drug_id: Optional[int] = Query(None),
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Daily side-effect report counts"""
    try:
        trends = await analytics.get_trends(window_days=window_days, drug_id=drug_id, db=db)
    except DrugNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return TrendsResponse(**trends)


@router.post("/side-effects/{report_id}/assess", response_model=SideEffectAssessmentResponse)
async def assess_side_effect(
    report_id: int,
    analytics: AnalyticsService = Depends(get_analytics_service),
    db: Session = Depends(get_db)
):
    """Run the AI concern assessment for a side-effect report (once)"""
    try:
        result = await analytics.assess_side_effect(report_id, db=db)
    except SideEffectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return SideEffectAssessmentResponse(**result)

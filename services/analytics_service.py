"""
Analytics Service
Business logic facade that wires the analytics core to a database session
"""

import logging
from collections import Counter, defaultdict
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.orm import Session

from config import settings, analytics_config
from database import get_db_context
import models
from actions.alert_engine import AlertEngine
from actions.interaction_detector import InteractionDetector, PrescriptionNotFoundError
from actions.orchestrator import AnalysisRunResult, AnalyticsUnavailableError, PeriodicAnalysisOrchestrator
from actions.report_generator import ReportGenerator
from actions.spike_detector import SpikeDetector, SpikeResult
from services.analytics_repository import (
    AlertFilter,
    AlertRecord,
    KnownInteractionRecord,
    SideEffectFilter,
    SQLAlchemyAnalyticsRepository,
)
from services.text_analysis_service import TextAnalysisClient, text_analysis_service


logger = logging.getLogger(__name__)


class AlertNotFoundError(ValueError):
    """Requested alert does not exist"""


class AlertAlreadyResolvedError(ValueError):
    """Alert was already resolved; resolution cannot be repeated or undone"""


class DrugNotFoundError(ValueError):
    """Requested drug does not exist"""


class SideEffectNotFoundError(ValueError):
    """Requested side-effect report does not exist"""


INTERACTION_SEVERITY_RANK = {
    models.InteractionSeverity.CONTRAINDICATED.value: 0,
    models.InteractionSeverity.MAJOR.value: 1,
    models.InteractionSeverity.MODERATE.value: 2,
    models.InteractionSeverity.MINOR.value: 3,
}

T = TypeVar("T")


class AnalyticsService:
    """
    Service for side-effect analytics, alerts and reports

    Components are assembled per session, so every operation works on one
    consistent unit of work.
    """

    def __init__(self, text_analysis: Optional[TextAnalysisClient] = None):
        self.text_analysis = text_analysis or text_analysis_service

    async def _in_session(
        self,
        db: Optional[Session],
        operation: Callable[[Session], Awaitable[T]]
    ) -> T:
        if db:
            return await operation(db)

        with get_db_context() as session:
            return await operation(session)

    def _components(self, session: Session) -> Dict[str, Any]:
        repository = SQLAlchemyAnalyticsRepository(session)
        alert_engine = AlertEngine(repository)
        spike_detector = SpikeDetector(repository)
        interaction_detector = InteractionDetector(repository, self.text_analysis, alert_engine)
        return {
            "repository": repository,
            "alert_engine": alert_engine,
            "spike_detector": spike_detector,
            "interaction_detector": interaction_detector,
            "report_generator": ReportGenerator(repository, self.text_analysis, spike_detector),
            "orchestrator": PeriodicAnalysisOrchestrator(
                repository, spike_detector, interaction_detector, alert_engine
            ),
        }

    # ==================== ANALYSIS ====================

    async def run_periodic_analysis(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> AnalysisRunResult:
        """
        Run spike and interaction detection over all active drugs

        Raises:
            AnalyticsUnavailableError: if the data store is unreachable
        """
        async def _run(session: Session) -> AnalysisRunResult:
            return await self._components(session)["orchestrator"].run(
                window_days=window_days, now=now
            )

        return await self._in_session(db, _run)

    async def generate_report(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """Generate the analytics summary report"""
        async def _report(session: Session) -> Dict[str, Any]:
            return await self._components(session)["report_generator"].generate_report(
                window_days=window_days, now=now
            )

        return await self._in_session(db, _report)

    async def detect_spike(
        self,
        drug_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> SpikeResult:
        """
        Check one drug for a side-effect spike without raising an alert

        Raises:
            DrugNotFoundError: if the drug does not exist
        """
        async def _detect(session: Session) -> SpikeResult:
            components = self._components(session)
            if components["repository"].find_drug(drug_id) is None:
                raise DrugNotFoundError(f"Drug {drug_id} not found")
            return components["spike_detector"].detect_spike(
                drug_id, window_days=window_days, now=now
            )

        return await self._in_session(db, _detect)

    async def detect_interactions(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> List[AlertRecord]:
        """Scan all patients for drug interactions and return the new alerts"""
        async def _detect(session: Session) -> List[AlertRecord]:
            return await self._components(session)["interaction_detector"].detect_interactions(
                window_days=window_days, now=now
            )

        return await self._in_session(db, _detect)

    async def detect_interactions_for(
        self,
        prescription_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> List[AlertRecord]:
        """
        Check one prescription against the patient's other active prescriptions

        Raises:
            PrescriptionNotFoundError: if the prescription does not exist
        """
        async def _detect(session: Session) -> List[AlertRecord]:
            return await self._components(session)["interaction_detector"].detect_interactions_for(
                prescription_id, window_days=window_days, now=now
            )

        return await self._in_session(db, _detect)

    # ==================== ALERTS ====================

    async def list_alerts(
        self,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        is_resolved: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
        db: Optional[Session] = None
    ) -> Tuple[List[AlertRecord], int]:
        """
        List alerts, newest first

        Returns:
            (alerts for the requested page, total matching alerts)
        """
        async def _list(session: Session) -> Tuple[List[AlertRecord], int]:
            repository = SQLAlchemyAnalyticsRepository(session)
            filters = AlertFilter(
                alert_type=alert_type,
                severity=severity,
                is_resolved=is_resolved,
                limit=limit,
                offset=offset,
            )
            return repository.list_alerts(filters), repository.count_alerts(filters)

        return await self._in_session(db, _list)

    async def get_alert(self, alert_id: int, db: Optional[Session] = None) -> AlertRecord:
        """Get an alert by ID"""
        async def _get(session: Session) -> AlertRecord:
            alert = SQLAlchemyAnalyticsRepository(session).get_alert(alert_id)
            if alert is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            return alert

        return await self._in_session(db, _get)

    async def resolve_alert(
        self,
        alert_id: int,
        notes: Optional[str] = None,
        resolved_by: Optional[int] = None,
        db: Optional[Session] = None
    ) -> AlertRecord:
        """
        Resolve an alert. Resolution is final.

        Raises:
            AlertNotFoundError: if the alert does not exist
            AlertAlreadyResolvedError: if the alert is already resolved
        """
        async def _resolve(session: Session) -> AlertRecord:
            repository = SQLAlchemyAnalyticsRepository(session)
            alert = repository.get_alert(alert_id)
            if alert is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            if alert.is_resolved:
                raise AlertAlreadyResolvedError(f"Alert {alert_id} is already resolved")

            resolved = repository.resolve_alert(
                alert_id, notes=notes, resolved_by=resolved_by, resolved_at=datetime.utcnow()
            )
            logger.info(f"Alert {alert_id} resolved by {resolved_by or 'unknown'}")
            return resolved

        return await self._in_session(db, _resolve)

    # ==================== SIDE EFFECTS ====================

    async def assess_side_effect(
        self,
        report_id: int,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Run the AI concern assessment for a report, at most once

        Returns:
            Dict with report_id, is_concerning, analysis, analyzed_at and
            ``cached`` (True when a stored assessment was returned)

        Raises:
            SideEffectNotFoundError: if the report does not exist
        """
        async def _assess(session: Session) -> Dict[str, Any]:
            repository = SQLAlchemyAnalyticsRepository(session)
            report = repository.get_side_effect(report_id)
            if report is None:
                raise SideEffectNotFoundError(f"Side effect report {report_id} not found")

            if report.analyzed_at is not None:
                return {
                    "report_id": report.id,
                    "is_concerning": report.is_concerning,
                    "analysis": report.llm_analysis or {},
                    "analyzed_at": report.analyzed_at,
                    "cached": True,
                }

            drug = repository.find_drug(report.drug_id)
            other_drug_ids = sorted({
                rx.drug_id
                for rx in repository.find_active_prescriptions(patient_id=report.patient_id)
                if rx.drug_id != report.drug_id
            })
            other_medications = [d.name for d in repository.find_drugs(other_drug_ids)]

            assessment = await self.text_analysis.analyze_side_effect(
                description=report.description,
                severity=report.severity,
                impact_on_daily_life=report.impact_on_daily_life,
                drug_name=drug.name if drug else "",
                other_medications=other_medications,
            )

            updated = repository.mark_side_effect_analyzed(
                report_id,
                is_concerning=assessment.is_concerning,
                analysis=assessment.model_dump(),
                analyzed_at=datetime.utcnow(),
            )
            logger.info(
                f"Side effect report {report_id} assessed: "
                f"{assessment.concern_level} (fallback={assessment.is_fallback})"
            )
            return {
                "report_id": updated.id,
                "is_concerning": updated.is_concerning,
                "analysis": updated.llm_analysis or {},
                "analyzed_at": updated.analyzed_at,
                "cached": False,
            }

        return await self._in_session(db, _assess)

    # ==================== DASHBOARD ====================

    async def get_dashboard(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Dashboard totals over anonymous reports in the window

        Returns:
            Dictionary with totals, severity breakdown and top drugs
        """
        if window_days is None:
            window_days = settings.ANALYTICS_WINDOW_DAYS

        async def _dashboard(session: Session) -> Dict[str, Any]:
            reference = now or datetime.utcnow()
            repository = SQLAlchemyAnalyticsRepository(session)
            window = SideEffectFilter(
                is_anonymous=True,
                created_after=reference - timedelta(days=window_days),
                created_until=reference,
            )

            total_reports = repository.count_side_effects(window)
            concerning_reports = repository.count_side_effects(replace(window, is_concerning=True))
            top_drugs = repository.top_drugs_by_report_count(window, analytics_config.TOP_DRUGS_LIMIT)

            return {
                "window_days": window_days,
                "total_side_effects": total_reports,
                "concerning_side_effects": concerning_reports,
                "concerning_rate": round(concerning_reports / total_reports, 4) if total_reports else 0.0,
                "active_alerts": repository.count_alerts(AlertFilter(is_resolved=False)),
                "detected_interactions": repository.count_known_interactions(detected_by_analytics=True),
                "severity_breakdown": repository.count_side_effects_by_severity(window),
                "top_drugs": [asdict(d) for d in top_drugs],
            }

        return await self._in_session(db, _dashboard)

    async def get_trends(
        self,
        window_days: Optional[int] = None,
        drug_id: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """Daily anonymous report counts for the window, optionally for one drug"""
        if window_days is None:
            window_days = settings.ANALYTICS_WINDOW_DAYS

        async def _trends(session: Session) -> Dict[str, Any]:
            reference = now or datetime.utcnow()
            repository = SQLAlchemyAnalyticsRepository(session)
            if drug_id is not None and repository.find_drug(drug_id) is None:
                raise DrugNotFoundError(f"Drug {drug_id} not found")

            reports = repository.find_side_effects(SideEffectFilter(
                drug_id=drug_id,
                is_anonymous=True,
                created_after=reference - timedelta(days=window_days),
                created_until=reference,
            ))

            daily: Dict[str, Dict[str, int]] = defaultdict(lambda: {"count": 0, "concerning": 0})
            for r in reports:
                day = daily[r.created_at.date().isoformat()]
                day["count"] += 1
                if r.is_concerning:
                    day["concerning"] += 1

            return {
                "window_days": window_days,
                "drug_id": drug_id,
                "total": len(reports),
                "daily": [
                    {"date": day, "count": values["count"], "concerning": values["concerning"]}
                    for day, values in sorted(daily.items())
                ],
                "severity_totals": dict(Counter(r.severity for r in reports)),
            }

        return await self._in_session(db, _trends)

    async def list_interactions(
        self,
        drug_id: Optional[int] = None,
        severity: Optional[str] = None,
        db: Optional[Session] = None
    ) -> List[Dict[str, Any]]:
        """Known interactions, most severe first, with drug names attached"""
        async def _list(session: Session) -> List[Dict[str, Any]]:
            repository = SQLAlchemyAnalyticsRepository(session)
            interactions = repository.list_known_interactions(drug_id=drug_id, severity=severity)

            drug_ids = {i.drug_id_1 for i in interactions} | {i.drug_id_2 for i in interactions}
            names = {d.id: d.name for d in repository.find_drugs(sorted(drug_ids))}

            interactions.sort(key=lambda i: (
                INTERACTION_SEVERITY_RANK.get(i.severity, len(INTERACTION_SEVERITY_RANK)),
                -(i.confidence_score or 0.0),
                i.id,
            ))
            return [self._interaction_dict(i, names) for i in interactions]

        return await self._in_session(db, _list)

    @staticmethod
    def _interaction_dict(interaction: KnownInteractionRecord, names: Dict[int, str]) -> Dict[str, Any]:
        data = asdict(interaction)
        data["drug_name_1"] = names.get(interaction.drug_id_1)
        data["drug_name_2"] = names.get(interaction.drug_id_2)
        return data


# Singleton instance
analytics_service = AnalyticsService()


__all__ = [
    "AnalyticsService",
    "analytics_service",
    "AlertNotFoundError",
    "AlertAlreadyResolvedError",
    "AnalyticsUnavailableError",
    "DrugNotFoundError",
    "PrescriptionNotFoundError",
    "SideEffectNotFoundError",
]

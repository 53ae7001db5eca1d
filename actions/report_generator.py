"""
Report Generator
Aggregates anonymous side-effect statistics and spike metrics for dashboards
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config import settings
from actions.spike_detector import SpikeDetector
from services.analytics_repository import (
    AlertFilter,
    AlertRecord,
    AnalyticsRepository,
    SideEffectFilter,
    SideEffectRecord,
)
from services.text_analysis_service import TextAnalysisClient


logger = logging.getLogger(__name__)


class ReportGenerator:
    """
    Builds the analytics summary report

    Read-only: the report never raises or modifies alerts. The narrative
    insights step is optional and degrades to an empty list.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        text_analysis: TextAnalysisClient,
        spike_detector: SpikeDetector
    ):
        self.repository = repository
        self.text_analysis = text_analysis
        self.spike_detector = spike_detector

    async def generate_report(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Generate the analytics report for the last ``window_days`` days

        Returns:
            Dictionary with summary, per-drug analytics, window alerts and insights
        """
        if window_days is None:
            window_days = settings.ANALYTICS_WINDOW_DAYS
        if window_days <= 0:
            raise ValueError(f"window_days must be positive, got {window_days}")
        now = now or datetime.utcnow()
        window_start = now - timedelta(days=window_days)

        reports = self.repository.find_side_effects(SideEffectFilter(
            is_anonymous=True,
            created_after=window_start,
            created_until=now,
        ))

        by_drug: Dict[int, List[SideEffectRecord]] = {}
        for report in reports:
            by_drug.setdefault(report.drug_id, []).append(report)

        drugs = {d.id: d for d in self.repository.find_drugs(sorted(by_drug))}

        drug_analytics = []
        spike_detections = 0
        for drug_id in sorted(by_drug):
            drug_reports = by_drug[drug_id]
            spike = self.spike_detector.detect_spike(drug_id, window_days=window_days, now=now)
            if spike.is_spike:
                spike_detections += 1

            drug = drugs.get(drug_id)
            drug_analytics.append({
                "drug_id": drug_id,
                "drug_name": drug.name if drug else f"Drug {drug_id}",
                "total_count": len(drug_reports),
                "severity_counts": dict(Counter(r.severity for r in drug_reports)),
                "concerning_count": sum(1 for r in drug_reports if r.is_concerning),
                "is_spike": spike.is_spike,
                "spike_severity": spike.severity,
                "spike_metrics": spike.metrics,
            })

        window_alerts = self.repository.list_alerts(AlertFilter(created_after=window_start))
        active_alerts = self.repository.count_alerts(AlertFilter(is_resolved=False))

        insights, insights_summary = await self._insights(drug_analytics, window_days)

        return {
            "window_days": window_days,
            "generated_at": now,
            "summary": {
                "total_drugs": len(drug_analytics),
                "total_side_effects": len(reports),
                "concerning_side_effects": sum(d["concerning_count"] for d in drug_analytics),
                "spike_detections": spike_detections,
                "total_alerts": len(window_alerts),
                "active_alerts": active_alerts,
            },
            "drug_analytics": drug_analytics,
            "alerts": [self._alert_summary(a) for a in window_alerts],
            "insights": insights,
            "insights_summary": insights_summary,
        }

    async def _insights(
        self,
        drug_analytics: List[Dict[str, Any]],
        window_days: int
    ) -> Tuple[List[str], str]:
        if not drug_analytics:
            return [], ""

        drug_stats = [
            {
                "drug_name": d["drug_name"],
                "total_count": d["total_count"],
                "severity_counts": d["severity_counts"],
                "concerning_count": d["concerning_count"],
                "is_spike": d["is_spike"],
                "increase_ratio": d["spike_metrics"].get("increase_ratio"),
            }
            for d in drug_analytics
        ]

        try:
            result = await self.text_analysis.generate_insights(drug_stats, window_days)
        except Exception as e:
            logger.warning(f"Insights step failed, returning numeric report only: {type(e).__name__}: {e}")
            return [], ""

        if result.is_fallback:
            return [], ""

        return list(result.patterns) + list(result.alerts), result.summary

    @staticmethod
    def _alert_summary(alert: AlertRecord) -> Dict[str, Any]:
        return {
            "id": alert.id,
            "type": alert.alert_type,
            "title": alert.title,
            "severity": alert.severity,
            "confidence": alert.confidence_score,
            "is_resolved": alert.is_resolved,
            "created_at": alert.created_at,
        }

"""
Periodic Analysis Orchestrator
Runs spike and interaction detection across all active drugs in one pass
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from models import AlertSeverity
from actions.alert_engine import AlertEngine, spike_subject
from actions.interaction_detector import InteractionDetector, UnitError
from actions.spike_detector import SpikeDetector
from services.analytics_repository import AlertFilter, AnalyticsRepository, SideEffectFilter


logger = logging.getLogger(__name__)


class AnalyticsUnavailableError(RuntimeError):
    """Data store could not be reached at the start of an analysis pass"""


@dataclass
class AnalysisRunResult:
    started_at: datetime
    window_days: int
    finished_at: Optional[datetime] = None
    drugs_analyzed: int = 0
    spikes_detected: int = 0
    interactions_detected: int = 0
    pairs_checked: int = 0
    alerts_generated: int = 0
    alert_ids: List[int] = field(default_factory=list)
    errors: List[UnitError] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "window_days": self.window_days,
            "drugs_analyzed": self.drugs_analyzed,
            "spikes_detected": self.spikes_detected,
            "interactions_detected": self.interactions_detected,
            "pairs_checked": self.pairs_checked,
            "alerts_generated": self.alerts_generated,
            "alert_ids": list(self.alert_ids),
            "errors": [e.to_dict() for e in self.errors],
            "summary": dict(self.summary),
        }


class PeriodicAnalysisOrchestrator:
    """
    Single-pass analysis over every active drug and drug pair.

    Each drug and each drug pair is an isolated unit: its failure is logged,
    recorded and skipped. Only failing to load the active drug list aborts
    the run.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        spike_detector: SpikeDetector,
        interaction_detector: InteractionDetector,
        alert_engine: AlertEngine
    ):
        self.repository = repository
        self.spike_detector = spike_detector
        self.interaction_detector = interaction_detector
        self.alert_engine = alert_engine

    async def run(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> AnalysisRunResult:
        """
        Run the periodic analysis

        Raises:
            AnalyticsUnavailableError: if active drugs cannot be loaded
            ValueError: if window_days is not positive
        """
        if window_days is None:
            window_days = settings.ANALYTICS_WINDOW_DAYS
        if window_days <= 0:
            raise ValueError(f"window_days must be positive, got {window_days}")
        now = now or datetime.utcnow()
        result = AnalysisRunResult(started_at=now, window_days=window_days)

        logger.info(f"Running periodic analytics analysis (window {window_days} days)")

        try:
            drugs = self.repository.find_active_drugs()
        except Exception as e:
            logger.error(f"Analytics data store unavailable: {type(e).__name__}: {e}")
            raise AnalyticsUnavailableError("Analytics data store unavailable") from e

        result.drugs_analyzed = len(drugs)

        for drug in drugs:
            try:
                spike = self.spike_detector.detect_spike(drug.id, window_days=window_days, now=now)
                if not spike.is_spike:
                    continue
                result.spikes_detected += 1
                candidate = self.spike_detector.build_alert_candidate(spike, drug)
                alert = self.alert_engine.raise_alert(candidate, now=now)
                if alert is not None:
                    result.alerts_generated += 1
                    result.alert_ids.append(alert.id)
            except Exception as e:
                unit = spike_subject(drug.id)
                logger.error(f"Spike analysis failed for {drug.name} ({unit}): {type(e).__name__}: {e}")
                self.repository.rollback()
                result.errors.append(UnitError.from_exception(unit, "spike", e))

        try:
            scan = await self.interaction_detector.scan(window_days=window_days, now=now)
            result.pairs_checked = scan.pairs_checked
            result.interactions_detected = len(scan.alerts)
            result.alerts_generated += len(scan.alerts)
            result.alert_ids.extend(a.id for a in scan.alerts)
            result.errors.extend(scan.errors)
        except Exception as e:
            logger.error(f"Interaction scan failed: {type(e).__name__}: {e}")
            self.repository.rollback()
            result.errors.append(UnitError.from_exception("interactions", "interaction", e))

        try:
            result.summary = self._summary(window_days, now)
        except Exception as e:
            logger.error(f"Failed to build analysis summary: {type(e).__name__}: {e}")
            self.repository.rollback()
            result.errors.append(UnitError.from_exception("summary", "summary", e))

        result.finished_at = datetime.utcnow()
        logger.info(
            f"Periodic analysis completed: {result.alerts_generated} alerts, "
            f"{result.spikes_detected} spikes, {result.interactions_detected} interactions, "
            f"{len(result.errors)} errors"
        )
        return result

    def _summary(self, window_days: int, now: datetime) -> Dict[str, int]:
        return {
            "total_alerts": self.repository.count_alerts(AlertFilter(is_resolved=False)),
            "high_severity_alerts": self.repository.count_alerts(AlertFilter(
                is_resolved=False,
                severities=[AlertSeverity.HIGH.value, AlertSeverity.CRITICAL.value],
            )),
            "recent_side_effects": self.repository.count_side_effects(SideEffectFilter(
                is_anonymous=True,
                created_after=now - timedelta(days=window_days),
                created_until=now,
            )),
        }

"""
Spike Detector
Compares a drug's recent side-effect report rate against the preceding window
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings, analytics_config
from models import AlertSeverity, AlertType
from actions.alert_engine import AlertCandidate, spike_subject
from services.analytics_repository import AnalyticsRepository, DrugRecord, SideEffectFilter


logger = logging.getLogger(__name__)


SPIKE_RECOMMENDATIONS = [
    "Review recent prescriptions for this drug",
    "Consider patient monitoring protocols",
    "Evaluate if dosage adjustments are needed",
    "Check for potential drug interactions",
]


@dataclass
class SpikeResult:
    """Outcome of one spike check"""
    drug_id: int
    is_spike: bool
    metrics: Dict[str, Any]
    severity: Optional[str] = None
    confidence: Optional[float] = None
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "drug_id": self.drug_id,
            "is_spike": self.is_spike,
            "severity": self.severity,
            "confidence": self.confidence,
            "metrics": self.metrics,
        }


class SpikeDetector:
    """
    Detects statistically notable increases in side-effect reporting.

    Windows, for a window of ``w`` days ending at ``now``:
        recent   = [now - w, now]
        baseline = [now - 2w, now - w)

    Only anonymous reports are counted. A spike needs an increase ratio
    strictly above the threshold and a recent daily rate strictly above the
    floor. With an empty baseline the ratio is undefined; a spike then needs
    at least ``zero_baseline_min_count`` recent reports.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        threshold: Optional[float] = None,
        min_daily_rate: Optional[float] = None,
        zero_baseline_min_count: Optional[int] = None
    ):
        self.repository = repository
        self.threshold = threshold if threshold is not None else settings.SIDE_EFFECT_SPIKE_THRESHOLD
        self.min_daily_rate = min_daily_rate if min_daily_rate is not None else settings.SPIKE_MIN_DAILY_RATE
        self.zero_baseline_min_count = (
            zero_baseline_min_count if zero_baseline_min_count is not None
            else settings.SPIKE_ZERO_BASELINE_MIN_COUNT
        )
        self.high_severity_ratio = analytics_config.SPIKE_HIGH_SEVERITY_RATIO

    def detect_spike(
        self,
        drug_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> SpikeResult:
        """
        Compare recent vs baseline anonymous report rates for one drug

        Args:
            drug_id: Drug to check
            window_days: Length of each window in days
            now: End of the recent window; fixed per analysis pass

        Returns:
            SpikeResult with metrics, plus severity/confidence when a spike is found
        """
        if window_days is None:
            window_days = settings.ANALYTICS_WINDOW_DAYS
        if window_days <= 0:
            raise ValueError(f"window_days must be positive, got {window_days}")

        now = now or datetime.utcnow()
        recent_start = now - timedelta(days=window_days)
        baseline_start = recent_start - timedelta(days=window_days)

        recent_reports = self.repository.find_side_effects(SideEffectFilter(
            drug_id=drug_id,
            is_anonymous=True,
            created_after=recent_start,
            created_until=now,
        ))
        baseline_count = self.repository.count_side_effects(SideEffectFilter(
            drug_id=drug_id,
            is_anonymous=True,
            created_after=baseline_start,
            created_before=recent_start,
        ))

        recent_count = len(recent_reports)
        severity_distribution = dict(Counter(r.severity for r in recent_reports))

        return self.evaluate(
            drug_id=drug_id,
            recent_count=recent_count,
            baseline_count=baseline_count,
            window_days=window_days,
            severity_distribution=severity_distribution,
        )

    def evaluate(
        self,
        drug_id: int,
        recent_count: int,
        baseline_count: int,
        window_days: int,
        severity_distribution: Optional[Dict[str, int]] = None
    ) -> SpikeResult:
        """Apply the spike rules to raw window counts"""
        recent_rate = recent_count / window_days
        baseline_rate = baseline_count / window_days

        # Equal-length windows: the rate ratio reduces to the count ratio
        increase_ratio = (
            (recent_count - baseline_count) / baseline_count
            if baseline_count > 0 else None
        )

        metrics = {
            "recent_rate": round(recent_rate, 4),
            "baseline_rate": round(baseline_rate, 4),
            "increase_ratio": round(increase_ratio, 4) if increase_ratio is not None else None,
            "window_days": window_days,
            "recent_count": recent_count,
            "baseline_count": baseline_count,
            "severity_distribution": severity_distribution or {},
        }

        above_floor = recent_rate > self.min_daily_rate
        reasons: List[str] = []

        if increase_ratio is None:
            is_spike = above_floor and recent_count >= self.zero_baseline_min_count
            if is_spike:
                reasons.append(
                    f"{recent_count} reports with no baseline history "
                    f"(minimum {self.zero_baseline_min_count})"
                )
                return SpikeResult(
                    drug_id=drug_id,
                    is_spike=True,
                    metrics=metrics,
                    severity=AlertSeverity.MEDIUM.value,
                    confidence=analytics_config.ZERO_BASELINE_CONFIDENCE,
                    reasons=reasons,
                )
            return SpikeResult(drug_id=drug_id, is_spike=False, metrics=metrics)

        if increase_ratio > self.threshold and above_floor:
            reasons.append(
                f"Report rate up {increase_ratio:.0%} over baseline "
                f"(threshold {self.threshold:.0%})"
            )
            severity = (
                AlertSeverity.HIGH if increase_ratio > self.high_severity_ratio
                else AlertSeverity.MEDIUM
            )
            return SpikeResult(
                drug_id=drug_id,
                is_spike=True,
                metrics=metrics,
                severity=severity.value,
                confidence=min(increase_ratio, 1.0),
                reasons=reasons,
            )

        return SpikeResult(drug_id=drug_id, is_spike=False, metrics=metrics)

    def build_alert_candidate(self, result: SpikeResult, drug: DrugRecord) -> AlertCandidate:
        """Turn a positive spike result into an alert candidate"""
        if not result.is_spike:
            raise ValueError(f"No spike detected for drug {result.drug_id}")

        metrics = result.metrics
        if metrics["increase_ratio"] is None:
            change = "with no reports in the preceding period"
        else:
            change = f"an increase of {metrics['increase_ratio']:.0%} over the preceding period"

        description = (
            f"Side effect reports for {drug.name} rose to {metrics['recent_count']} "
            f"in the last {metrics['window_days']} days "
            f"({metrics['recent_rate']:.2f}/day), {change} "
            f"({metrics['baseline_count']} reports, {metrics['baseline_rate']:.2f}/day)."
        )

        return AlertCandidate(
            alert_type=AlertType.SIDE_EFFECT_SPIKE,
            subject_key=spike_subject(drug.id),
            title=f"Side Effect Spike Detected: {drug.name}",
            description=description,
            severity=result.severity,
            confidence_score=result.confidence,
            affected_patient_count=metrics["recent_count"],
            drug_ids=[drug.id],
            data_points={"drug_id": drug.id, "drug_name": drug.name, **metrics},
            recommendations=list(SPIKE_RECOMMENDATIONS),
        )

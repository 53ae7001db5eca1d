"""
Alert Engine
Validates, deduplicates and persists analytics alerts
"""

import logging
import math
from typing import List, Dict, Any, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from config import settings, analytics_config
from models import AlertSeverity, AlertType
from services.analytics_repository import AnalyticsRepository, AlertRecord, ordered_pair


logger = logging.getLogger(__name__)


class InvalidAlertError(ValueError):
    """Candidate alert violates an alert invariant and was not stored"""


def spike_subject(drug_id: int) -> str:
    return f"drug:{drug_id}"


def interaction_subject(drug_id_a: int, drug_id_b: int) -> str:
    low, high = ordered_pair(drug_id_a, drug_id_b)
    return f"drugs:{low}:{high}"


@dataclass
class AlertCandidate:
    """Detector finding waiting to be materialized"""
    alert_type: Union[AlertType, str]
    subject_key: str
    title: str
    description: str
    severity: Union[AlertSeverity, str]
    confidence_score: float
    affected_patient_count: int = 0
    drug_ids: List[int] = field(default_factory=list)
    data_points: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)


class AlertEngine:
    """
    Engine for materializing detector findings as alerts

    Responsibilities:
    - Reject candidates that break alert invariants
    - Substitute a fallback recommendation when none is given
    - Skip candidates already covered by a recent unresolved alert
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        dedup_window_days: Optional[int] = None
    ):
        self.repository = repository
        self.dedup_window_days = (
            dedup_window_days if dedup_window_days is not None
            else settings.ALERT_DEDUP_WINDOW_DAYS
        )

    def validate(self, candidate: AlertCandidate) -> Dict[str, Any]:
        """
        Check a candidate and return the row data to insert

        Raises:
            InvalidAlertError: on unknown enum values, out-of-range confidence,
                negative patient counts or missing subject/title
        """
        try:
            alert_type = AlertType(candidate.alert_type)
        except ValueError:
            raise InvalidAlertError(f"Unknown alert type: {candidate.alert_type!r}") from None

        try:
            severity = AlertSeverity(candidate.severity)
        except ValueError:
            raise InvalidAlertError(f"Unknown alert severity: {candidate.severity!r}") from None

        confidence = candidate.confidence_score
        if (
            isinstance(confidence, bool)
            or not isinstance(confidence, (int, float))
            or not math.isfinite(confidence)
            or not 0.0 <= confidence <= 1.0
        ):
            raise InvalidAlertError(f"Confidence score out of range [0, 1]: {confidence!r}")

        count = candidate.affected_patient_count
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise InvalidAlertError(f"Invalid affected patient count: {count!r}")

        if not candidate.subject_key:
            raise InvalidAlertError("Alert subject is required")
        if not candidate.title or not candidate.title.strip():
            raise InvalidAlertError("Alert title is required")

        title = candidate.title.strip()
        max_len = analytics_config.MAX_ALERT_TITLE_LENGTH
        if len(title) > max_len:
            title = title[:max_len - 3] + "..."

        recommendations = [r.strip() for r in candidate.recommendations if r and r.strip()]
        if not recommendations:
            recommendations = [analytics_config.FALLBACK_RECOMMENDATION]

        return {
            "alert_type": alert_type.value,
            "subject_key": candidate.subject_key,
            "title": title,
            "description": candidate.description or title,
            "severity": severity.value,
            "confidence_score": float(confidence),
            "affected_patient_count": count,
            "drug_ids": list(candidate.drug_ids),
            "data_points": dict(candidate.data_points),
            "recommendations": recommendations,
        }

    def raise_alert(
        self,
        candidate: AlertCandidate,
        now: Optional[datetime] = None
    ) -> Optional[AlertRecord]:
        """
        Persist a candidate unless an equivalent alert is still open

        Returns:
            The new AlertRecord, or None when an unresolved alert for the same
            type and subject was raised within the dedup window. The existing
            alert is left untouched.

        Raises:
            InvalidAlertError: if the candidate fails validation
        """
        try:
            data = self.validate(candidate)
        except InvalidAlertError as e:
            logger.error(f"Dropping invalid alert candidate '{candidate.title}': {e}")
            raise

        now = now or datetime.utcnow()
        data["created_at"] = now
        dedup_since = now - timedelta(days=self.dedup_window_days)

        alert = self.repository.create_alert_if_absent(data, dedup_since)
        if alert is None:
            logger.info(
                f"Skipping duplicate {data['alert_type']} alert for {data['subject_key']}"
            )
            return None

        logger.info(f"Created alert {alert.id}: {alert.title} ({alert.severity})")
        return alert

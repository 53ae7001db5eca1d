"""
Interaction Detector
Flags drug pairs taken together that interact, using the known-interaction
table first and the text-analysis client for undocumented pairs
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import combinations
from typing import Any, Dict, List, Optional, Set, Tuple

from config import settings, analytics_config
from models import AlertSeverity, AlertType, InteractionSeverity
from actions.alert_engine import AlertCandidate, AlertEngine, interaction_subject
from services.analytics_repository import (
    AlertRecord,
    AnalyticsRepository,
    DrugRecord,
    KnownInteractionRecord,
    PrescriptionRecord,
    SideEffectFilter,
)
from services.text_analysis_service import TextAnalysisClient


logger = logging.getLogger(__name__)


class PrescriptionNotFoundError(ValueError):
    """Requested prescription does not exist"""


# Interaction severity -> alert severity
INTERACTION_ALERT_SEVERITY = {
    InteractionSeverity.MAJOR.value: AlertSeverity.HIGH.value,
    InteractionSeverity.CONTRAINDICATED.value: AlertSeverity.CRITICAL.value,
}


@dataclass
class UnitError:
    """Failure of one isolated unit of work within an analysis pass"""
    unit: str
    stage: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, unit: str, stage: str, error: Exception) -> "UnitError":
        return cls(unit=unit, stage=stage, error_type=type(error).__name__, message=str(error))

    def to_dict(self) -> Dict[str, str]:
        return {
            "unit": self.unit,
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class InteractionScanResult:
    alerts: List[AlertRecord] = field(default_factory=list)
    errors: List[UnitError] = field(default_factory=list)
    pairs_checked: int = 0
    interactions_recorded: int = 0


@dataclass
class _PairExposure:
    """Patients concurrently on one drug pair and the prescriptions involved"""
    patient_ids: Set[int] = field(default_factory=set)
    prescription_ids: Set[int] = field(default_factory=set)


class InteractionDetector:
    """
    Detects drug interactions among concurrently active prescriptions.

    The unit of work is an unordered drug pair; every patient currently on
    both drugs contributes to that pair's evidence and patient count.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        text_analysis: TextAnalysisClient,
        alert_engine: AlertEngine,
        confidence_threshold: Optional[float] = None
    ):
        self.repository = repository
        self.text_analysis = text_analysis
        self.alert_engine = alert_engine
        self.confidence_threshold = (
            confidence_threshold if confidence_threshold is not None
            else settings.DRUG_INTERACTION_CONFIDENCE_THRESHOLD
        )

    async def detect_interactions(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[AlertRecord]:
        """Scan every patient and return the newly raised alerts"""
        result = await self.scan(window_days=window_days, now=now)
        return result.alerts

    async def detect_interactions_for(
        self,
        prescription_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[AlertRecord]:
        """Check one prescription against the patient's other active prescriptions"""
        result = await self.scan(window_days=window_days, now=now, prescription_id=prescription_id)
        return result.alerts

    async def scan(
        self,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        patient_id: Optional[int] = None,
        prescription_id: Optional[int] = None
    ) -> InteractionScanResult:
        """
        Run interaction detection over active prescriptions

        Args:
            window_days: How far back to collect side-effect evidence
            now: Reference time for the pass
            patient_id: Restrict to one patient
            prescription_id: Restrict to pairs involving this prescription's drug

        Returns:
            InteractionScanResult with raised alerts and per-pair errors

        Raises:
            PrescriptionNotFoundError: if prescription_id is unknown
        """
        if window_days is None:
            window_days = settings.ANALYTICS_WINDOW_DAYS
        if window_days <= 0:
            raise ValueError(f"window_days must be positive, got {window_days}")
        now = now or datetime.utcnow()
        result = InteractionScanResult()

        focus_drug_id = None
        if prescription_id is not None:
            prescription = self.repository.get_prescription(prescription_id)
            if prescription is None:
                raise PrescriptionNotFoundError(f"Prescription {prescription_id} not found")
            patient_id = prescription.patient_id
            focus_drug_id = prescription.drug_id

        prescriptions = self.repository.find_active_prescriptions(
            patient_id=patient_id, as_of=now.date()
        )
        if prescription_id is not None and prescription_id not in {p.id for p in prescriptions}:
            logger.info(f"Prescription {prescription_id} is not currently active; nothing to check")
            return result

        exposures = self._group_pairs(prescriptions, focus_drug_id)
        logger.info(f"Checking {len(exposures)} concurrent drug pairs for interactions")

        for pair in sorted(exposures):
            result.pairs_checked += 1
            try:
                await self._check_pair(pair, exposures[pair], window_days, now, result)
            except Exception as e:
                unit = interaction_subject(*pair)
                logger.error(f"Interaction check failed for {unit}: {type(e).__name__}: {e}")
                self.repository.rollback()
                result.errors.append(UnitError.from_exception(unit, "interaction", e))

        return result

    @staticmethod
    def _group_pairs(
        prescriptions: List[PrescriptionRecord],
        focus_drug_id: Optional[int] = None
    ) -> Dict[Tuple[int, int], _PairExposure]:
        by_patient: Dict[int, Dict[int, List[int]]] = {}
        for rx in prescriptions:
            by_patient.setdefault(rx.patient_id, {}).setdefault(rx.drug_id, []).append(rx.id)

        exposures: Dict[Tuple[int, int], _PairExposure] = {}
        for patient_id, drugs in by_patient.items():
            if len(drugs) < 2:
                continue
            for low, high in combinations(sorted(drugs), 2):
                if focus_drug_id is not None and focus_drug_id not in (low, high):
                    continue
                exposure = exposures.setdefault((low, high), _PairExposure())
                exposure.patient_ids.add(patient_id)
                exposure.prescription_ids.update(drugs[low])
                exposure.prescription_ids.update(drugs[high])

        return exposures

    async def _check_pair(
        self,
        pair: Tuple[int, int],
        exposure: _PairExposure,
        window_days: int,
        now: datetime,
        result: InteractionScanResult
    ) -> None:
        low, high = pair
        drugs = {d.id: d for d in self.repository.find_drugs([low, high])}
        if low not in drugs or high not in drugs:
            raise LookupError(f"Drug record missing for pair {low}/{high}")
        drug_a, drug_b = drugs[low], drugs[high]

        known = self.repository.find_known_interaction(low, high)
        if known is not None:
            if known.severity in analytics_config.ALERTING_INTERACTION_SEVERITIES:
                confidence = known.confidence_score if known.confidence_score is not None else 1.0
                self._raise(known, drug_a, drug_b, exposure, confidence, "known", 0, now, result)
            return

        reports = self.repository.find_side_effects(SideEffectFilter(
            patient_ids=sorted(exposure.patient_ids),
            prescription_ids=sorted(exposure.prescription_ids),
            is_anonymous=True,
            created_after=now - timedelta(days=window_days),
            created_until=now,
        ))
        descriptions = [r.description for r in reports][-analytics_config.MAX_EVIDENCE_REPORTS:]

        judgment = await self.text_analysis.analyze_drug_interaction(
            self._drug_payload(drug_a),
            self._drug_payload(drug_b),
            descriptions,
        )

        if not judgment.has_interaction or judgment.confidence <= self.confidence_threshold:
            logger.debug(
                f"No accepted interaction for {drug_a.name} + {drug_b.name} "
                f"(has_interaction={judgment.has_interaction}, confidence={judgment.confidence})"
            )
            return

        record, created = self.repository.get_or_create_known_interaction(
            low,
            high,
            severity=judgment.severity,
            description=judgment.description or f"Interaction between {drug_a.name} and {drug_b.name}",
            clinical_effect=judgment.clinical_effect,
            management=judgment.management,
            confidence_score=judgment.confidence,
            is_detected_by_analytics=True,
        )
        if created:
            result.interactions_recorded += 1
            logger.info(
                f"Recorded {record.severity} interaction {drug_a.name} + {drug_b.name} "
                f"(confidence {judgment.confidence:.2f})"
            )

        if record.severity in analytics_config.ALERTING_INTERACTION_SEVERITIES:
            self._raise(
                record, drug_a, drug_b, exposure, judgment.confidence,
                "analytics", len(descriptions), now, result,
            )

    @staticmethod
    def _drug_payload(drug: DrugRecord) -> Dict[str, Any]:
        return {
            "name": drug.name,
            "description": drug.description,
            "drug_class": drug.drug_class,
        }

    def _raise(
        self,
        interaction: KnownInteractionRecord,
        drug_a: DrugRecord,
        drug_b: DrugRecord,
        exposure: _PairExposure,
        confidence: float,
        source: str,
        evidence_count: int,
        now: datetime,
        result: InteractionScanResult
    ) -> None:
        candidate = AlertCandidate(
            alert_type=AlertType.DRUG_INTERACTION,
            subject_key=interaction_subject(drug_a.id, drug_b.id),
            title=f"Drug Interaction Alert: {drug_a.name} + {drug_b.name}",
            description=interaction.description,
            severity=INTERACTION_ALERT_SEVERITY[interaction.severity],
            confidence_score=confidence,
            affected_patient_count=len(exposure.patient_ids),
            drug_ids=[drug_a.id, drug_b.id],
            data_points={
                "drug1": drug_a.name,
                "drug2": drug_b.name,
                "interaction_id": interaction.id,
                "interaction_severity": interaction.severity,
                "clinical_effect": interaction.clinical_effect,
                "source": source,
                "evidence_report_count": evidence_count,
                "prescription_ids": sorted(exposure.prescription_ids),
            },
            recommendations=[
                interaction.management or "Consult healthcare provider immediately",
                "Monitor patient closely for adverse effects",
                "Consider alternative medications if possible",
            ],
        )
        alert = self.alert_engine.raise_alert(candidate, now=now)
        if alert is not None:
            result.alerts.append(alert)

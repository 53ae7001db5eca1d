"""
Analytics Repository
Storage-agnostic data access for the analytics core, plus the SQLAlchemy adapter.

The detectors only ever see the record dataclasses defined here. Every
timestamp crossing this boundary goes through ``normalize_timestamp`` so the
analytics code works with naive UTC datetimes regardless of how a backend
stores them.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, date, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, desc, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models


logger = logging.getLogger(__name__)


# Epoch values above this are treated as milliseconds
_EPOCH_MILLIS_CUTOFF = 100_000_000_000


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert any accepted timestamp representation to a naive UTC datetime.

    Accepted: datetime (naive values are assumed UTC), date, epoch seconds or
    milliseconds, ISO-8601 strings, ``{"seconds": .., "nanoseconds": ..}``
    mappings (with or without leading underscores) and objects exposing
    ``ToDatetime()``. ``None`` passes through.

    Raises:
        ValueError: if the value cannot be interpreted as a timestamp
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _EPOCH_MILLIS_CUTOFF else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)

    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            raise ValueError(f"Unsupported timestamp string: {value!r}") from None
        return normalize_timestamp(parsed)

    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"Unsupported timestamp mapping: {value!r}")
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        return normalize_timestamp(float(seconds) + float(nanos) / 1e9)

    if hasattr(value, "ToDatetime"):
        return normalize_timestamp(value.ToDatetime())

    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def ordered_pair(drug_id_a: int, drug_id_b: int) -> Tuple[int, int]:
    """Canonical ordering for an unordered drug pair"""
    return (drug_id_a, drug_id_b) if drug_id_a <= drug_id_b else (drug_id_b, drug_id_a)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


# ==================== RECORDS ====================

@dataclass
class DrugRecord:
    id: int
    name: str
    drug_class: Optional[str] = None
    generic_name: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class PrescriptionRecord:
    id: int
    patient_id: int
    doctor_id: int
    drug_id: int
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    created_at: Optional[datetime] = None


@dataclass
class SideEffectRecord:
    id: int
    drug_id: int
    prescription_id: int
    patient_id: int
    description: str
    severity: str
    created_at: datetime
    is_concerning: bool = False
    is_anonymous: bool = True
    impact_on_daily_life: Optional[str] = None
    llm_analysis: Optional[Dict[str, Any]] = None
    analyzed_at: Optional[datetime] = None


@dataclass
class DrugReportCount:
    drug_id: int
    drug_name: str
    report_count: int


@dataclass
class KnownInteractionRecord:
    id: int
    drug_id_1: int
    drug_id_2: int
    severity: str
    description: str
    confidence_score: Optional[float] = None
    is_detected_by_analytics: bool = False
    clinical_effect: Optional[str] = None
    management: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class AlertRecord:
    id: int
    alert_type: str
    subject_key: str
    title: str
    description: str
    severity: str
    confidence_score: float
    affected_patient_count: int = 0
    drug_ids: List[int] = field(default_factory=list)
    data_points: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    is_resolved: bool = False
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: Optional[datetime] = None


# ==================== FILTERS ====================

@dataclass
class SideEffectFilter:
    """
    Side-effect query filter.

    ``created_after`` and ``created_until`` are inclusive bounds,
    ``created_before`` is exclusive.
    """
    drug_id: Optional[int] = None
    drug_ids: Optional[Sequence[int]] = None
    patient_ids: Optional[Sequence[int]] = None
    prescription_ids: Optional[Sequence[int]] = None
    is_anonymous: Optional[bool] = None
    is_concerning: Optional[bool] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    created_until: Optional[datetime] = None


@dataclass
class AlertFilter:
    alert_type: Optional[str] = None
    severity: Optional[str] = None
    severities: Optional[Sequence[str]] = None
    is_resolved: Optional[bool] = None
    subject_key: Optional[str] = None
    created_after: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0


# ==================== INTERFACE ====================

class AnalyticsRepository(ABC):
    """Data access contract consumed by the analytics core"""

    # Side effects
    @abstractmethod
    def find_side_effects(self, filters: SideEffectFilter) -> List[SideEffectRecord]: ...

    @abstractmethod
    def count_side_effects(self, filters: SideEffectFilter) -> int: ...

    @abstractmethod
    def count_side_effects_by_severity(self, filters: SideEffectFilter) -> Dict[str, int]: ...

    @abstractmethod
    def top_drugs_by_report_count(self, filters: SideEffectFilter, limit: int) -> List[DrugReportCount]: ...

    @abstractmethod
    def get_side_effect(self, report_id: int) -> Optional[SideEffectRecord]: ...

    @abstractmethod
    def mark_side_effect_analyzed(
        self,
        report_id: int,
        is_concerning: bool,
        analysis: Dict[str, Any],
        analyzed_at: datetime
    ) -> Optional[SideEffectRecord]: ...

    # Prescriptions
    @abstractmethod
    def find_active_prescriptions(
        self,
        patient_id: Optional[int] = None,
        as_of: Optional[date] = None
    ) -> List[PrescriptionRecord]: ...

    @abstractmethod
    def get_prescription(self, prescription_id: int) -> Optional[PrescriptionRecord]: ...

    # Drugs
    @abstractmethod
    def find_drug(self, drug_id: int) -> Optional[DrugRecord]: ...

    @abstractmethod
    def find_drugs(self, drug_ids: Sequence[int]) -> List[DrugRecord]: ...

    @abstractmethod
    def find_active_drugs(self) -> List[DrugRecord]: ...

    # Known interactions
    @abstractmethod
    def find_known_interaction(self, drug_id_a: int, drug_id_b: int) -> Optional[KnownInteractionRecord]: ...

    @abstractmethod
    def get_or_create_known_interaction(
        self,
        drug_id_a: int,
        drug_id_b: int,
        **fields: Any
    ) -> Tuple[KnownInteractionRecord, bool]: ...

    @abstractmethod
    def list_known_interactions(
        self,
        drug_id: Optional[int] = None,
        severity: Optional[str] = None
    ) -> List[KnownInteractionRecord]: ...

    @abstractmethod
    def count_known_interactions(self, detected_by_analytics: Optional[bool] = None) -> int: ...

    # Alerts
    @abstractmethod
    def create_alert_if_absent(self, data: Dict[str, Any], dedup_since: datetime) -> Optional[AlertRecord]: ...

    @abstractmethod
    def find_unresolved_alerts(self, filters: AlertFilter) -> List[AlertRecord]: ...

    @abstractmethod
    def list_alerts(self, filters: AlertFilter) -> List[AlertRecord]: ...

    @abstractmethod
    def count_alerts(self, filters: AlertFilter) -> int: ...

    @abstractmethod
    def get_alert(self, alert_id: int) -> Optional[AlertRecord]: ...

    @abstractmethod
    def resolve_alert(
        self,
        alert_id: int,
        notes: Optional[str],
        resolved_by: Optional[int],
        resolved_at: datetime
    ) -> Optional[AlertRecord]: ...

    def rollback(self) -> None:
        """Discard a failed unit of work; no-op for stores without transactions"""


# ==================== SQLALCHEMY ADAPTER ====================

class SQLAlchemyAnalyticsRepository(AnalyticsRepository):
    """Relational adapter over the ORM models"""

    def __init__(self, session: Session):
        self.session = session

    # ---------- converters ----------

    @staticmethod
    def _drug(row: models.Drug) -> DrugRecord:
        return DrugRecord(
            id=row.id,
            name=row.name,
            drug_class=row.drug_class,
            generic_name=row.generic_name,
            description=row.description,
            is_active=bool(row.is_active),
        )

    @staticmethod
    def _prescription(row: models.Prescription) -> PrescriptionRecord:
        return PrescriptionRecord(
            id=row.id,
            patient_id=row.patient_id,
            doctor_id=row.doctor_id,
            drug_id=row.drug_id,
            is_active=bool(row.is_active),
            start_date=row.start_date,
            end_date=row.end_date,
            created_at=normalize_timestamp(row.created_at),
        )

    @staticmethod
    def _side_effect(row: models.SideEffectReport) -> SideEffectRecord:
        return SideEffectRecord(
            id=row.id,
            drug_id=row.drug_id,
            prescription_id=row.prescription_id,
            patient_id=row.patient_id,
            description=row.description,
            severity=_enum_value(row.severity),
            created_at=normalize_timestamp(row.created_at),
            is_concerning=bool(row.is_concerning),
            is_anonymous=bool(row.is_anonymous),
            impact_on_daily_life=row.impact_on_daily_life,
            llm_analysis=row.llm_analysis,
            analyzed_at=normalize_timestamp(row.analyzed_at),
        )

    @staticmethod
    def _interaction(row: models.KnownDrugInteraction) -> KnownInteractionRecord:
        return KnownInteractionRecord(
            id=row.id,
            drug_id_1=row.drug_id_1,
            drug_id_2=row.drug_id_2,
            severity=_enum_value(row.severity),
            description=row.description,
            confidence_score=row.confidence_score,
            is_detected_by_analytics=bool(row.is_detected_by_analytics),
            clinical_effect=row.clinical_effect,
            management=row.management,
            created_at=normalize_timestamp(row.created_at),
        )

    @staticmethod
    def _alert(row: models.AnalyticsAlert) -> AlertRecord:
        return AlertRecord(
            id=row.id,
            alert_type=_enum_value(row.alert_type),
            subject_key=row.subject_key,
            title=row.title,
            description=row.description,
            severity=_enum_value(row.severity),
            confidence_score=row.confidence_score,
            affected_patient_count=row.affected_patient_count or 0,
            drug_ids=list(row.drug_ids or []),
            data_points=dict(row.data_points or {}),
            recommendations=list(row.recommendations or []),
            is_resolved=bool(row.is_resolved),
            resolved_by=row.resolved_by,
            resolved_at=normalize_timestamp(row.resolved_at),
            resolution_notes=row.resolution_notes,
            created_at=normalize_timestamp(row.created_at),
        )

    # ---------- side effects ----------

    def _side_effect_query(self, filters: SideEffectFilter, query=None):
        report = models.SideEffectReport
        if query is None:
            query = self.session.query(report)

        if filters.drug_id is not None:
            query = query.filter(report.drug_id == filters.drug_id)
        if filters.drug_ids is not None:
            query = query.filter(report.drug_id.in_(list(filters.drug_ids)))
        if filters.patient_ids is not None:
            query = query.filter(report.patient_id.in_(list(filters.patient_ids)))
        if filters.prescription_ids is not None:
            query = query.filter(report.prescription_id.in_(list(filters.prescription_ids)))
        if filters.is_anonymous is not None:
            query = query.filter(report.is_anonymous.is_(filters.is_anonymous))
        if filters.is_concerning is not None:
            query = query.filter(report.is_concerning.is_(filters.is_concerning))
        if filters.created_after is not None:
            query = query.filter(report.created_at >= normalize_timestamp(filters.created_after))
        if filters.created_before is not None:
            query = query.filter(report.created_at < normalize_timestamp(filters.created_before))
        if filters.created_until is not None:
            query = query.filter(report.created_at <= normalize_timestamp(filters.created_until))

        return query

    def find_side_effects(self, filters: SideEffectFilter) -> List[SideEffectRecord]:
        rows = self._side_effect_query(filters).order_by(
            models.SideEffectReport.created_at
        ).all()
        return [self._side_effect(row) for row in rows]

    def count_side_effects(self, filters: SideEffectFilter) -> int:
        return self._side_effect_query(filters).count()

    def count_side_effects_by_severity(self, filters: SideEffectFilter) -> Dict[str, int]:
        report = models.SideEffectReport
        query = self._side_effect_query(
            filters, self.session.query(report.severity, func.count(report.id))
        )
        return {
            _enum_value(severity): count
            for severity, count in query.group_by(report.severity).all()
        }

    def top_drugs_by_report_count(self, filters: SideEffectFilter, limit: int) -> List[DrugReportCount]:
        report = models.SideEffectReport
        drug = models.Drug
        query = self.session.query(
            drug.id, drug.name, func.count(report.id).label("report_count")
        ).join(report, report.drug_id == drug.id)

        rows = self._side_effect_query(filters, query).group_by(
            drug.id, drug.name
        ).order_by(
            desc("report_count"), drug.id
        ).limit(limit).all()

        return [
            DrugReportCount(drug_id=drug_id, drug_name=name, report_count=count)
            for drug_id, name, count in rows
        ]

    def get_side_effect(self, report_id: int) -> Optional[SideEffectRecord]:
        row = self.session.get(models.SideEffectReport, report_id)
        return self._side_effect(row) if row else None

    def mark_side_effect_analyzed(
        self,
        report_id: int,
        is_concerning: bool,
        analysis: Dict[str, Any],
        analyzed_at: datetime
    ) -> Optional[SideEffectRecord]:
        row = self.session.get(models.SideEffectReport, report_id)
        if row is None:
            return None

        # AI fields are written once
        if row.analyzed_at is None:
            row.is_concerning = is_concerning
            row.llm_analysis = analysis
            row.analyzed_at = normalize_timestamp(analyzed_at)
            self.session.commit()
            self.session.refresh(row)

        return self._side_effect(row)

    # ---------- prescriptions ----------

    def find_active_prescriptions(
        self,
        patient_id: Optional[int] = None,
        as_of: Optional[date] = None
    ) -> List[PrescriptionRecord]:
        as_of = as_of or datetime.utcnow().date()
        rx = models.Prescription

        query = self.session.query(rx).filter(
            and_(
                rx.is_active.is_(True),
                or_(rx.start_date.is_(None), rx.start_date <= as_of),
                or_(rx.end_date.is_(None), rx.end_date >= as_of),
            )
        )
        if patient_id is not None:
            query = query.filter(rx.patient_id == patient_id)

        return [self._prescription(row) for row in query.order_by(rx.id).all()]

    def get_prescription(self, prescription_id: int) -> Optional[PrescriptionRecord]:
        row = self.session.get(models.Prescription, prescription_id)
        return self._prescription(row) if row else None

    # ---------- drugs ----------

    def find_drug(self, drug_id: int) -> Optional[DrugRecord]:
        row = self.session.get(models.Drug, drug_id)
        return self._drug(row) if row else None

    def find_drugs(self, drug_ids: Sequence[int]) -> List[DrugRecord]:
        if not drug_ids:
            return []
        rows = self.session.query(models.Drug).filter(
            models.Drug.id.in_(list(drug_ids))
        ).order_by(models.Drug.id).all()
        return [self._drug(row) for row in rows]

    def find_active_drugs(self) -> List[DrugRecord]:
        rows = self.session.query(models.Drug).filter(
            models.Drug.is_active.is_(True)
        ).order_by(models.Drug.id).all()
        return [self._drug(row) for row in rows]

    # ---------- known interactions ----------

    def _interaction_row(self, drug_id_a: int, drug_id_b: int) -> Optional[models.KnownDrugInteraction]:
        # Check both orderings so rows written by other tools are still found
        ki = models.KnownDrugInteraction
        return self.session.query(ki).filter(
            or_(
                and_(ki.drug_id_1 == drug_id_a, ki.drug_id_2 == drug_id_b),
                and_(ki.drug_id_1 == drug_id_b, ki.drug_id_2 == drug_id_a),
            )
        ).first()

    def find_known_interaction(self, drug_id_a: int, drug_id_b: int) -> Optional[KnownInteractionRecord]:
        row = self._interaction_row(drug_id_a, drug_id_b)
        return self._interaction(row) if row else None

    def get_or_create_known_interaction(
        self,
        drug_id_a: int,
        drug_id_b: int,
        **fields: Any
    ) -> Tuple[KnownInteractionRecord, bool]:
        existing = self._interaction_row(drug_id_a, drug_id_b)
        if existing is not None:
            return self._interaction(existing), False

        low, high = ordered_pair(drug_id_a, drug_id_b)
        row = models.KnownDrugInteraction(
            drug_id_1=low,
            drug_id_2=high,
            severity=models.InteractionSeverity(fields.pop("severity")),
            **fields
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent run inserted the pair first
            self.session.rollback()
            existing = self._interaction_row(drug_id_a, drug_id_b)
            if existing is None:
                raise
            return self._interaction(existing), False

        self.session.refresh(row)
        return self._interaction(row), True

    def list_known_interactions(
        self,
        drug_id: Optional[int] = None,
        severity: Optional[str] = None
    ) -> List[KnownInteractionRecord]:
        ki = models.KnownDrugInteraction
        query = self.session.query(ki)
        if drug_id is not None:
            query = query.filter(or_(ki.drug_id_1 == drug_id, ki.drug_id_2 == drug_id))
        if severity is not None:
            query = query.filter(ki.severity == models.InteractionSeverity(severity))
        return [self._interaction(row) for row in query.order_by(ki.id).all()]

    def count_known_interactions(self, detected_by_analytics: Optional[bool] = None) -> int:
        query = self.session.query(func.count(models.KnownDrugInteraction.id))
        if detected_by_analytics is not None:
            query = query.filter(
                models.KnownDrugInteraction.is_detected_by_analytics.is_(detected_by_analytics)
            )
        return query.scalar() or 0

    # ---------- alerts ----------

    def _alert_query(self, filters: AlertFilter):
        alert = models.AnalyticsAlert
        query = self.session.query(alert)

        if filters.alert_type is not None:
            query = query.filter(alert.alert_type == models.AlertType(filters.alert_type))
        if filters.severity is not None:
            query = query.filter(alert.severity == models.AlertSeverity(filters.severity))
        if filters.severities is not None:
            query = query.filter(
                alert.severity.in_([models.AlertSeverity(s) for s in filters.severities])
            )
        if filters.is_resolved is not None:
            query = query.filter(alert.is_resolved.is_(filters.is_resolved))
        if filters.subject_key is not None:
            query = query.filter(alert.subject_key == filters.subject_key)
        if filters.created_after is not None:
            query = query.filter(alert.created_at >= normalize_timestamp(filters.created_after))

        return query

    def _open_alert_row(
        self,
        alert_type: models.AlertType,
        subject_key: str,
        dedup_since: datetime
    ) -> Optional[models.AnalyticsAlert]:
        alert = models.AnalyticsAlert
        return self.session.query(alert).filter(
            and_(
                alert.alert_type == alert_type,
                alert.subject_key == subject_key,
                alert.is_resolved.is_(False),
                alert.created_at >= dedup_since,
            )
        ).first()

    def create_alert_if_absent(self, data: Dict[str, Any], dedup_since: datetime) -> Optional[AlertRecord]:
        """
        Insert the alert unless an unresolved one for the same type and
        subject was created at or after ``dedup_since``.

        The unique ``dedup_key`` column holds one open slot per type and
        subject, so concurrent writers cannot both insert.
        """
        alert = models.AnalyticsAlert
        alert_type = models.AlertType(data["alert_type"])
        dedup_key = f"{alert_type.value}|{data['subject_key']}"
        dedup_since = normalize_timestamp(dedup_since)

        if self._open_alert_row(alert_type, data["subject_key"], dedup_since) is not None:
            self.session.rollback()
            return None

        # An unresolved alert older than the window gives up its slot
        self.session.query(alert).filter(
            and_(alert.dedup_key == dedup_key, alert.created_at < dedup_since)
        ).update({alert.dedup_key: None}, synchronize_session=False)

        row = alert(
            alert_type=alert_type,
            subject_key=data["subject_key"],
            dedup_key=dedup_key,
            title=data["title"],
            description=data["description"],
            severity=models.AlertSeverity(data["severity"]),
            confidence_score=data["confidence_score"],
            affected_patient_count=data.get("affected_patient_count", 0),
            drug_ids=list(data.get("drug_ids") or []),
            data_points=data.get("data_points") or {},
            recommendations=list(data["recommendations"]),
            created_at=normalize_timestamp(data.get("created_at")) or datetime.utcnow(),
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent run took the slot first
            self.session.rollback()
            logger.info(f"Alert for {dedup_key} was stored by a concurrent run")
            return None

        self.session.refresh(row)
        return self._alert(row)

    def find_unresolved_alerts(self, filters: AlertFilter) -> List[AlertRecord]:
        return self.list_alerts(replace(filters, is_resolved=False))

    def list_alerts(self, filters: AlertFilter) -> List[AlertRecord]:
        query = self._alert_query(filters).order_by(
            desc(models.AnalyticsAlert.created_at),
            desc(models.AnalyticsAlert.id),
        )
        if filters.offset:
            query = query.offset(filters.offset)
        if filters.limit is not None:
            query = query.limit(filters.limit)
        return [self._alert(row) for row in query.all()]

    def count_alerts(self, filters: AlertFilter) -> int:
        return self._alert_query(filters).count()

    def get_alert(self, alert_id: int) -> Optional[AlertRecord]:
        row = self.session.get(models.AnalyticsAlert, alert_id)
        return self._alert(row) if row else None

    def resolve_alert(
        self,
        alert_id: int,
        notes: Optional[str],
        resolved_by: Optional[int],
        resolved_at: datetime
    ) -> Optional[AlertRecord]:
        row = self.session.get(models.AnalyticsAlert, alert_id)
        if row is None:
            return None

        if not row.is_resolved:
            row.is_resolved = True
            row.dedup_key = None
            row.resolved_by = resolved_by
            row.resolved_at = normalize_timestamp(resolved_at)
            row.resolution_notes = notes
            self.session.commit()
            self.session.refresh(row)

        return self._alert(row)

    def rollback(self) -> None:
        self.session.rollback()

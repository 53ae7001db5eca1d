"""
Actions Module
Detectors, alert materialization, reports and the periodic analysis pass
"""

from .alert_engine import (
    AlertCandidate,
    AlertEngine,
    InvalidAlertError,
    spike_subject,
    interaction_subject
)

from .spike_detector import (
    SpikeResult,
    SpikeDetector
)

from .interaction_detector import (
    InteractionScanResult,
    InteractionDetector,
    PrescriptionNotFoundError,
    UnitError
)

from .report_generator import ReportGenerator

from .orchestrator import (
    AnalysisRunResult,
    AnalyticsUnavailableError,
    PeriodicAnalysisOrchestrator
)


__all__ = [
    # Alert Engine
    "AlertCandidate",
    "AlertEngine",
    "InvalidAlertError",
    "spike_subject",
    "interaction_subject",

    # Spike Detector
    "SpikeResult",
    "SpikeDetector",

    # Interaction Detector
    "InteractionScanResult",
    "InteractionDetector",
    "PrescriptionNotFoundError",
    "UnitError",

    # Report Generator
    "ReportGenerator",

    # Orchestrator
    "AnalysisRunResult",
    "AnalyticsUnavailableError",
    "PeriodicAnalysisOrchestrator"
]

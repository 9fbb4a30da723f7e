"""
Data Models - enums and typed store records.
"""
from .enums import (
    ActionPriority,
    ActionStatus,
    ActionType,
    AlbuminuriaCategory,
    AlertSeverity,
    AlertSource,
    AlertStatus,
    ChangeType,
    DiagnosisState,
    GFRCategory,
    ObservationStatus,
    ObservationType,
    ProtocolStatus,
    RecommendationStatus,
    RecommendationType,
    RecommendationUrgency,
    RiskLevel,
)
from .records import (
    ActionRecommendation,
    DiagnosisEvent,
    DoctorAction,
    HealthStateRecord,
    LabObservation,
    MonitoringAlert,
    Patient,
    StateTransition,
    TreatmentProtocol,
)

__all__ = [
    "ActionPriority",
    "ActionStatus",
    "ActionType",
    "AlbuminuriaCategory",
    "AlertSeverity",
    "AlertSource",
    "AlertStatus",
    "ChangeType",
    "DiagnosisState",
    "GFRCategory",
    "ObservationStatus",
    "ObservationType",
    "ProtocolStatus",
    "RecommendationStatus",
    "RecommendationType",
    "RecommendationUrgency",
    "RiskLevel",
    "ActionRecommendation",
    "DiagnosisEvent",
    "DoctorAction",
    "HealthStateRecord",
    "LabObservation",
    "MonitoringAlert",
    "Patient",
    "StateTransition",
    "TreatmentProtocol",
]

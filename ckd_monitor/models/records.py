"""
Persisted Entity Records

Typed, immutable views of the rows held in the durable store. Every row read
by ``ckd_monitor.storage`` is validated into one of these models, so loosely
typed database values never leak into the engines.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

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


class Record(BaseModel):
    """Base for all store records: frozen, extra columns ignored."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Patient(Record):
    id: str
    medical_record_number: str
    first_name: str = ""
    last_name: str = ""
    date_of_birth: Optional[date] = None
    has_diabetes: bool = False
    has_hypertension: bool = False
    on_ras_inhibitor: bool = False
    on_sglt2i: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LabObservation(Record):
    id: str
    patient_id: str
    observation_type: ObservationType
    value: float
    observed_at: datetime
    status: ObservationStatus = ObservationStatus.FINAL


class HealthStateRecord(Record):
    """One classified lab snapshot. Immutable once written."""
    id: str
    patient_id: str
    cycle_number: int = Field(ge=0)
    measured_at: datetime
    egfr: float
    uacr: Optional[float] = None
    gfr_category: GFRCategory
    albuminuria_category: AlbuminuriaCategory
    health_state: str
    risk_level: RiskLevel
    ckd_stage_name: str
    created_at: Optional[datetime] = None


class StateTransition(Record):
    id: str
    patient_id: str
    from_record_id: str
    to_record_id: str
    cycle_number: int
    from_health_state: str
    to_health_state: str
    from_egfr: float
    to_egfr: float
    from_uacr: Optional[float] = None
    to_uacr: Optional[float] = None
    from_risk_level: RiskLevel
    to_risk_level: RiskLevel
    change_type: ChangeType
    crossed_critical_threshold: bool
    rapid_progression: bool = False
    risk_increased: bool = False
    egfr_percent_change: float = 0.0
    transition_date: datetime


class MonitoringAlert(Record):
    id: str
    patient_id: str
    transition_id: Optional[str] = None
    source: AlertSource
    alert_type: str
    severity: AlertSeverity
    priority: int
    title: str
    message: str
    reasons: List[str] = Field(default_factory=list)
    status: AlertStatus = AlertStatus.ACTIVE
    dedupe_key: str
    generated_at: datetime
    status_changed_at: Optional[datetime] = None
    status_changed_by: Optional[str] = None


class ActionRecommendation(Record):
    id: str
    patient_id: str
    transition_id: Optional[str] = None
    alert_id: Optional[str] = None
    recommendation_type: RecommendationType
    category: str
    title: str
    rationale: str
    urgency: RecommendationUrgency
    priority: int
    cycle_number: int
    based_on_health_state: str
    based_on_risk_level: RiskLevel
    action_items: Dict[str, Any] = Field(default_factory=dict)
    status: RecommendationStatus = RecommendationStatus.PENDING
    generated_at: datetime
    status_changed_at: Optional[datetime] = None
    status_changed_by: Optional[str] = None


class DiagnosisEvent(Record):
    id: str
    patient_id: str
    protocol_state: DiagnosisState
    detection_trigger: str
    first_abnormal_at: datetime
    first_abnormal_egfr: float
    first_abnormal_uacr: Optional[float] = None
    confirmation_due_at: datetime
    window_start_at: datetime
    window_end_at: datetime
    confirmatory_at: Optional[datetime] = None
    egfr_at_diagnosis: Optional[float] = None
    uacr_at_diagnosis: Optional[float] = None
    ckd_stage_at_diagnosis: Optional[str] = None
    gfr_category_at_diagnosis: Optional[GFRCategory] = None
    albuminuria_category_at_diagnosis: Optional[AlbuminuriaCategory] = None
    diagnosis_confirmed: bool = False
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    lapse_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class TreatmentProtocol(Record):
    id: str
    patient_id: str
    diagnosis_event_id: str
    protocol_name: str
    ckd_stage: str
    medication_orders: List[Dict[str, Any]] = Field(default_factory=list)
    lab_monitoring_schedule: List[Dict[str, Any]] = Field(default_factory=list)
    referrals: List[Dict[str, Any]] = Field(default_factory=list)
    lifestyle_modifications: List[str] = Field(default_factory=list)
    status: ProtocolStatus = ProtocolStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None
    created_at: datetime


class DoctorAction(Record):
    id: str
    patient_id: str
    action_type: ActionType
    priority: ActionPriority
    title: str
    description: str = ""
    reference_id: str
    diagnosis_event_id: Optional[str] = None
    treatment_protocol_id: Optional[str] = None
    clinical_summary: Dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus = ActionStatus.PENDING
    created_at: datetime
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    completion_notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ActionStatus.PENDING

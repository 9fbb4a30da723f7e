"""
CKD Monitoring Service

Request-layer facade over the monitoring core. Every operation takes plain
parameters (ids, strings, numbers, datetimes) so a web layer can call it
directly and translate ``CKDMonitorError.to_dict()`` into responses.
"""
from __future__ import annotations

import threading
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ckd_monitor.models import (
    ActionPriority,
    ActionRecommendation,
    ActionStatus,
    ActionType,
    AlertSeverity,
    AlertSource,
    AlertStatus,
    DiagnosisEvent,
    DoctorAction,
    HealthStateRecord,
    MonitoringAlert,
    Patient,
    RecommendationStatus,
    RecommendationUrgency,
    StateTransition,
    TreatmentProtocol,
)
from ckd_monitor.core.classification import KDIGOClassifier
from ckd_monitor.core.diagnosis import (
    CKDDiagnosisDetector,
    CompletionResult,
    DiagnosisOutcome,
    DoctorActionQueue,
)
from ckd_monitor.core.progression.monitor import ProgressionMonitor, ScanReport
from ckd_monitor.core.uacr import UACRAlert, UACRMonitoringService, UACRScanResults
from ckd_monitor.simulation import ProgressionProfile, SyntheticProgressionGenerator, SyntheticTrajectory
from ckd_monitor.storage import CKDStore
from ckd_monitor.utils import StateConflictError, ValidationError, get_logger, utcnow

logger = get_logger(__name__)

# Allowed status moves; terminal statuses have no entry.
ALERT_TRANSITIONS = {
    AlertStatus.ACTIVE: (AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.DISMISSED),
    AlertStatus.ACKNOWLEDGED: (AlertStatus.RESOLVED, AlertStatus.DISMISSED),
}

RECOMMENDATION_TRANSITIONS = {
    RecommendationStatus.PENDING: (
        RecommendationStatus.IN_PROGRESS,
        RecommendationStatus.COMPLETED,
        RecommendationStatus.DISMISSED,
    ),
    RecommendationStatus.IN_PROGRESS: (RecommendationStatus.COMPLETED, RecommendationStatus.DISMISSED),
}


def _enum(enum_cls, value, field_name: str):
    """Parse an optional plain value into ``enum_cls``."""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            field=field_name,
            value=value,
            details={"allowed": [m.value for m in enum_cls]},
        )


def _allowed_from(transitions: Dict, target) -> List:
    return [source for source, targets in transitions.items() if target in targets]


class CKDMonitoringService:
    """
    Facade used by the request layer.

    Usage:
        service = CKDMonitoringService()                 # settings.database_url
        patient = service.register_patient("MRN-001", "Ada", "Lovelace")
        service.record_lab_result(patient.id, measured_at, egfr=52, uacr=45)
        report = service.run_progression_scan()
    """

    def __init__(self, store: Optional[CKDStore] = None, seed: Optional[int] = None):
        self.store = store or CKDStore()
        self.classifier = KDIGOClassifier()
        self.action_queue = DoctorActionQueue(self.store)
        self.diagnosis_detector = CKDDiagnosisDetector(self.action_queue, classifier=self.classifier)
        self.monitor = ProgressionMonitor(
            self.store, classifier=self.classifier, diagnosis_detector=self.diagnosis_detector
        )
        self.uacr_service = UACRMonitoringService(self.store)
        self.seed = seed

    # ── Patients & labs ───────────────────────────────────────────────────────

    def register_patient(
        self,
        medical_record_number: str,
        first_name: str = "",
        last_name: str = "",
        date_of_birth: Optional[date] = None,
        has_diabetes: bool = False,
        has_hypertension: bool = False,
        on_ras_inhibitor: bool = False,
        on_sglt2i: bool = False,
    ) -> Patient:
        if not medical_record_number or not str(medical_record_number).strip():
            raise ValidationError(
                "medical_record_number is required", field="medical_record_number",
                value=medical_record_number,
            )
        with self.store.unit_of_work() as uow:
            patient = uow.add_patient(
                medical_record_number=str(medical_record_number).strip(),
                first_name=first_name,
                last_name=last_name,
                date_of_birth=date_of_birth,
                has_diabetes=has_diabetes,
                has_hypertension=has_hypertension,
                on_ras_inhibitor=on_ras_inhibitor,
                on_sglt2i=on_sglt2i,
            )
        logger.info(f"CKDMonitoringService: registered patient {patient.id}")
        return patient

    def get_patient(self, patient_id: str) -> Patient:
        with self.store.unit_of_work() as uow:
            return uow.get_patient(patient_id)

    def record_lab_result(
        self,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float] = None,
    ) -> HealthStateRecord:
        return self.monitor.record_lab_result(patient_id, measured_at, egfr, uacr)

    def initialize_baseline(self, patient_id: str) -> HealthStateRecord:
        return self.monitor.initialize_baseline(patient_id)

    def record_confirmatory_result(
        self,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float] = None,
    ) -> DiagnosisOutcome:
        """
        Record a result ordered as the confirmatory test and apply it to the
        patient's open diagnosis event straight away.

        The result also becomes the patient's next health-state record; the
        following progression scan re-reads it without changing the outcome.
        Both writes share one transaction.

        Raises:
            NotFoundError:      unknown patient
            StateConflictError: no diagnosis awaiting confirmation
            DataIntegrityError: not later than the patient's latest record
        """
        with self.store.unit_of_work() as uow:
            uow.get_patient(patient_id)
            outcome = self.diagnosis_detector.record_confirmatory_result(
                uow, patient_id, measured_at, egfr, uacr
            )
            self.monitor.add_lab_result(uow, patient_id, measured_at, egfr, uacr)
        return outcome

    # ── Scans ─────────────────────────────────────────────────────────────────

    def run_progression_scan(
        self,
        as_of: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanReport:
        return self.monitor.run_scan(as_of=as_of, cancel_event=cancel_event)

    def run_uacr_scan(self, as_of: Optional[datetime] = None) -> UACRScanResults:
        return self.uacr_service.scan(as_of=as_of)

    def analyze_uacr(self, patient_id: str, as_of: Optional[datetime] = None) -> Optional[UACRAlert]:
        return self.uacr_service.analyze_patient(patient_id, as_of=as_of)

    # ── History ───────────────────────────────────────────────────────────────

    def get_health_history(self, patient_id: str) -> List[HealthStateRecord]:
        with self.store.unit_of_work() as uow:
            uow.get_patient(patient_id)
            return uow.health_history(patient_id)

    def get_transitions(self, patient_id: str) -> List[StateTransition]:
        with self.store.unit_of_work() as uow:
            uow.get_patient(patient_id)
            return uow.list_transitions(patient_id)

    def get_diagnosis_history(self, patient_id: str) -> List[DiagnosisEvent]:
        with self.store.unit_of_work() as uow:
            uow.get_patient(patient_id)
            return uow.list_diagnosis_events(patient_id)

    def get_treatment_protocols(self, patient_id: str) -> List[TreatmentProtocol]:
        with self.store.unit_of_work() as uow:
            uow.get_patient(patient_id)
            return uow.list_protocols(patient_id)

    # ── Alerts ────────────────────────────────────────────────────────────────

    def list_alerts(
        self,
        patient_id: Optional[str] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        source: Optional[str] = None,
    ) -> List[MonitoringAlert]:
        with self.store.unit_of_work() as uow:
            return uow.list_alerts(
                patient_id=patient_id,
                status=_enum(AlertStatus, status, "status"),
                severity=_enum(AlertSeverity, severity, "severity"),
                source=_enum(AlertSource, source, "source"),
            )

    def update_alert_status(self, alert_id: str, status: str, actor: Optional[str] = None) -> MonitoringAlert:
        """
        Raises:
            ValidationError:    unknown status
            NotFoundError:      unknown alert
            StateConflictError: move not allowed from the current status
        """
        target = _enum(AlertStatus, status, "status")
        with self.store.unit_of_work() as uow:
            alert = uow.get_alert(alert_id)
            allowed = _allowed_from(ALERT_TRANSITIONS, target)
            if not uow.update_alert_status(alert_id, allowed, target, actor):
                raise StateConflictError(
                    f"Alert '{alert_id}' cannot move from {alert.status.value} to {target.value}",
                    entity="MonitoringAlert", entity_id=alert_id,
                    expected=[s.value for s in allowed], actual=alert.status.value,
                )
            return uow.get_alert(alert_id)

    # ── Recommendations ───────────────────────────────────────────────────────

    def list_recommendations(
        self,
        patient_id: Optional[str] = None,
        status: Optional[str] = None,
        urgency: Optional[str] = None,
    ) -> List[ActionRecommendation]:
        with self.store.unit_of_work() as uow:
            return uow.list_recommendations(
                patient_id=patient_id,
                status=_enum(RecommendationStatus, status, "status"),
                urgency=_enum(RecommendationUrgency, urgency, "urgency"),
            )

    def update_recommendation_status(
        self, recommendation_id: str, status: str, actor: Optional[str] = None
    ) -> ActionRecommendation:
        target = _enum(RecommendationStatus, status, "status")
        with self.store.unit_of_work() as uow:
            rec = uow.get_recommendation(recommendation_id)
            allowed = _allowed_from(RECOMMENDATION_TRANSITIONS, target)
            if not uow.update_recommendation_status(recommendation_id, allowed, target, actor):
                raise StateConflictError(
                    f"Recommendation '{recommendation_id}' cannot move from "
                    f"{rec.status.value} to {target.value}",
                    entity="ActionRecommendation", entity_id=recommendation_id,
                    expected=[s.value for s in allowed], actual=rec.status.value,
                )
            return uow.get_recommendation(recommendation_id)

    # ── Doctor actions ────────────────────────────────────────────────────────

    def list_doctor_actions(
        self,
        action_type: Optional[str] = None,
        priority: Optional[str] = None,
        status: Optional[str] = "pending",
        patient_id: Optional[str] = None,
    ) -> List[DoctorAction]:
        return self.action_queue.list(
            action_type=_enum(ActionType, action_type, "action_type"),
            priority=_enum(ActionPriority, priority, "priority"),
            status=_enum(ActionStatus, status, "status"),
            patient_id=patient_id,
        )

    def get_doctor_action(self, action_id: str) -> DoctorAction:
        return self.action_queue.get(action_id)

    def complete_doctor_action(
        self,
        action_id: str,
        actor: str,
        notes: Optional[str] = None,
        approved: bool = True,
    ) -> CompletionResult:
        return self.action_queue.complete(action_id, actor=actor, notes=notes, approved=approved)

    # ── Synthetic demo data ───────────────────────────────────────────────────

    def generate_synthetic_trajectory(
        self,
        baseline_egfr: float,
        baseline_uacr: Optional[float] = None,
        cycles: int = 12,
        profile: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> SyntheticTrajectory:
        """Demo trajectory; nothing is persisted."""
        generator = SyntheticProgressionGenerator(seed=self.seed if seed is None else seed)
        return generator.generate(
            baseline_egfr,
            baseline_uacr,
            cycles=cycles,
            profile=_enum(ProgressionProfile, profile, "profile"),
        )

    # ── Summary ───────────────────────────────────────────────────────────────

    def dashboard_summary(self) -> Dict[str, Any]:
        """Counts of open work items, for a landing page."""
        with self.store.unit_of_work() as uow:
            active = uow.list_alerts(status=AlertStatus.ACTIVE)
            pending_recs = uow.list_recommendations(status=RecommendationStatus.PENDING)
            pending_actions = uow.list_actions(status=ActionStatus.PENDING)
        return {
            "generated_at": utcnow().isoformat(),
            "active_alerts": len(active),
            "critical_alerts": sum(1 for a in active if a.severity == AlertSeverity.CRITICAL),
            "pending_recommendations": len(pending_recs),
            "pending_doctor_actions": len(pending_actions),
            "pending_by_type": {
                t.value: sum(1 for a in pending_actions if a.action_type == t) for t in ActionType
            },
        }

"""
CKD Diagnosis Detector

Runs the KDIGO confirmation protocol for each patient. CKD is only flagged
for a doctor once an abnormal result is reproduced roughly three months
later:

    abnormal result   eGFR < 60 mL/min/1.73m²  OR  uACR > 30 mg/g

    normal ──abnormal──▶ abnormal_pending ──▶ confirmation_due
                                                 │
        result before day 76 ........ ignored ───┤
        abnormal, day 76–104 ........ confirmed ─┼──▶ confirm_diagnosis action
        normal,   day 76–104 ........ lapsed ────┤
        any result after day 104 .... lapsed ────┘   (abnormal reopens)

Window bounds are inclusive. A lapsed event returns the patient to normal.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ckd_monitor.config import settings
from ckd_monitor.models import (
    ActionPriority,
    ActionType,
    DiagnosisEvent,
    DiagnosisState,
    DoctorAction,
)
from ckd_monitor.core.classification import KDIGOClassifier
from ckd_monitor.core.classification.kdigo import EGFR_G2, UACR_A2, validate_egfr, validate_uacr
from ckd_monitor.storage import StoreSession
from ckd_monitor.utils import StateConflictError, get_logger
from .action_queue import DoctorActionQueue

logger = get_logger(__name__)

ABNORMAL_EGFR_BELOW = EGFR_G2      # 60
ABNORMAL_UACR_ABOVE = UACR_A2      # 30
EGFR_CRITICAL = 30


def is_abnormal(egfr: float, uacr: Optional[float] = None) -> bool:
    return egfr < ABNORMAL_EGFR_BELOW or (uacr is not None and uacr > ABNORMAL_UACR_ABOVE)


def detection_trigger(egfr: float, uacr: Optional[float] = None) -> str:
    triggers = []
    if egfr < ABNORMAL_EGFR_BELOW:
        triggers.append("egfr_below_60")
    if uacr is not None and uacr > ABNORMAL_UACR_ABOVE:
        triggers.append("uacr_above_30")
    return "_and_".join(triggers)


@dataclass
class DiagnosisOutcome:
    """What one lab result did to the patient's confirmation protocol."""
    patient_id: str
    state: DiagnosisState
    opened: Optional[DiagnosisEvent] = None
    confirmed: Optional[DiagnosisEvent] = None
    lapsed: Optional[DiagnosisEvent] = None
    action: Optional[DoctorAction] = None

    @property
    def changed(self) -> bool:
        return any((self.opened, self.confirmed, self.lapsed))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "state": self.state.value,
            "opened": self.opened.to_dict() if self.opened else None,
            "confirmed": self.confirmed.to_dict() if self.confirmed else None,
            "lapsed": self.lapsed.to_dict() if self.lapsed else None,
            "action": self.action.to_dict() if self.action else None,
        }


class CKDDiagnosisDetector:
    """
    Per-patient confirmation state machine.

    Every method joins the caller's unit of work; the detector holds no
    per-patient state of its own.
    """

    def __init__(
        self,
        action_queue: DoctorActionQueue,
        classifier: KDIGOClassifier = None,
        target_days: Optional[int] = None,
        tolerance_days: Optional[int] = None,
    ):
        self.action_queue = action_queue
        self.classifier = classifier or KDIGOClassifier()
        self.target_days = settings.confirmation_target_days if target_days is None else target_days
        tolerance = settings.confirmation_tolerance_days if tolerance_days is None else tolerance_days
        self.window_start_days = self.target_days - tolerance
        self.window_end_days = self.target_days + tolerance

    # ── Public API ────────────────────────────────────────────────────────────

    def process_result(
        self,
        uow: StoreSession,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float] = None,
    ) -> DiagnosisOutcome:
        """
        Feed one lab result (in measurement order) through the protocol.

        Raises:
            ValidationError: invalid eGFR or uACR
        """
        egfr = validate_egfr(egfr)
        uacr = validate_uacr(uacr)
        abnormal = is_abnormal(egfr, uacr)
        event = uow.open_diagnosis_event(patient_id)

        if event is None and uow.confirmed_diagnosis_event(patient_id) is not None:
            # Diagnosed patients are followed by the progression pipeline.
            return DiagnosisOutcome(patient_id=patient_id, state=DiagnosisState.CONFIRMED)

        if event is None:
            if not abnormal:
                return DiagnosisOutcome(patient_id=patient_id, state=DiagnosisState.NORMAL)
            opened = self._open_event(uow, patient_id, measured_at, egfr, uacr)
            return DiagnosisOutcome(
                patient_id=patient_id, state=opened.protocol_state, opened=opened
            )

        if measured_at < event.window_start_at:
            logger.debug(
                f"CKDDiagnosisDetector [{patient_id}]: result at {measured_at.date()} "
                f"precedes confirmation window ({event.window_start_at.date()}), ignored"
            )
            return DiagnosisOutcome(patient_id=patient_id, state=event.protocol_state)

        if measured_at <= event.window_end_at:
            if abnormal:
                return self._confirm(uow, event, measured_at, egfr, uacr)
            lapsed = self._lapse(uow, event, "normal confirmatory result")
            return DiagnosisOutcome(patient_id=patient_id, state=DiagnosisState.NORMAL, lapsed=lapsed)

        lapsed = self._lapse(uow, event, "confirmation window missed")
        if not abnormal:
            return DiagnosisOutcome(patient_id=patient_id, state=DiagnosisState.NORMAL, lapsed=lapsed)
        opened = self._open_event(uow, patient_id, measured_at, egfr, uacr)
        return DiagnosisOutcome(
            patient_id=patient_id, state=opened.protocol_state, opened=opened, lapsed=lapsed
        )

    def record_confirmatory_result(
        self,
        uow: StoreSession,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float] = None,
    ) -> DiagnosisOutcome:
        """
        Apply a result explicitly ordered as the confirmatory test.

        Raises:
            StateConflictError: the patient has no event awaiting confirmation
        """
        event = uow.open_diagnosis_event(patient_id)
        if event is None or event.protocol_state != DiagnosisState.CONFIRMATION_DUE:
            raise StateConflictError(
                f"Patient '{patient_id}' has no diagnosis awaiting confirmation",
                entity="Patient",
                entity_id=patient_id,
                expected=DiagnosisState.CONFIRMATION_DUE.value,
                actual=DiagnosisState.NORMAL.value if event is None else event.protocol_state.value,
            )
        return self.process_result(uow, patient_id, measured_at, egfr, uacr)

    def sweep_lapsed(self, uow: StoreSession, as_of: datetime) -> List[DiagnosisEvent]:
        """Lapse every open event whose window closed before ``as_of``."""
        lapsed = []
        for event in uow.expired_diagnosis_events(as_of):
            result = self._lapse(uow, event, "confirmation window missed")
            if result is not None:
                lapsed.append(result)
        if lapsed:
            logger.info(f"CKDDiagnosisDetector: lapsed {len(lapsed)} expired confirmation window(s)")
        return lapsed

    # ── Transitions ───────────────────────────────────────────────────────────

    def _open_event(
        self,
        uow: StoreSession,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float],
    ) -> DiagnosisEvent:
        logger.info(
            f"CKDDiagnosisDetector [{patient_id}]: {DiagnosisState.ABNORMAL_PENDING.value} "
            f"(eGFR {egfr:.1f}, uACR {'n/a' if uacr is None else f'{uacr:.1f}'})"
        )
        event = uow.add_diagnosis_event({
            "patient_id": patient_id,
            "protocol_state": DiagnosisState.CONFIRMATION_DUE,
            "detection_trigger": detection_trigger(egfr, uacr),
            "first_abnormal_at": measured_at,
            "first_abnormal_egfr": egfr,
            "first_abnormal_uacr": uacr,
            "confirmation_due_at": measured_at + timedelta(days=self.target_days),
            "window_start_at": measured_at + timedelta(days=self.window_start_days),
            "window_end_at": measured_at + timedelta(days=self.window_end_days),
            "diagnosis_confirmed": False,
        })
        logger.info(
            f"CKDDiagnosisDetector [{patient_id}]: confirmation due "
            f"{event.confirmation_due_at.date()} (window {event.window_start_at.date()}"
            f" – {event.window_end_at.date()})"
        )
        return event

    def _confirm(
        self,
        uow: StoreSession,
        event: DiagnosisEvent,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float],
    ) -> DiagnosisOutcome:
        classification = self.classifier.classify(egfr, uacr)
        updated = uow.update_diagnosis_event(
            event.id,
            {"protocol_state": DiagnosisState.CONFIRMATION_DUE},
            {
                "protocol_state": DiagnosisState.CONFIRMED,
                "confirmatory_at": measured_at,
                "egfr_at_diagnosis": egfr,
                "uacr_at_diagnosis": uacr,
                "ckd_stage_at_diagnosis": classification.ckd_stage_name,
                "gfr_category_at_diagnosis": classification.gfr_category,
                "albuminuria_category_at_diagnosis": classification.albuminuria_category,
            },
        )
        if not updated:
            raise StateConflictError(
                f"Diagnosis event '{event.id}' left confirmation_due concurrently",
                entity="DiagnosisEvent",
                entity_id=event.id,
                expected=DiagnosisState.CONFIRMATION_DUE.value,
                actual=uow.get_diagnosis_event(event.id).protocol_state.value,
            )
        confirmed = uow.get_diagnosis_event(event.id)
        days_apart = (measured_at - event.first_abnormal_at).days
        patient = uow.get_patient(event.patient_id)

        action = self.action_queue.enqueue(
            patient_id=event.patient_id,
            action_type=ActionType.CONFIRM_DIAGNOSIS,
            reference_id=event.id,
            title=f"Confirm CKD Diagnosis: {patient.full_name or patient.id} ({classification.ckd_stage_name})",
            description=(
                f"Two abnormal results {days_apart} days apart meet the KDIGO chronicity "
                f"criterion. Review and confirm the diagnosis."
            ),
            priority=ActionPriority.CRITICAL if egfr < EGFR_CRITICAL else ActionPriority.HIGH,
            clinical_summary={
                "medical_record_number": patient.medical_record_number,
                "detection_trigger": event.detection_trigger,
                "first_abnormal": {
                    "date": event.first_abnormal_at.isoformat(),
                    "egfr": event.first_abnormal_egfr,
                    "uacr": event.first_abnormal_uacr,
                },
                "confirmatory": {
                    "date": measured_at.isoformat(),
                    "egfr": egfr,
                    "uacr": uacr,
                },
                "days_apart": days_apart,
                "classification": classification.to_dict(),
                "comorbidities": {
                    "diabetes": patient.has_diabetes,
                    "hypertension": patient.has_hypertension,
                },
            },
            diagnosis_event_id=event.id,
            uow=uow,
        )
        logger.info(
            f"CKDDiagnosisDetector [{event.patient_id}]: confirmed "
            f"{classification.ckd_stage_name} after {days_apart} days"
        )
        return DiagnosisOutcome(
            patient_id=event.patient_id,
            state=DiagnosisState.CONFIRMED,
            confirmed=confirmed,
            action=action,
        )

    @staticmethod
    def _lapse(uow: StoreSession, event: DiagnosisEvent, reason: str) -> Optional[DiagnosisEvent]:
        updated = uow.update_diagnosis_event(
            event.id,
            {"protocol_state": (DiagnosisState.ABNORMAL_PENDING, DiagnosisState.CONFIRMATION_DUE)},
            {"protocol_state": DiagnosisState.LAPSED, "lapse_reason": reason},
        )
        if not updated:
            return None
        logger.info(f"CKDDiagnosisDetector [{event.patient_id}]: event {event.id} lapsed ({reason})")
        return uow.get_diagnosis_event(event.id)

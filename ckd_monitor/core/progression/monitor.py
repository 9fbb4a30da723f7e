"""
Progression Monitor

Owns the health-state history and the population scan.

Each patient with unprocessed records is handled as one atomic unit of
work on a bounded thread pool:

    1. fetch the two most recent HealthStateRecords
    2. classify the newest (KDIGOClassifier)
    3. detect the transition (StateTransitionDetector), persist if non-stable
    4. AlertEngine → MonitoringAlert, RecommendationEngine → ActionRecommendations
    5. feed every unprocessed record to the CKDDiagnosisDetector
    6. advance the patient's monitoring cursor

Transient storage failures are retried with backoff; a patient that keeps
failing is logged, reported and skipped without affecting the others.
Re-running a scan with no new records changes nothing.
"""
from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ckd_monitor.config import settings
from ckd_monitor.models import (
    ChangeType,
    HealthStateRecord,
    ObservationStatus,
    ObservationType,
    StateTransition,
)
from ckd_monitor.core.alerts import AlertEngine, RecommendationEngine
from ckd_monitor.core.classification import KDIGOClassification, KDIGOClassifier
from ckd_monitor.core.diagnosis import CKDDiagnosisDetector, DoctorActionQueue
from ckd_monitor.storage import CKDStore, StoreSession
from ckd_monitor.utils import (
    DataIntegrityError,
    ValidationError,
    get_logger,
    retry_transient,
    utcnow,
)
from .transitions import StateTransitionDetector, TransitionAssessment

logger = get_logger(__name__)


@dataclass
class PatientScanResult:
    """What one patient unit of work wrote."""
    patient_id: str
    records_processed: int = 0
    transition: Optional[StateTransition] = None
    alert_created: bool = False
    recommendations_created: int = 0
    diagnosis_events_opened: int = 0
    diagnoses_detected: int = 0
    lapsed: int = 0


@dataclass
class ScanReport:
    started_at: datetime
    as_of: datetime
    finished_at: Optional[datetime] = None
    patients_considered: int = 0
    processed: int = 0
    skipped: int = 0
    failed: List[Dict[str, str]] = field(default_factory=list)
    transitions_created: int = 0
    alerts_created: int = 0
    recommendations_created: int = 0
    diagnosis_events_opened: int = 0
    diagnoses_detected: int = 0
    lapsed: int = 0
    cancelled: bool = False

    def add(self, result: PatientScanResult) -> None:
        self.processed += 1
        self.transitions_created += 1 if result.transition is not None else 0
        self.alerts_created += 1 if result.alert_created else 0
        self.recommendations_created += result.recommendations_created
        self.diagnosis_events_opened += result.diagnosis_events_opened
        self.diagnoses_detected += result.diagnoses_detected
        self.lapsed += result.lapsed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "as_of": self.as_of.isoformat(),
            "patients_considered": self.patients_considered,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": list(self.failed),
            "transitions_created": self.transitions_created,
            "alerts_created": self.alerts_created,
            "recommendations_created": self.recommendations_created,
            "diagnosis_events_opened": self.diagnosis_events_opened,
            "diagnoses_detected": self.diagnoses_detected,
            "lapsed": self.lapsed,
            "cancelled": self.cancelled,
        }


def _record_values(
    patient_id: str, cycle_number: int, measured_at: datetime, c: KDIGOClassification
) -> Dict[str, Any]:
    return {
        "patient_id": patient_id,
        "cycle_number": cycle_number,
        "measured_at": measured_at,
        "egfr": c.egfr,
        "uacr": c.uacr,
        "gfr_category": c.gfr_category,
        "albuminuria_category": c.albuminuria_category,
        "health_state": c.health_state,
        "risk_level": c.risk_level,
        "ckd_stage_name": c.ckd_stage_name,
    }


def _transition_values(a: TransitionAssessment) -> Dict[str, Any]:
    prev, curr = a.previous, a.current
    return {
        "patient_id": curr.patient_id,
        "from_record_id": prev.id,
        "to_record_id": curr.id,
        "cycle_number": curr.cycle_number,
        "from_health_state": prev.health_state,
        "to_health_state": curr.health_state,
        "from_egfr": prev.egfr,
        "to_egfr": curr.egfr,
        "from_uacr": prev.uacr,
        "to_uacr": curr.uacr,
        "from_risk_level": prev.risk_level,
        "to_risk_level": curr.risk_level,
        "change_type": a.change_type,
        "crossed_critical_threshold": a.crossed_critical_threshold,
        "rapid_progression": a.rapid_progression,
        "risk_increased": a.risk_increased,
        "egfr_percent_change": a.egfr_percent_change,
        "transition_date": curr.measured_at,
    }


class ProgressionMonitor:
    """
    Records lab results and runs the progression scan.

    Args:
        store:       durable store
        max_workers: worker pool size (default: settings.scan_max_workers)
        max_retries: retries per patient on TransientStorageError
        backoff:     sleep before each retry, last value reused
    """

    def __init__(
        self,
        store: CKDStore,
        classifier: KDIGOClassifier = None,
        detector: StateTransitionDetector = None,
        alert_engine: AlertEngine = None,
        recommendation_engine: RecommendationEngine = None,
        diagnosis_detector: CKDDiagnosisDetector = None,
        max_workers: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[tuple] = None,
    ):
        self.store = store
        self.classifier = classifier or KDIGOClassifier()
        self.detector = detector or StateTransitionDetector()
        self.alert_engine = alert_engine or AlertEngine()
        self.recommendation_engine = recommendation_engine or RecommendationEngine()
        self.diagnosis_detector = diagnosis_detector or CKDDiagnosisDetector(
            DoctorActionQueue(store), classifier=self.classifier
        )
        self.max_workers = max(1, max_workers or settings.scan_max_workers)
        self.max_retries = settings.scan_max_retries if max_retries is None else max_retries
        self.backoff = tuple(settings.retry_backoff_seconds if backoff is None else backoff)

    # ── Health-state history ──────────────────────────────────────────────────

    def record_lab_result(
        self,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float] = None,
        status: ObservationStatus = ObservationStatus.FINAL,
    ) -> HealthStateRecord:
        """
        Store the lab observations and the classified HealthStateRecord
        (next cycle number).

        Raises:
            ValidationError:    invalid eGFR/uACR
            NotFoundError:      unknown patient
            DataIntegrityError: not later than the patient's latest record
        """
        with self.store.unit_of_work() as uow:
            record = self.add_lab_result(uow, patient_id, measured_at, egfr, uacr, status)

        logger.info(
            f"ProgressionMonitor [{patient_id}]: cycle {record.cycle_number} "
            f"{record.health_state} ({record.risk_level.value} risk)"
        )
        return record

    def add_lab_result(
        self,
        uow: StoreSession,
        patient_id: str,
        measured_at: datetime,
        egfr: float,
        uacr: Optional[float] = None,
        status: ObservationStatus = ObservationStatus.FINAL,
    ) -> HealthStateRecord:
        """Same as record_lab_result, inside the caller's unit of work."""
        classification = self.classifier.classify(egfr, uacr)
        uow.get_patient(patient_id)
        latest = uow.latest_health_states(patient_id, limit=1)
        if latest and measured_at <= latest[0].measured_at:
            raise DataIntegrityError(
                "Lab result is not later than the latest health-state record",
                details={
                    "patient_id": patient_id,
                    "measured_at": measured_at.isoformat(),
                    "latest_record_id": latest[0].id,
                    "latest_measured_at": latest[0].measured_at.isoformat(),
                },
            )
        uow.add_observation(patient_id, ObservationType.EGFR, classification.egfr, measured_at, status)
        if classification.uacr is not None:
            uow.add_observation(
                patient_id, ObservationType.UACR, classification.uacr, measured_at, status
            )
        cycle = latest[0].cycle_number + 1 if latest else 0
        return uow.add_health_state(_record_values(patient_id, cycle, measured_at, classification))

    def initialize_baseline(self, patient_id: str) -> HealthStateRecord:
        """
        Create cycle 0 from the latest lab observations, or return the
        existing baseline.

        Raises:
            NotFoundError:   unknown patient
            ValidationError: no eGFR observation on file
        """
        with self.store.unit_of_work() as uow:
            uow.get_patient(patient_id)
            existing = uow.get_health_state(patient_id, 0)
            if existing is not None:
                return existing

            egfr_obs = uow.latest_observation(patient_id, ObservationType.EGFR)
            if egfr_obs is None:
                raise ValidationError(
                    "Cannot initialize baseline without an eGFR observation",
                    field="egfr", value=None, details={"patient_id": patient_id},
                )
            uacr_obs = uow.latest_observation(patient_id, ObservationType.UACR)
            classification = self.classifier.classify(
                egfr_obs.value, uacr_obs.value if uacr_obs else None
            )
            record = uow.add_health_state(
                _record_values(patient_id, 0, egfr_obs.observed_at, classification)
            )

        logger.info(f"ProgressionMonitor [{patient_id}]: baseline {record.health_state}")
        return record

    # ── Population scan ───────────────────────────────────────────────────────

    def run_scan(
        self,
        as_of: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScanReport:
        """
        Process every patient with records beyond their monitoring cursor,
        then lapse confirmation windows that closed before ``as_of``.
        """
        as_of = as_of or utcnow()
        report = ScanReport(started_at=utcnow(), as_of=as_of)

        with self.store.unit_of_work() as uow:
            pending = uow.patients_pending_scan()
        report.patients_considered = len(pending)
        logger.info(
            f"ProgressionMonitor: scanning {len(pending)} patients "
            f"({self.max_workers} workers)"
        )

        queue = list(reversed(pending))
        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ckd-scan") as pool:
            while queue or in_flight:
                while queue and len(in_flight) < self.max_workers:
                    if cancel_event is not None and cancel_event.is_set():
                        report.cancelled = True
                        report.skipped = len(queue)
                        queue.clear()
                        break
                    patient_id = queue.pop()
                    in_flight[pool.submit(self._process_with_retry, patient_id)] = patient_id
                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    patient_id = in_flight.pop(future)
                    try:
                        report.add(future.result())
                    except Exception as e:
                        logger.error(f"ProgressionMonitor [{patient_id}]: skipped after error: {e}")
                        report.failed.append({
                            "patient_id": patient_id,
                            "error": getattr(e, "code", type(e).__name__),
                            "message": str(e),
                        })

        with self.store.unit_of_work() as uow:
            report.lapsed += len(self.diagnosis_detector.sweep_lapsed(uow, as_of))

        report.finished_at = utcnow()
        logger.info(
            f"ProgressionMonitor: processed {report.processed}, failed {len(report.failed)}, "
            f"transitions {report.transitions_created}, alerts {report.alerts_created}, "
            f"recommendations {report.recommendations_created}"
            f"{' (cancelled)' if report.cancelled else ''}"
        )
        return report

    def _process_with_retry(self, patient_id: str) -> PatientScanResult:
        return retry_transient(
            lambda: self.process_patient(patient_id),
            self.max_retries,
            self.backoff,
            f"ProgressionMonitor [{patient_id}]",
        )

    def process_patient(self, patient_id: str) -> PatientScanResult:
        """One patient's scan step as a single transaction."""
        result = PatientScanResult(patient_id=patient_id)
        with self.store.unit_of_work() as uow:
            new_records = uow.health_history(patient_id, after_cycle=uow.get_cursor(patient_id))
            if not new_records:
                return result
            result.records_processed = len(new_records)

            recent = uow.latest_health_states(patient_id, limit=2)
            current = recent[0]
            patient = uow.get_patient(patient_id)
            classification = self.classifier.classify(current.egfr, current.uacr)

            if len(recent) == 2:
                self._handle_transition(uow, result, recent[1], current, classification, patient)

            for record in new_records:
                outcome = self.diagnosis_detector.process_result(
                    uow, patient_id, record.measured_at, record.egfr, record.uacr
                )
                result.diagnosis_events_opened += 1 if outcome.opened else 0
                result.diagnoses_detected += 1 if outcome.confirmed else 0
                result.lapsed += 1 if outcome.lapsed else 0

            uow.set_cursor(patient_id, current.cycle_number, current.id)
        return result

    def _handle_transition(
        self,
        uow: StoreSession,
        result: PatientScanResult,
        previous: HealthStateRecord,
        current: HealthStateRecord,
        classification: KDIGOClassification,
        patient,
    ) -> None:
        assessment = self.detector.detect(previous, current)
        if assessment is None:
            return

        if uow.find_transition(previous.id, current.id) is not None:
            return
        transition = uow.add_transition(_transition_values(assessment))
        result.transition = transition

        alert_id = None
        candidate = self.alert_engine.evaluate(assessment, patient)
        if candidate is not None:
            dedupe_key = f"transition:{transition.id}"
            alert = uow.find_alert_by_key(dedupe_key)
            if alert is None:
                alert = uow.add_alert({
                    "patient_id": patient.id,
                    "transition_id": transition.id,
                    "source": "progression",
                    "dedupe_key": dedupe_key,
                    **candidate.to_dict(),
                })
                result.alert_created = True
            alert_id = alert.id

        if assessment.change_type != ChangeType.WORSENED:
            return
        for rec in self.recommendation_engine.evaluate(classification, assessment, patient):
            if uow.find_recommendation(patient.id, rec.recommendation_type, current.cycle_number):
                continue
            uow.add_recommendation({
                "patient_id": patient.id,
                "transition_id": transition.id,
                "alert_id": alert_id,
                "cycle_number": current.cycle_number,
                "based_on_health_state": current.health_state,
                "based_on_risk_level": current.risk_level,
                **rec.to_dict(),
            })
            result.recommendations_created += 1

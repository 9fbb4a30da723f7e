"""
uACR Monitoring Service

Tracks the urine albumin-to-creatinine ratio independently of the KDIGO
progression pipeline and raises alerts when albuminuria is rising.

Baseline: earliest final uACR inside the lookback window (default 365 days
before the latest reading), excluding the latest itself; when the window
holds no other reading, the last final reading before it.

Severity (latest must be above baseline):
    CRITICAL  ≥100% increase, or latest > 300 mg/g
    HIGH      ≥50% increase with baseline already ≥30 mg/g
    MODERATE  ≥20% increase

Persisted alert severity:  CRITICAL → critical | HIGH → warning | MODERATE → info

SGLT2 inhibitor eligibility (empagliflozin, EMPA-KIDNEY criteria):
    eGFR ≥ 20 and either diabetic CKD stage ≥2, or non-diabetic stage ≥3
    with uACR ≥ 200 mg/g
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ckd_monitor.config import settings
from ckd_monitor.models import (
    AlertSeverity,
    AlertSource,
    LabObservation,
    ObservationStatus,
    ObservationType,
    Patient,
)
from ckd_monitor.core.classification.kdigo import (
    SGLT2I_MIN_EGFR,
    UACR_A3,
    classify_albuminuria,
)
from ckd_monitor.storage import CKDStore, StoreSession
from ckd_monitor.utils import get_logger, retry_transient, utcnow

logger = get_logger(__name__)

USABLE_STATUSES = (ObservationStatus.FINAL, ObservationStatus.AMENDED)

# ── Thresholds ────────────────────────────────────────────────────────────────

CRITICAL_INCREASE_PCT = 100.0
HIGH_INCREASE_PCT = 50.0
MODERATE_INCREASE_PCT = 20.0
HIGH_MIN_BASELINE = 30.0
SGLT2I_NONDIABETIC_MIN_UACR = 200.0


class UACRSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH     = "HIGH"
    MODERATE = "MODERATE"


class TreatmentRecommendation(str, Enum):
    CONTINUE_MONITORING = "continue_monitoring"
    CONSIDER_TREATMENT  = "consider_treatment"
    STRONGLY_RECOMMEND  = "strongly_recommend"
    URGENT_TREATMENT    = "urgent_treatment"


_ALERT_SEVERITY = {
    UACRSeverity.CRITICAL: AlertSeverity.CRITICAL,
    UACRSeverity.HIGH: AlertSeverity.WARNING,
    UACRSeverity.MODERATE: AlertSeverity.INFO,
}

_ALERT_PRIORITY = {
    UACRSeverity.CRITICAL: 1,
    UACRSeverity.HIGH: 2,
    UACRSeverity.MODERATE: 3,
}


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class UACRAnalysis:
    patient_id: str
    latest_value: float
    latest_at: datetime
    latest_observation_id: str
    baseline_value: float
    baseline_at: datetime
    baseline_observation_id: str
    percent_change: Optional[float]     # None when the baseline is zero
    days_between: int
    severity: Optional[UACRSeverity]

    @property
    def is_worsening(self) -> bool:
        return self.severity is not None

    @property
    def latest_category(self) -> str:
        return classify_albuminuria(self.latest_value).value

    @property
    def baseline_category(self) -> str:
        return classify_albuminuria(self.baseline_value).value

    def change_text(self) -> str:
        if self.percent_change is None:
            return "new albuminuria"
        return f"{self.percent_change:+.1f}%"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "latest_value": self.latest_value,
            "latest_at": self.latest_at.isoformat(),
            "latest_category": self.latest_category,
            "baseline_value": self.baseline_value,
            "baseline_at": self.baseline_at.isoformat(),
            "baseline_category": self.baseline_category,
            "percent_change": self.percent_change,
            "days_between": self.days_between,
            "severity": self.severity.value if self.severity else None,
        }


@dataclass
class TreatmentContext:
    on_treatment: bool
    medications: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"on_treatment": self.on_treatment, "medications": list(self.medications)}


@dataclass
class SGLT2iEligibility:
    eligible: bool
    recommendation: TreatmentRecommendation
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "recommendation": self.recommendation.value,
            "rationale": self.rationale,
        }


@dataclass
class UACRAlert:
    """Worsening-albuminuria alert for one patient (not yet persisted)."""
    patient_id: str
    patient_name: str
    medical_record_number: str
    severity: UACRSeverity
    alert_type: str
    message: str
    analysis: UACRAnalysis
    treatment: TreatmentContext
    eligibility: Optional[SGLT2iEligibility]
    recommended_actions: List[str]
    clinical_rationale: str

    @property
    def dedupe_key(self) -> str:
        return f"uacr:{self.patient_id}:{self.analysis.latest_observation_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "patient_name": self.patient_name,
            "medical_record_number": self.medical_record_number,
            "severity": self.severity.value,
            "alert_type": self.alert_type,
            "message": self.message,
            "analysis": self.analysis.to_dict(),
            "treatment": self.treatment.to_dict(),
            "eligibility": self.eligibility.to_dict() if self.eligibility else None,
            "recommended_actions": list(self.recommended_actions),
            "clinical_rationale": self.clinical_rationale,
        }


@dataclass
class UACRScanResults:
    scan_date: datetime
    total_patients_scanned: int = 0
    alerts: List[UACRAlert] = field(default_factory=list)
    alerts_created: int = 0
    failed: List[Dict[str, str]] = field(default_factory=list)

    @property
    def patients_with_worsening(self) -> int:
        return len(self.alerts)

    @property
    def worsening_percentage(self) -> float:
        if not self.total_patients_scanned:
            return 0.0
        return round(self.patients_with_worsening / self.total_patients_scanned * 100, 1)

    @property
    def severity_distribution(self) -> Dict[str, int]:
        counts = Counter(a.severity for a in self.alerts)
        return {s.value: counts.get(s, 0) for s in UACRSeverity}

    @property
    def alert_type_frequency(self) -> Dict[str, int]:
        return dict(Counter(a.alert_type for a in self.alerts))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_date": self.scan_date.isoformat(),
            "total_patients_scanned": self.total_patients_scanned,
            "patients_with_worsening": self.patients_with_worsening,
            "worsening_percentage": self.worsening_percentage,
            "alerts_created": self.alerts_created,
            "severity_distribution": self.severity_distribution,
            "alert_type_frequency": self.alert_type_frequency,
            "failed": list(self.failed),
            "alerts": [a.to_dict() for a in self.alerts],
        }


# ── Pure rules ────────────────────────────────────────────────────────────────

def classify_increase(baseline: float, latest: float) -> Optional[UACRSeverity]:
    """Severity of a uACR rise, or None when it is not a worsening."""
    if latest <= baseline:
        return None
    pct = math.inf if baseline <= 0 else (latest - baseline) / baseline * 100
    if pct >= CRITICAL_INCREASE_PCT or latest > UACR_A3:
        return UACRSeverity.CRITICAL
    if pct >= HIGH_INCREASE_PCT and baseline >= HIGH_MIN_BASELINE:
        return UACRSeverity.HIGH
    if pct >= MODERATE_INCREASE_PCT:
        return UACRSeverity.MODERATE
    return None


def select_baseline(readings: List[LabObservation], lookback_days: int) -> Optional[LabObservation]:
    """
    Pick the comparison reading from ``readings`` (oldest first, latest last).
    """
    if len(readings) < 2:
        return None
    latest, earlier = readings[-1], readings[:-1]
    window_start = latest.observed_at - timedelta(days=lookback_days)
    in_window = [r for r in earlier if r.observed_at >= window_start]
    return in_window[0] if in_window else earlier[-1]


def _ckd_stage_from_egfr(egfr: float) -> int:
    if egfr < 15:
        return 5
    if egfr < 30:
        return 4
    if egfr < 60:
        return 3
    if egfr < 90:
        return 2
    return 1


def evaluate_sglt2i_eligibility(
    patient: Patient, egfr: Optional[float], uacr: float
) -> SGLT2iEligibility:
    if egfr is None:
        return SGLT2iEligibility(False, TreatmentRecommendation.CONTINUE_MONITORING,
                                 "eGFR not available")
    if egfr < SGLT2I_MIN_EGFR:
        return SGLT2iEligibility(
            False, TreatmentRecommendation.CONTINUE_MONITORING,
            f"eGFR {egfr:.0f} mL/min/1.73m² is below the approved SGLT2 inhibitor range",
        )

    stage = _ckd_stage_from_egfr(egfr)
    reasons: List[str] = []
    recommendation = TreatmentRecommendation.CONTINUE_MONITORING
    eligible = False

    if patient.has_diabetes and stage >= 2:
        eligible = True
        reasons.append(f"Diabetic CKD Stage {stage}")
        if uacr >= UACR_A3:
            recommendation = TreatmentRecommendation.URGENT_TREATMENT
            reasons.append(f"Macroalbuminuria (uACR {uacr:.0f} mg/g)")
        elif uacr >= HIGH_MIN_BASELINE:
            recommendation = TreatmentRecommendation.STRONGLY_RECOMMEND
            reasons.append(f"Albuminuria (uACR {uacr:.0f} mg/g)")
        else:
            recommendation = TreatmentRecommendation.CONSIDER_TREATMENT
    elif not patient.has_diabetes and stage >= 3 and uacr >= SGLT2I_NONDIABETIC_MIN_UACR:
        eligible = True
        reasons.append(f"Non-diabetic CKD Stage {stage}")
        if uacr >= UACR_A3:
            recommendation = TreatmentRecommendation.URGENT_TREATMENT
            reasons.append(f"Macroalbuminuria (uACR {uacr:.0f} mg/g)")
        else:
            recommendation = TreatmentRecommendation.STRONGLY_RECOMMEND
            reasons.append(f"Significant albuminuria (uACR {uacr:.0f} mg/g)")

    rationale = "; ".join(reasons) if reasons else "Does not meet treatment criteria"
    return SGLT2iEligibility(eligible, recommendation, rationale)


def treatment_context(patient: Patient) -> TreatmentContext:
    medications = []
    if patient.on_sglt2i:
        medications.append("SGLT2 inhibitor (empagliflozin)")
    if patient.on_ras_inhibitor:
        medications.append("RAS inhibitor")
    return TreatmentContext(on_treatment=bool(medications), medications=medications)


# ── Service ───────────────────────────────────────────────────────────────────

class UACRMonitoringService:
    """
    Detects worsening albuminuria and raises uACR alerts.

    Usage:
        service = UACRMonitoringService(store)
        alert = service.analyze_patient(patient_id)   # read-only
        results = service.scan()                      # persists alerts
    """

    def __init__(
        self,
        store: CKDStore,
        lookback_days: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[tuple] = None,
    ):
        self.store = store
        self.lookback_days = settings.uacr_lookback_days if lookback_days is None else lookback_days
        self.max_retries = settings.scan_max_retries if max_retries is None else max_retries
        self.backoff = tuple(settings.retry_backoff_seconds if backoff is None else backoff)

    def analyze_change(
        self, uow: StoreSession, patient_id: str, as_of: Optional[datetime] = None
    ) -> Optional[UACRAnalysis]:
        readings = uow.list_observations(patient_id, ObservationType.UACR, statuses=USABLE_STATUSES)
        if as_of is not None:
            readings = [r for r in readings if r.observed_at <= as_of]
        baseline = select_baseline(readings, self.lookback_days)
        if baseline is None:
            return None
        latest = readings[-1]
        pct = None
        if baseline.value > 0:
            pct = round((latest.value - baseline.value) / baseline.value * 100, 1)
        return UACRAnalysis(
            patient_id=patient_id,
            latest_value=latest.value,
            latest_at=latest.observed_at,
            latest_observation_id=latest.id,
            baseline_value=baseline.value,
            baseline_at=baseline.observed_at,
            baseline_observation_id=baseline.id,
            percent_change=pct,
            days_between=(latest.observed_at - baseline.observed_at).days,
            severity=classify_increase(baseline.value, latest.value),
        )

    def analyze_patient(self, patient_id: str, as_of: Optional[datetime] = None) -> Optional[UACRAlert]:
        """
        Build the alert for one patient without writing anything.

        Raises:
            NotFoundError: unknown patient
        """
        with self.store.unit_of_work() as uow:
            return self._evaluate(uow, patient_id, as_of)

    def scan(self, as_of: Optional[datetime] = None) -> UACRScanResults:
        """
        Evaluate every patient with at least two usable uACR readings and
        persist new alerts (one per patient and latest reading).
        """
        results = UACRScanResults(scan_date=as_of or utcnow())
        with self.store.unit_of_work() as uow:
            patient_ids = uow.patients_with_observations(
                ObservationType.UACR, min_count=2, statuses=USABLE_STATUSES
            )
        results.total_patients_scanned = len(patient_ids)
        logger.info(f"UACRMonitoringService: scanning {len(patient_ids)} patients")

        for patient_id in patient_ids:
            try:
                alert, created = retry_transient(
                    lambda: self.scan_patient(patient_id, as_of),
                    self.max_retries,
                    self.backoff,
                    f"UACRMonitoringService [{patient_id}]",
                )
            except Exception as e:
                logger.error(f"UACRMonitoringService [{patient_id}]: skipped after error: {e}")
                results.failed.append({
                    "patient_id": patient_id,
                    "error": getattr(e, "code", type(e).__name__),
                    "message": str(e),
                })
                continue
            if alert is None:
                continue
            results.alerts.append(alert)
            if created:
                results.alerts_created += 1

        logger.info(
            f"UACRMonitoringService: {results.patients_with_worsening} worsening, "
            f"{results.alerts_created} new alerts, {len(results.failed)} failed"
        )
        return results

    def scan_patient(
        self, patient_id: str, as_of: Optional[datetime] = None
    ) -> Tuple[Optional[UACRAlert], bool]:
        """One patient's scan step as a single transaction: (alert, newly persisted)."""
        with self.store.unit_of_work() as uow:
            alert = self._evaluate(uow, patient_id, as_of)
            if alert is None:
                return None, False
            return alert, self._persist(uow, alert)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _evaluate(
        self, uow: StoreSession, patient_id: str, as_of: Optional[datetime]
    ) -> Optional[UACRAlert]:
        patient = uow.get_patient(patient_id)
        analysis = self.analyze_change(uow, patient_id, as_of)
        if analysis is None or not analysis.is_worsening:
            return None

        treatment = treatment_context(patient)
        eligibility = None
        if not patient.on_sglt2i:
            egfr_obs = uow.latest_observation(
                patient_id, ObservationType.EGFR, statuses=USABLE_STATUSES
            )
            eligibility = evaluate_sglt2i_eligibility(
                patient, egfr_obs.value if egfr_obs else None, analysis.latest_value
            )

        name = patient.full_name or patient.id
        if treatment.on_treatment:
            alert_type = "uacr_worsening_on_treatment"
            message = (
                f"uACR worsening on treatment: {name} shows a {analysis.severity.value.lower()} "
                f"rise ({analysis.change_text()}) despite {', '.join(treatment.medications)}."
            )
        else:
            alert_type = "uacr_worsening_untreated"
            message = (
                f"uACR worsening in untreated patient: {name} shows a "
                f"{analysis.severity.value.lower()} rise ({analysis.change_text()}) and is "
                f"not on CKD-specific treatment."
            )

        return UACRAlert(
            patient_id=patient_id,
            patient_name=name,
            medical_record_number=patient.medical_record_number,
            severity=analysis.severity,
            alert_type=alert_type,
            message=message,
            analysis=analysis,
            treatment=treatment,
            eligibility=eligibility,
            recommended_actions=self._recommended_actions(analysis, treatment, eligibility),
            clinical_rationale=self._clinical_rationale(analysis, treatment),
        )

    @staticmethod
    def _recommended_actions(
        analysis: UACRAnalysis,
        treatment: TreatmentContext,
        eligibility: Optional[SGLT2iEligibility],
    ) -> List[str]:
        actions: List[str] = []
        serious = analysis.severity in (UACRSeverity.CRITICAL, UACRSeverity.HIGH)

        if treatment.on_treatment:
            actions.append(f"Review adherence to {', '.join(treatment.medications)} and refill history")
            actions.append("Repeat uACR in 1-2 weeks to confirm")
            actions.append("Review blood pressure control and dietary sodium intake")
            if serious:
                actions.append("Consider adding a mineralocorticoid receptor antagonist (finerenone)")
                actions.append("Consider nephrology referral")

        if eligibility is not None:
            if eligibility.eligible:
                lead = {
                    TreatmentRecommendation.URGENT_TREATMENT: "URGENT: initiate",
                    TreatmentRecommendation.STRONGLY_RECOMMEND: "Strongly recommend initiating",
                }.get(eligibility.recommendation, "Consider")
                actions.append(f"{lead} empagliflozin 10 mg daily")
                actions.append(f"Clinical indication: {eligibility.rationale}")
            elif not treatment.on_treatment:
                actions.append("Continue monitoring: SGLT2 inhibitor criteria not yet met")
                actions.append("Optimise blood pressure and RAS inhibitor therapy")
                actions.append("Reinforce lifestyle modifications (diet, exercise, smoking cessation)")

        actions.append(
            f"Trend: uACR {analysis.baseline_value:.0f} → {analysis.latest_value:.0f} mg/g "
            f"({analysis.change_text()})"
        )
        follow_up = "1-2 months" if analysis.severity == UACRSeverity.MODERATE else "2-4 weeks"
        actions.append(f"Schedule next uACR check in {follow_up}")
        return actions

    @staticmethod
    def _clinical_rationale(analysis: UACRAnalysis, treatment: TreatmentContext) -> str:
        parts = [
            f"uACR increased from {analysis.baseline_value:.0f} to {analysis.latest_value:.0f} mg/g "
            f"({analysis.change_text()}) over {analysis.days_between} days."
        ]
        if analysis.latest_category != analysis.baseline_category:
            parts.append(
                f"Progression from {analysis.baseline_category} to {analysis.latest_category} "
                f"indicates advancing kidney damage."
            )
        if treatment.on_treatment:
            parts.append(
                f"Proteinuria is rising despite {', '.join(treatment.medications)}; consider "
                f"adherence, treatment resistance or the need for additional therapy."
            )
        return " ".join(parts)

    @staticmethod
    def _persist(uow: StoreSession, alert: UACRAlert) -> bool:
        if uow.find_alert_by_key(alert.dedupe_key) is not None:
            return False
        uow.add_alert({
            "patient_id": alert.patient_id,
            "transition_id": None,
            "source": AlertSource.UACR,
            "alert_type": alert.alert_type,
            "severity": _ALERT_SEVERITY[alert.severity],
            "priority": _ALERT_PRIORITY[alert.severity],
            "title": f"{alert.severity.value}: {alert.patient_name} - uACR Worsening",
            "message": alert.message + "\n\n" + alert.clinical_rationale,
            "reasons": list(alert.recommended_actions),
            "dedupe_key": alert.dedupe_key,
        })
        logger.info(
            f"UACRMonitoringService [{alert.patient_id}]: {alert.severity.value} "
            f"{alert.alert_type} ({alert.analysis.change_text()})"
        )
        return True

"""
Alert Engine

Turns a worsening StateTransition into a MonitoringAlert candidate.

Fires only when the change is "worsened" AND either a critical threshold
was crossed or the composite risk rose by at least one tier.

Severity:
    critical – hard clinical threshold breached: eGFR < 30, or new A3
    warning  – everything else that fires

Alert type (first match wins):
    kidney_failure      eGFR < 15
    stage_4_ckd         eGFR < 30
    severe_albuminuria  newly A3
    rapid_progression   ≥25% relative eGFR decline
    threshold_crossed   other critical crossing (albuminuria tier)
    risk_increase       risk tier rose without a critical crossing
"""
from __future__ import annotations

from typing import List, Optional

from ckd_monitor.models import AlertSeverity, ChangeType, Patient
from ckd_monitor.core.progression.transitions import TransitionAssessment
from ckd_monitor.utils import get_logger
from .base import AlertCandidate

logger = get_logger(__name__)

EGFR_CRITICAL = 30
EGFR_KIDNEY_FAILURE = 15

_PRIORITY = {
    AlertSeverity.CRITICAL: 1,
    AlertSeverity.WARNING: 2,
    AlertSeverity.INFO: 3,
}


def _alert_type(transition: TransitionAssessment) -> str:
    current = transition.current
    if current.egfr < EGFR_KIDNEY_FAILURE:
        return "kidney_failure"
    if current.egfr < EGFR_CRITICAL:
        return "stage_4_ckd"
    if transition.entered_a3:
        return "severe_albuminuria"
    if transition.rapid_progression:
        return "rapid_progression"
    if transition.crossed_critical_threshold:
        return "threshold_crossed"
    return "risk_increase"


class AlertEngine:
    """
    Evaluates transitions against the alerting rules.

    Stateless: safe to call from multiple worker threads.
    """

    def should_alert(self, transition: TransitionAssessment) -> bool:
        return transition.change_type == ChangeType.WORSENED and (
            transition.crossed_critical_threshold or transition.risk_increased
        )

    def evaluate(
        self,
        transition: TransitionAssessment,
        patient: Optional[Patient] = None,
    ) -> Optional[AlertCandidate]:
        """
        Build the alert for a transition, or None when the rules do not fire.
        """
        if not self.should_alert(transition):
            return None

        current, previous = transition.current, transition.previous
        critical = current.egfr < EGFR_CRITICAL or transition.entered_a3
        severity = AlertSeverity.CRITICAL if critical else AlertSeverity.WARNING

        reasons: List[str] = list(transition.reasons)
        if current.egfr < EGFR_KIDNEY_FAILURE:
            reasons.append("eGFR below 15 mL/min/1.73m²: dialysis planning required")
        elif current.egfr < EGFR_CRITICAL:
            reasons.append("eGFR below 30 mL/min/1.73m²: nephrology referral mandatory")
        if transition.entered_a3:
            reasons.append("uACR above 300 mg/g: severe albuminuria (A3)")

        who = self._patient_label(patient, current.patient_id)
        if severity == AlertSeverity.CRITICAL:
            title = f"CRITICAL: {who} - Urgent Action Required"
        else:
            title = f"WARNING: {who} - Kidney Function Declining"

        alert = AlertCandidate(
            alert_type=_alert_type(transition),
            severity=severity,
            priority=_PRIORITY[severity],
            title=title,
            message=self._message(transition, reasons, severity, who),
            reasons=reasons,
        )
        logger.info(
            f"AlertEngine [{current.patient_id}]: {alert.severity.value} {alert.alert_type} "
            f"({previous.health_state} → {current.health_state})"
        )
        return alert

    @staticmethod
    def _patient_label(patient: Optional[Patient], patient_id: str) -> str:
        if patient is None:
            return f"Patient {patient_id}"
        name = patient.full_name or patient.id
        return f"{name} ({patient.medical_record_number})"

    @staticmethod
    def _message(
        transition: TransitionAssessment,
        reasons: List[str],
        severity: AlertSeverity,
        who: str,
    ) -> str:
        current, previous = transition.current, transition.previous
        lines = [
            f"Patient: {who}",
            "",
            "KIDNEY FUNCTION STATUS:",
            f"- Current eGFR: {current.egfr:.1f} mL/min/1.73m²",
            f"- Previous eGFR: {previous.egfr:.1f} mL/min/1.73m²",
            f"- Change: {current.egfr - previous.egfr:+.1f} ({transition.egfr_percent_change:+.1f}%)",
        ]
        if current.uacr is not None and previous.uacr is not None:
            lines += [
                "",
                "ALBUMINURIA STATUS:",
                f"- Current uACR: {current.uacr:.1f} mg/g",
                f"- Previous uACR: {previous.uacr:.1f} mg/g",
            ]
        lines += [
            "",
            "KDIGO CLASSIFICATION:",
            f"- From: {previous.health_state} ({previous.risk_level.value} risk)",
            f"- To: {current.health_state} ({current.risk_level.value} risk)",
            "",
            "ALERT REASONS:",
        ]
        lines += [f"- {r}" for r in reasons]
        lines.append("")
        if severity == AlertSeverity.CRITICAL:
            lines.append("IMMEDIATE ACTION REQUIRED: urgent clinical review and intervention.")
        else:
            lines.append("CLINICAL REVIEW RECOMMENDED at the next available appointment.")
        return "\n".join(lines)

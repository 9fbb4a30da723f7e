"""
Recommendation Engine

Maps the current KDIGO state plus the latest transition to an ordered set
of candidate clinical actions (KDIGO 2024 guidance):

    1. nephrology_referral       G3b–G5, A3 or very high risk
    2. dialysis_planning         G4–G5
    3. adjust_medication         RAS inhibitor / SGLT2i indicated but not prescribed
    4. order_confirmatory_labs   worsening should be confirmed before acting on it
    5. initiate_uacr_monitoring  reduced eGFR without any albuminuria data
    6. increase_monitoring       worsening moves the patient to a tighter schedule

Each candidate carries an urgency and a numeric sort priority (1 first).
Persistence is idempotent per (patient, recommendation type, cycle).
"""
from __future__ import annotations

from typing import List, Optional

from ckd_monitor.models import (
    ChangeType,
    GFRCategory,
    Patient,
    RecommendationType,
    RecommendationUrgency,
)
from ckd_monitor.core.classification import KDIGOClassification
from ckd_monitor.core.progression.transitions import TransitionAssessment
from ckd_monitor.utils import get_logger
from .base import RecommendationCandidate

logger = get_logger(__name__)

UACR_SEVERE = 300


class RecommendationEngine:
    """
    Builds recommendation candidates.

    Stateless: safe to call from multiple worker threads.
    """

    def evaluate(
        self,
        classification: KDIGOClassification,
        transition: TransitionAssessment,
        patient: Optional[Patient] = None,
    ) -> List[RecommendationCandidate]:
        """
        Args:
            classification: KDIGO classification of the newest record
            transition:     the latest transition for the patient
            patient:        therapy flags suppress already-prescribed drugs

        Returns:
            Candidates sorted by priority; one per recommendation type.
        """
        candidates: List[RecommendationCandidate] = []
        worsened = transition.change_type == ChangeType.WORSENED
        advanced = classification.ckd_stage is not None and classification.ckd_stage >= 4
        egfr_txt = f"eGFR {classification.egfr:.1f} mL/min/1.73m²"

        if classification.requires_nephrology_referral:
            candidates.append(RecommendationCandidate(
                recommendation_type=RecommendationType.NEPHROLOGY_REFERRAL,
                category="specialist_referral",
                title="Nephrology Referral Required",
                rationale=(
                    f"Current state {classification.health_state} "
                    f"({classification.risk_level.value} risk) requires nephrology expertise "
                    f"under KDIGO guidance."
                ),
                urgency=RecommendationUrgency.URGENT if advanced else RecommendationUrgency.ROUTINE,
                priority=1 if advanced else 2,
                action_items={
                    "referrals": ["nephrology"],
                    "timeframe": "Within 2 weeks" if advanced else "Within 1-2 months",
                    "triggered_by": [egfr_txt, classification.health_state],
                },
            ))

        if classification.requires_dialysis_planning:
            candidates.append(RecommendationCandidate(
                recommendation_type=RecommendationType.DIALYSIS_PLANNING,
                category="dialysis_planning",
                title="Initiate Renal Replacement Therapy Planning",
                rationale=(
                    f"Advanced CKD ({classification.ckd_stage_name}). Dialysis access and "
                    f"transplant evaluation should start before they are urgently needed."
                ),
                urgency=RecommendationUrgency.URGENT,
                priority=1,
                action_items={
                    "referrals": ["vascular surgery - AV fistula evaluation", "transplant center"],
                    "education": ["dialysis options", "transplant evaluation"],
                },
            ))

        medication = self._medication_changes(classification, patient)
        if medication:
            severe = classification.uacr is not None and classification.uacr > UACR_SEVERE
            candidates.append(RecommendationCandidate(
                recommendation_type=RecommendationType.ADJUST_MEDICATION,
                category="medication",
                title="Adjust Kidney-Protective Medication",
                rationale=(
                    f"Albuminuria {classification.albuminuria_category.value} with "
                    f"{egfr_txt}: KDIGO recommends "
                    + " and ".join(m["drug_class"] for m in medication)
                    + " to slow progression."
                ),
                urgency=RecommendationUrgency.URGENT if severe else RecommendationUrgency.ROUTINE,
                priority=1 if severe else 2,
                action_items={
                    "start": medication,
                    "monitoring": ["serum creatinine", "potassium", "blood pressure"],
                    "target_bp": classification.target_bp,
                },
            ))

        if worsened:
            critical = transition.crossed_critical_threshold
            candidates.append(RecommendationCandidate(
                recommendation_type=RecommendationType.ORDER_CONFIRMATORY_LABS,
                category="lab_monitoring",
                title="Order Confirmatory Labs",
                rationale=(
                    f"Transition {transition.previous.health_state} → "
                    f"{transition.current.health_state} should be confirmed with repeat testing."
                ),
                urgency=RecommendationUrgency.URGENT if critical else RecommendationUrgency.ROUTINE,
                priority=2 if critical else 3,
                action_items={
                    "lab_tests": ["eGFR", "serum creatinine", "uACR"],
                    "timeframe": "Within 2 weeks" if critical else "Within 4-6 weeks",
                },
            ))

        if classification.uacr is None and classification.gfr_category != GFRCategory.G1:
            candidates.append(RecommendationCandidate(
                recommendation_type=RecommendationType.INITIATE_UACR_MONITORING,
                category="lab_monitoring",
                title="Initiate uACR Monitoring",
                rationale=(
                    "uACR is required for complete KDIGO risk stratification; "
                    "reduced eGFR is on record without any albuminuria measurement."
                ),
                urgency=RecommendationUrgency.ROUTINE,
                priority=2,
                action_items={"lab_tests": ["uACR", "urinalysis"], "frequency": "Every 3-6 months"},
            ))

        if worsened:
            candidates.append(RecommendationCandidate(
                recommendation_type=RecommendationType.INCREASE_MONITORING,
                category="lab_monitoring",
                title=f"Increase Monitoring Frequency to {classification.monitoring_frequency}",
                rationale=(
                    f"Kidney function is declining ({transition.egfr_percent_change:+.1f}% eGFR); "
                    f"{classification.risk_level.value} risk warrants "
                    f"{classification.monitoring_frequency.lower()} labs."
                ),
                urgency=RecommendationUrgency.ROUTINE,
                priority=3,
                action_items={
                    "lab_tests": ["eGFR", "serum creatinine", "uACR"],
                    "frequency": classification.monitoring_frequency,
                },
            ))

        candidates.sort(key=lambda c: c.priority)
        if candidates:
            logger.debug(
                f"RecommendationEngine [{transition.patient_id}]: "
                + ", ".join(c.recommendation_type.value for c in candidates)
            )
        return candidates

    @staticmethod
    def _medication_changes(
        classification: KDIGOClassification,
        patient: Optional[Patient],
    ) -> List[dict]:
        on_ras = bool(patient and patient.on_ras_inhibitor)
        on_sglt2i = bool(patient and patient.on_sglt2i)
        changes = []
        if classification.recommend_ras_inhibitor and not on_ras:
            changes.append({
                "drug_class": "RAS inhibitor",
                "options": ["ACE inhibitor (e.g. lisinopril)", "ARB (e.g. losartan)"],
            })
        if classification.recommend_sglt2i and not on_sglt2i:
            changes.append({
                "drug_class": "SGLT2 inhibitor",
                "options": ["empagliflozin 10 mg daily", "dapagliflozin 10 mg daily"],
            })
        return changes

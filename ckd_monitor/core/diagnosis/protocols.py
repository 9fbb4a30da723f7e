"""
Early CKD Treatment Protocol Builder

Drafts the evidence-based management protocol offered to the doctor once a
CKD diagnosis is confirmed:

    Medication   RAS inhibitor (A2+ or hypertension), SGLT2 inhibitor
                 (eGFR ≥ 20 with diabetes or A2+); skipped when already prescribed
    Labs         eGFR/creatinine and uACR at the KDIGO monitoring frequency,
                 potassium when a RAS inhibitor is ordered or taken
    Referrals    nephrology (G3b+, A3, very high risk), dialysis planning (G4+)
    Lifestyle    sodium restriction, BP target, activity, smoking cessation
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from ckd_monitor.models import DiagnosisEvent, Patient
from ckd_monitor.core.classification import KDIGOClassification, KDIGOClassifier
from ckd_monitor.core.classification.kdigo import SGLT2I_MIN_EGFR
from ckd_monitor.utils import StateConflictError, get_logger

logger = get_logger(__name__)


@dataclass
class ProtocolDraft:
    """Protocol content ready to be persisted against a diagnosis event."""
    protocol_name: str
    ckd_stage: str
    medication_orders: List[Dict[str, Any]] = field(default_factory=list)
    lab_monitoring_schedule: List[Dict[str, Any]] = field(default_factory=list)
    referrals: List[Dict[str, Any]] = field(default_factory=list)
    lifestyle_modifications: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_name": self.protocol_name,
            "ckd_stage": self.ckd_stage,
            "medication_orders": self.medication_orders,
            "lab_monitoring_schedule": self.lab_monitoring_schedule,
            "referrals": self.referrals,
            "lifestyle_modifications": self.lifestyle_modifications,
        }


class TreatmentProtocolBuilder:
    """
    Builds a ProtocolDraft from a confirmed diagnosis.

    Stateless: safe to call from multiple worker threads.
    """

    def __init__(self, classifier: KDIGOClassifier = None):
        self.classifier = classifier or KDIGOClassifier()

    def build(self, event: DiagnosisEvent, patient: Patient) -> ProtocolDraft:
        """
        Raises:
            StateConflictError: the diagnosis has not been confirmed by a doctor
        """
        if not event.diagnosis_confirmed:
            raise StateConflictError(
                "Treatment protocol requires a confirmed diagnosis",
                entity="DiagnosisEvent",
                entity_id=event.id,
                expected="diagnosis_confirmed",
                actual=event.protocol_state.value,
            )

        egfr = event.egfr_at_diagnosis
        if egfr is None:
            egfr = event.first_abnormal_egfr
        classification = self.classifier.classify(egfr, event.uacr_at_diagnosis)
        stage = event.ckd_stage_at_diagnosis or classification.ckd_stage_name

        draft = ProtocolDraft(
            protocol_name=f"Early {stage} Management Protocol",
            ckd_stage=stage,
            medication_orders=self._medications(classification, patient),
            referrals=self._referrals(classification),
            lifestyle_modifications=self._lifestyle(classification, patient),
        )
        draft.lab_monitoring_schedule = self._labs(classification, patient, draft.medication_orders)

        logger.info(
            f"TreatmentProtocolBuilder [{patient.id}]: {draft.protocol_name} "
            f"({len(draft.medication_orders)} medication orders, {len(draft.referrals)} referrals)"
        )
        return draft

    # ── Sections ──────────────────────────────────────────────────────────────

    @staticmethod
    def _medications(c: KDIGOClassification, patient: Patient) -> List[Dict[str, Any]]:
        albuminuric = c.recommend_ras_inhibitor
        orders = []
        if (albuminuric or patient.has_hypertension) and not patient.on_ras_inhibitor:
            orders.append({
                "drug_class": "RAS inhibitor",
                "options": ["lisinopril 10 mg daily", "losartan 50 mg daily"],
                "indication": "albuminuria" if albuminuric else "hypertension",
                "titrate_to": "maximum tolerated dose",
            })
        if (
            c.egfr >= SGLT2I_MIN_EGFR
            and (patient.has_diabetes or albuminuric)
            and not patient.on_sglt2i
        ):
            orders.append({
                "drug_class": "SGLT2 inhibitor",
                "options": ["empagliflozin 10 mg daily", "dapagliflozin 10 mg daily"],
                "indication": "diabetes" if patient.has_diabetes else "albuminuria",
            })
        return orders

    @staticmethod
    def _labs(
        c: KDIGOClassification,
        patient: Patient,
        orders: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        schedule = [
            {"test": "eGFR / serum creatinine", "frequency": c.monitoring_frequency},
            {"test": "uACR", "frequency": c.monitoring_frequency},
        ]
        ras = patient.on_ras_inhibitor or any(o["drug_class"] == "RAS inhibitor" for o in orders)
        if ras:
            schedule.append({
                "test": "serum potassium",
                "frequency": "2-4 weeks after RAS inhibitor start, then with eGFR",
            })
        return schedule

    @staticmethod
    def _referrals(c: KDIGOClassification) -> List[Dict[str, Any]]:
        referrals = []
        if c.requires_nephrology_referral:
            referrals.append({
                "specialty": "nephrology",
                "reason": f"{c.health_state} ({c.risk_level.value} risk)",
            })
        if c.requires_dialysis_planning:
            referrals.append({
                "specialty": "renal replacement therapy planning",
                "reason": f"{c.ckd_stage_name}: dialysis access and transplant evaluation",
            })
        return referrals

    @staticmethod
    def _lifestyle(c: KDIGOClassification, patient: Patient) -> List[str]:
        items = [
            "Sodium intake below 2 g/day",
            f"Blood pressure target {c.target_bp}",
            "At least 150 minutes of moderate physical activity per week",
            "Smoking cessation",
            "Avoid NSAIDs and other nephrotoxic medications",
        ]
        if patient.has_diabetes:
            items.append("Individualised HbA1c target (generally <7%)")
        return items

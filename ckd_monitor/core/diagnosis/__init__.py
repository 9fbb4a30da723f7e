"""
Diagnosis Layer

Confirmation protocol (CKDDiagnosisDetector), protocol drafting
(TreatmentProtocolBuilder) and the human-in-the-loop DoctorActionQueue.
"""
from .protocols import ProtocolDraft, TreatmentProtocolBuilder
from .action_queue import CompletionResult, DoctorActionQueue
from .detector import CKDDiagnosisDetector, DiagnosisOutcome, is_abnormal

__all__ = [
    "ProtocolDraft",
    "TreatmentProtocolBuilder",
    "CompletionResult",
    "DoctorActionQueue",
    "CKDDiagnosisDetector",
    "DiagnosisOutcome",
    "is_abnormal",
]

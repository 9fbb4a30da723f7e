"""
Progression Layer

StateTransitionDetector compares record pairs; ProgressionMonitor runs the
population scan and owns the per-patient unit of work.
"""
from .transitions import StateTransitionDetector, TransitionAssessment

__all__ = [
    "StateTransitionDetector",
    "TransitionAssessment",
]

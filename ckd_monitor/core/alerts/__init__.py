"""
Alerting Layer

Usage:
    from ckd_monitor.core.alerts import AlertEngine, RecommendationEngine

    alert = AlertEngine().evaluate(transition, patient)           # Optional[AlertCandidate]
    recs  = RecommendationEngine().evaluate(classification, transition, patient)
"""
from .base import AlertCandidate, RecommendationCandidate
from .engine import AlertEngine
from .recommendations import RecommendationEngine

__all__ = [
    "AlertCandidate",
    "RecommendationCandidate",
    "AlertEngine",
    "RecommendationEngine",
]

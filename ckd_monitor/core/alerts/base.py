"""
Alerting Layer: Base Types

Candidate artifacts produced by the engines before the monitor persists
them. They carry no ids; the store assigns those inside the patient's
transaction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from ckd_monitor.models import (
    AlertSeverity,
    RecommendationType,
    RecommendationUrgency,
)


@dataclass
class AlertCandidate:
    """One alert the AlertEngine wants raised for a transition."""
    alert_type: str                 # e.g. "stage_4_ckd"
    severity: AlertSeverity
    priority: int                   # 1 = most urgent
    title: str
    message: str
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type,
            "severity": self.severity.value,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "reasons": list(self.reasons),
        }


@dataclass
class RecommendationCandidate:
    """One candidate clinical action, ordered by ``priority`` (1 first)."""
    recommendation_type: RecommendationType
    category: str
    title: str
    rationale: str
    urgency: RecommendationUrgency
    priority: int
    action_items: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation_type": self.recommendation_type.value,
            "category": self.category,
            "title": self.title,
            "rationale": self.rationale,
            "urgency": self.urgency.value,
            "priority": self.priority,
            "action_items": self.action_items,
        }

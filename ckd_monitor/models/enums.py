"""
Enumerations shared by the classifier, the engines and the store.

Ordered enums expose ``severity`` so the grid axes and status ladders can be
compared numerically.
"""
from enum import Enum
from typing import Optional


class GFRCategory(str, Enum):
    """KDIGO eGFR category, G1 (normal) to G5 (kidney failure)."""
    G1  = "G1"
    G2  = "G2"
    G3A = "G3a"
    G3B = "G3b"
    G4  = "G4"
    G5  = "G5"

    @property
    def severity(self) -> int:
        return _GFR_ORDER[self]


class AlbuminuriaCategory(str, Enum):
    """KDIGO albuminuria category; UNKNOWN when no uACR was measured."""
    A1      = "A1"
    A2      = "A2"
    A3      = "A3"
    UNKNOWN = "unknown"

    @property
    def severity(self) -> Optional[int]:
        return _ALB_ORDER.get(self)


class RiskLevel(str, Enum):
    """Composite KDIGO heat-map risk."""
    LOW       = "low"
    MODERATE  = "moderate"
    HIGH      = "high"
    VERY_HIGH = "very_high"

    @property
    def severity(self) -> int:
        return _RISK_ORDER[self]


class ChangeType(str, Enum):
    IMPROVED = "improved"
    WORSENED = "worsened"
    STABLE   = "stable"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING  = "warning"
    INFO     = "info"


class AlertStatus(str, Enum):
    ACTIVE       = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"
    DISMISSED    = "dismissed"


class AlertSource(str, Enum):
    PROGRESSION = "progression"
    UACR        = "uacr"


class RecommendationType(str, Enum):
    ORDER_CONFIRMATORY_LABS  = "order_confirmatory_labs"
    NEPHROLOGY_REFERRAL      = "nephrology_referral"
    ADJUST_MEDICATION        = "adjust_medication"
    INCREASE_MONITORING      = "increase_monitoring"
    DIALYSIS_PLANNING        = "dialysis_planning"
    INITIATE_UACR_MONITORING = "initiate_uacr_monitoring"


class RecommendationUrgency(str, Enum):
    ROUTINE = "routine"
    URGENT  = "urgent"


class RecommendationStatus(str, Enum):
    PENDING     = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    DISMISSED   = "dismissed"


class DiagnosisState(str, Enum):
    """
    Per-patient confirmation protocol state.

    NORMAL           – no open event (never persisted on an event)
    ABNORMAL_PENDING – first abnormal result recorded
    CONFIRMATION_DUE – waiting for a confirmatory result in the day 76–104 window
    CONFIRMED        – second abnormal result inside the window; awaiting doctor
    LAPSED           – window missed or confirmatory result normal (reset to NORMAL)
    """
    NORMAL           = "normal"
    ABNORMAL_PENDING = "abnormal_pending"
    CONFIRMATION_DUE = "confirmation_due"
    CONFIRMED        = "confirmed"
    LAPSED           = "lapsed"


class ProtocolStatus(str, Enum):
    """
    Treatment protocol lifecycle: pending → active | declined.

    APPROVED is part of the stored vocabulary but is never assigned here;
    approving a protocol activates it in the same step.
    """
    PENDING  = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    ACTIVE   = "active"


class ActionType(str, Enum):
    CONFIRM_DIAGNOSIS = "confirm_diagnosis"
    APPROVE_TREATMENT = "approve_treatment"


class ActionPriority(str, Enum):
    CRITICAL = "critical"
    HIGH     = "high"
    MODERATE = "moderate"
    LOW      = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


class ActionStatus(str, Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    DECLINED  = "declined"


class ObservationType(str, Enum):
    EGFR = "egfr"
    UACR = "uacr"


class ObservationStatus(str, Enum):
    PRELIMINARY = "preliminary"
    FINAL       = "final"
    AMENDED     = "amended"


_GFR_ORDER = {
    GFRCategory.G1: 0,
    GFRCategory.G2: 1,
    GFRCategory.G3A: 2,
    GFRCategory.G3B: 3,
    GFRCategory.G4: 4,
    GFRCategory.G5: 5,
}

_ALB_ORDER = {
    AlbuminuriaCategory.A1: 0,
    AlbuminuriaCategory.A2: 1,
    AlbuminuriaCategory.A3: 2,
}

_RISK_ORDER = {
    RiskLevel.LOW: 0,
    RiskLevel.MODERATE: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.VERY_HIGH: 3,
}

_PRIORITY_RANK = {
    ActionPriority.CRITICAL: 1,
    ActionPriority.HIGH: 2,
    ActionPriority.MODERATE: 3,
    ActionPriority.LOW: 4,
}

"""
KDIGO CKD Classification

Maps eGFR (mL/min/1.73m²) and uACR (mg/g) onto the KDIGO 2012/2024
two-axis grid and derives the composite heat-map risk.

eGFR categories:
    G1 ≥90 | G2 60–89 | G3a 45–59 | G3b 30–44 | G4 15–29 | G5 <15
Albuminuria categories:
    A1 <30 | A2 30–300 | A3 >300 | "unknown" when uACR was not measured

An unmeasured uACR is read from the A1 row of the heat-map: risk precision
degrades, classification never fails. eGFR is mandatory.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from numbers import Real
from typing import Any, Dict, Optional

from ckd_monitor.models.enums import AlbuminuriaCategory, GFRCategory, RiskLevel
from ckd_monitor.utils import ValidationError

# ── Thresholds ────────────────────────────────────────────────────────────────

EGFR_G1 = 90
EGFR_G2 = 60
EGFR_G3A = 45
EGFR_G3B = 30
EGFR_G4 = 15

UACR_A2 = 30     # A2 starts here (inclusive)
UACR_A3 = 300    # A3 is strictly above this

SGLT2I_MIN_EGFR = 20

# ── KDIGO heat-map ────────────────────────────────────────────────────────────

_A1, _A2, _A3 = AlbuminuriaCategory.A1, AlbuminuriaCategory.A2, AlbuminuriaCategory.A3
_LOW, _MOD, _HIGH, _VHIGH = RiskLevel.LOW, RiskLevel.MODERATE, RiskLevel.HIGH, RiskLevel.VERY_HIGH

_RISK_MATRIX = {
    GFRCategory.G1:  {_A1: _LOW,   _A2: _MOD,   _A3: _HIGH},
    GFRCategory.G2:  {_A1: _LOW,   _A2: _MOD,   _A3: _HIGH},
    GFRCategory.G3A: {_A1: _MOD,   _A2: _HIGH,  _A3: _VHIGH},
    GFRCategory.G3B: {_A1: _HIGH,  _A2: _VHIGH, _A3: _VHIGH},
    GFRCategory.G4:  {_A1: _VHIGH, _A2: _VHIGH, _A3: _VHIGH},
    GFRCategory.G5:  {_A1: _VHIGH, _A2: _VHIGH, _A3: _VHIGH},
}

_RISK_COLOR = {
    _LOW: "green",
    _MOD: "yellow",
    _HIGH: "orange",
    _VHIGH: "red",
}

_MONITORING_FREQUENCY = {
    _LOW: "Annually",
    _MOD: "Every 6-12 months",
    _HIGH: "Every 3-6 months",
    _VHIGH: "Every 1-3 months",
}

_GFR_DESCRIPTION = {
    GFRCategory.G1: "Normal or high kidney function",
    GFRCategory.G2: "Mildly decreased kidney function",
    GFRCategory.G3A: "Mild to moderate decrease",
    GFRCategory.G3B: "Moderate to severe decrease",
    GFRCategory.G4: "Severely decreased kidney function",
    GFRCategory.G5: "Kidney failure",
}

_ALB_DESCRIPTION = {
    _A1: "Normal to mildly increased",
    _A2: "Moderately increased",
    _A3: "Severely increased",
    AlbuminuriaCategory.UNKNOWN: "Not measured",
}


@dataclass(frozen=True)
class KDIGOClassification:
    """Result of classifying one eGFR/uACR pair."""
    egfr: float
    uacr: Optional[float]
    gfr_category: GFRCategory
    albuminuria_category: AlbuminuriaCategory
    risk_level: RiskLevel
    ckd_stage: Optional[int]          # 1–5, None when the values do not meet CKD criteria
    ckd_stage_name: str               # e.g. "CKD Stage 3a"
    risk_color: str
    monitoring_frequency: str
    requires_nephrology_referral: bool
    requires_dialysis_planning: bool
    recommend_ras_inhibitor: bool
    recommend_sglt2i: bool
    target_bp: str

    @property
    def health_state(self) -> str:
        """Grid cell label, e.g. "G3a-A2" (or "G3a-unknown")."""
        return f"{self.gfr_category.value}-{self.albuminuria_category.value}"

    @property
    def is_ckd(self) -> bool:
        return self.ckd_stage is not None

    @property
    def albuminuria_measured(self) -> bool:
        return self.albuminuria_category != AlbuminuriaCategory.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "egfr": self.egfr,
            "uacr": self.uacr,
            "gfr_category": self.gfr_category.value,
            "gfr_description": _GFR_DESCRIPTION[self.gfr_category],
            "albuminuria_category": self.albuminuria_category.value,
            "albuminuria_description": _ALB_DESCRIPTION[self.albuminuria_category],
            "health_state": self.health_state,
            "risk_level": self.risk_level.value,
            "risk_color": self.risk_color,
            "ckd_stage": self.ckd_stage,
            "ckd_stage_name": self.ckd_stage_name,
            "monitoring_frequency": self.monitoring_frequency,
            "requires_nephrology_referral": self.requires_nephrology_referral,
            "requires_dialysis_planning": self.requires_dialysis_planning,
            "recommend_ras_inhibitor": self.recommend_ras_inhibitor,
            "recommend_sglt2i": self.recommend_sglt2i,
            "target_bp": self.target_bp,
        }


# ── Input validation ──────────────────────────────────────────────────────────

def _coerce(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(
            f"{field_name} must be numeric, got {type(value).__name__}",
            field=field_name, value=value,
        )
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{field_name} must be finite", field=field_name, value=value)
    if number < 0:
        raise ValidationError(f"{field_name} cannot be negative", field=field_name, value=value)
    return number


def validate_egfr(egfr: Any) -> float:
    """eGFR is mandatory: None, non-numeric, NaN or negative fail fast."""
    if egfr is None:
        raise ValidationError("eGFR is required for classification", field="egfr", value=None)
    return _coerce(egfr, "egfr")


def validate_uacr(uacr: Any) -> Optional[float]:
    if uacr is None:
        return None
    return _coerce(uacr, "uacr")


# ── Axis classifiers ──────────────────────────────────────────────────────────

def classify_gfr(egfr: float) -> GFRCategory:
    if egfr >= EGFR_G1:
        return GFRCategory.G1
    if egfr >= EGFR_G2:
        return GFRCategory.G2
    if egfr >= EGFR_G3A:
        return GFRCategory.G3A
    if egfr >= EGFR_G3B:
        return GFRCategory.G3B
    if egfr >= EGFR_G4:
        return GFRCategory.G4
    return GFRCategory.G5


def classify_albuminuria(uacr: Optional[float]) -> AlbuminuriaCategory:
    if uacr is None:
        return AlbuminuriaCategory.UNKNOWN
    if uacr < UACR_A2:
        return AlbuminuriaCategory.A1
    if uacr <= UACR_A3:
        return AlbuminuriaCategory.A2
    return AlbuminuriaCategory.A3


def determine_risk_level(gfr: GFRCategory, albuminuria: AlbuminuriaCategory) -> RiskLevel:
    row = _RISK_MATRIX[gfr]
    if albuminuria == AlbuminuriaCategory.UNKNOWN:
        return row[_A1]
    return row[albuminuria]


def determine_ckd_stage(gfr: GFRCategory, albuminuria: AlbuminuriaCategory) -> tuple:
    """
    Return (stage number or None, stage label).

    G1/G2 count as CKD only with evidence of kidney damage (A2/A3).
    """
    damaged = albuminuria in (_A2, _A3)
    if gfr == GFRCategory.G1:
        return (1, "CKD Stage 1") if damaged else (None, "No CKD")
    if gfr == GFRCategory.G2:
        return (2, "CKD Stage 2") if damaged else (None, "No CKD (mildly decreased eGFR)")
    if gfr == GFRCategory.G3A:
        return 3, "CKD Stage 3a"
    if gfr == GFRCategory.G3B:
        return 3, "CKD Stage 3b"
    if gfr == GFRCategory.G4:
        return 4, "CKD Stage 4"
    return 5, "CKD Stage 5 (kidney failure)"


def requires_nephrology_referral(
    gfr: GFRCategory, albuminuria: AlbuminuriaCategory, risk: RiskLevel
) -> bool:
    return (
        gfr in (GFRCategory.G3B, GFRCategory.G4, GFRCategory.G5)
        or albuminuria == _A3
        or risk == _VHIGH
    )


class KDIGOClassifier:
    """
    Pure KDIGO classifier.

    Stateless: safe to share between worker threads.
    """

    def classify(self, egfr: Any, uacr: Any = None) -> KDIGOClassification:
        """
        Classify one lab snapshot.

        Args:
            egfr: eGFR in mL/min/1.73m² (required)
            uacr: urine albumin-to-creatinine ratio in mg/g (optional)

        Returns:
            KDIGOClassification

        Raises:
            ValidationError: eGFR missing or invalid, or uACR invalid
        """
        egfr_value = validate_egfr(egfr)
        uacr_value = validate_uacr(uacr)

        gfr = classify_gfr(egfr_value)
        alb = classify_albuminuria(uacr_value)
        risk = determine_risk_level(gfr, alb)
        stage, stage_name = determine_ckd_stage(gfr, alb)
        albuminuric = alb in (_A2, _A3)

        return KDIGOClassification(
            egfr=egfr_value,
            uacr=uacr_value,
            gfr_category=gfr,
            albuminuria_category=alb,
            risk_level=risk,
            ckd_stage=stage,
            ckd_stage_name=stage_name,
            risk_color=_RISK_COLOR[risk],
            monitoring_frequency=_MONITORING_FREQUENCY[risk],
            requires_nephrology_referral=requires_nephrology_referral(gfr, alb, risk),
            requires_dialysis_planning=gfr in (GFRCategory.G4, GFRCategory.G5),
            recommend_ras_inhibitor=albuminuric,
            recommend_sglt2i=albuminuric and egfr_value >= SGLT2I_MIN_EGFR,
            target_bp="<130/80 mmHg" if albuminuric else "<140/90 mmHg",
        )


def classify(egfr: Any, uacr: Any = None) -> KDIGOClassification:
    """Module-level shortcut for ``KDIGOClassifier().classify``."""
    return _DEFAULT.classify(egfr, uacr)


_DEFAULT = KDIGOClassifier()

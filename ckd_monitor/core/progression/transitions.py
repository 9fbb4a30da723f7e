"""
State Transition Detection

Compares two temporally ordered HealthStateRecords of one patient on the
KDIGO grid and decides whether the change is clinically meaningful.

Change type:
    worsened – either axis moved toward higher severity, or eGFR fell by
               ≥25% relative (rapid progressor, even inside one category)
    improved – every comparable axis moved toward lower severity
    stable   – anything else; no transition is emitted

Critical threshold crossing:
    - eGFR category enters G4 or G5
    - albuminuria category worsens by at least one tier
    - rapid progression (≥25% relative eGFR decline)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from ckd_monitor.models import (
    AlbuminuriaCategory,
    ChangeType,
    GFRCategory,
    HealthStateRecord,
)
from ckd_monitor.utils import DataIntegrityError, get_logger

logger = get_logger(__name__)

RAPID_DECLINE_FRACTION = 0.25
CRITICAL_GFR_CATEGORIES = (GFRCategory.G4, GFRCategory.G5)


@dataclass
class TransitionAssessment:
    """A non-stable change between two records of the same patient."""
    previous: HealthStateRecord
    current: HealthStateRecord
    change_type: ChangeType
    gfr_delta: int                       # ordinal steps, positive = worse
    albuminuria_delta: Optional[int]     # None when either uACR is missing
    risk_delta: int                      # heat-map tiers, positive = worse
    egfr_percent_change: float           # relative change, negative = decline
    rapid_progression: bool
    crossed_critical_threshold: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def patient_id(self) -> str:
        return self.current.patient_id

    @property
    def risk_increased(self) -> bool:
        return self.risk_delta >= 1

    @property
    def entered_a3(self) -> bool:
        return (
            self.current.albuminuria_category == AlbuminuriaCategory.A3
            and self.previous.albuminuria_category != AlbuminuriaCategory.A3
        )


def _check_order(previous: HealthStateRecord, current: HealthStateRecord) -> None:
    if previous.patient_id != current.patient_id:
        raise DataIntegrityError(
            "Transition records belong to different patients",
            details={
                "previous_record_id": previous.id,
                "previous_patient_id": previous.patient_id,
                "current_record_id": current.id,
                "current_patient_id": current.patient_id,
            },
        )
    if current.measured_at <= previous.measured_at:
        raise DataIntegrityError(
            "Transition records are not in increasing time order",
            details={
                "patient_id": current.patient_id,
                "previous_record_id": previous.id,
                "previous_measured_at": previous.measured_at.isoformat(),
                "current_record_id": current.id,
                "current_measured_at": current.measured_at.isoformat(),
            },
        )


class StateTransitionDetector:
    """
    Decides change type and clinical significance for an ordered record pair.

    Stateless: safe to call from multiple worker threads.
    """

    def detect(
        self,
        previous: HealthStateRecord,
        current: HealthStateRecord,
    ) -> Optional[TransitionAssessment]:
        """
        Compare two records.

        Returns:
            TransitionAssessment for an improved/worsened pair, or None when
            the pair is stable (the expected result most of the time).

        Raises:
            DataIntegrityError: records of different patients or out of order
        """
        _check_order(previous, current)

        gfr_delta = current.gfr_category.severity - previous.gfr_category.severity
        prev_alb = previous.albuminuria_category.severity
        curr_alb = current.albuminuria_category.severity
        alb_delta = None if prev_alb is None or curr_alb is None else curr_alb - prev_alb
        risk_delta = current.risk_level.severity - previous.risk_level.severity

        pct_change = 0.0
        if previous.egfr > 0:
            pct_change = (current.egfr - previous.egfr) / previous.egfr
        rapid = pct_change <= -RAPID_DECLINE_FRACTION

        worsened = gfr_delta > 0 or (alb_delta is not None and alb_delta > 0) or rapid
        comparable = [gfr_delta] + ([alb_delta] if alb_delta is not None else [])
        improved = not worsened and all(d < 0 for d in comparable)

        if worsened:
            change_type = ChangeType.WORSENED
        elif improved:
            change_type = ChangeType.IMPROVED
        else:
            return None

        reasons: List[str] = []
        # Any downward step that lands in G4 or G5, including G4 to G5
        entered_critical_gfr = gfr_delta > 0 and current.gfr_category in CRITICAL_GFR_CATEGORIES
        if entered_critical_gfr:
            reasons.append(
                f"eGFR category entered {current.gfr_category.value} "
                f"(from {previous.gfr_category.value})"
            )
        if alb_delta is not None and alb_delta >= 1:
            reasons.append(
                f"Albuminuria worsened from {previous.albuminuria_category.value} "
                f"to {current.albuminuria_category.value}"
            )
        if rapid:
            reasons.append(
                f"Rapid progression: eGFR fell {abs(pct_change) * 100:.1f}% "
                f"({previous.egfr:.1f} → {current.egfr:.1f} mL/min/1.73m²)"
            )
        crossed = bool(reasons)

        if risk_delta >= 1:
            reasons.append(
                f"Risk level increased from {previous.risk_level.value} to {current.risk_level.value}"
            )
        if change_type == ChangeType.WORSENED and gfr_delta > 0 and not entered_critical_gfr:
            reasons.append(
                f"eGFR category declined from {previous.gfr_category.value} "
                f"to {current.gfr_category.value}"
            )

        logger.debug(
            f"StateTransitionDetector [{current.patient_id}]: "
            f"{previous.health_state} → {current.health_state} = {change_type.value}"
            f"{' (critical)' if crossed else ''}"
        )

        return TransitionAssessment(
            previous=previous,
            current=current,
            change_type=change_type,
            gfr_delta=gfr_delta,
            albuminuria_delta=alb_delta,
            risk_delta=risk_delta,
            egfr_percent_change=round(pct_change * 100, 2),
            rapid_progression=rapid,
            crossed_critical_threshold=crossed,
            reasons=reasons,
        )

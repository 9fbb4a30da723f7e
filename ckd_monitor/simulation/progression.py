"""
Synthetic Progression Generator (demo only)

Produces month-by-month eGFR/uACR trajectories for demonstrations and
load tests. Output is classified with the KDIGO classifier but is never
written to the store and never reaches the alert or diagnosis pipeline.

Profiles (drawn when not given):
    rapid        5%   eGFR −0.67..−1.00 /month, uACR +3..+8 %/month
    improving   15%   eGFR +0.02..+0.05 /month, uACR −2..−5 %/month
    progressive 15%   eGFR −0.25..−0.50 /month, uACR +1..+3 %/month
    stable      65%   eGFR −0.04..−0.12 /month, uACR −0.5..−1.5 %/month

Each cycle adds ±1 mL/min eGFR and ±5% uACR noise; both floor at 5.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from ckd_monitor.config import settings
from ckd_monitor.core.classification import KDIGOClassification, KDIGOClassifier
from ckd_monitor.core.classification.kdigo import validate_egfr, validate_uacr
from ckd_monitor.utils import ValidationError, get_logger

logger = get_logger(__name__)

VALUE_FLOOR = 5.0
EGFR_NOISE = 1.0       # ± mL/min/1.73m²
UACR_NOISE = 0.05      # ± fraction


class ProgressionProfile(str, Enum):
    RAPID       = "rapid"
    IMPROVING   = "improving"
    PROGRESSIVE = "progressive"
    STABLE      = "stable"


# (cumulative probability, eGFR /month range, uACR fraction /month range)
_PROFILES = [
    (0.05, ProgressionProfile.RAPID,       (-1.00, -0.67), (0.03, 0.08)),
    (0.20, ProgressionProfile.IMPROVING,   (0.02, 0.05),   (-0.05, -0.02)),
    (0.35, ProgressionProfile.PROGRESSIVE, (-0.50, -0.25), (0.01, 0.03)),
    (1.00, ProgressionProfile.STABLE,      (-0.12, -0.04), (-0.015, -0.005)),
]


@dataclass(frozen=True)
class ProgressionParameters:
    profile: ProgressionProfile
    egfr_monthly_change: float      # mL/min/1.73m² per month
    uacr_monthly_change: float      # fraction per month

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.value,
            "egfr_monthly_change": round(self.egfr_monthly_change, 4),
            "uacr_monthly_change": round(self.uacr_monthly_change, 4),
        }


@dataclass
class SyntheticCycle:
    cycle_number: int
    egfr: float
    uacr: Optional[float]
    classification: KDIGOClassification

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "egfr": self.egfr,
            "uacr": self.uacr,
            "health_state": self.classification.health_state,
            "risk_level": self.classification.risk_level.value,
            "ckd_stage_name": self.classification.ckd_stage_name,
        }


@dataclass
class SyntheticTrajectory:
    parameters: ProgressionParameters
    cycles: List[SyntheticCycle] = field(default_factory=list)

    @property
    def final_state(self) -> str:
        return self.cycles[-1].classification.health_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameters": self.parameters.to_dict(),
            "final_state": self.final_state,
            "cycles": [c.to_dict() for c in self.cycles],
        }


class SyntheticProgressionGenerator:
    """
    Seedable generator; two generators built with the same seed produce
    identical trajectories.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        max_cycles: Optional[int] = None,
        classifier: KDIGOClassifier = None,
    ):
        self.rng = np.random.default_rng(seed)
        self.max_cycles = settings.synthetic_max_cycles if max_cycles is None else max_cycles
        self.classifier = classifier or KDIGOClassifier()

    def draw_parameters(self, profile: Optional[ProgressionProfile] = None) -> ProgressionParameters:
        roll = float(self.rng.random())
        for threshold, candidate, egfr_range, uacr_range in _PROFILES:
            if (profile is None and roll < threshold) or candidate == profile:
                return ProgressionParameters(
                    profile=candidate,
                    egfr_monthly_change=float(self.rng.uniform(*egfr_range)),
                    uacr_monthly_change=float(self.rng.uniform(*uacr_range)),
                )
        raise ValidationError(f"Unknown progression profile: {profile}", field="profile", value=profile)

    def next_cycle(self, previous: SyntheticCycle, params: ProgressionParameters) -> SyntheticCycle:
        egfr_noise = float(self.rng.uniform(-EGFR_NOISE, EGFR_NOISE))
        egfr = max(VALUE_FLOOR, previous.egfr + params.egfr_monthly_change + egfr_noise)
        uacr = None
        if previous.uacr is not None:
            uacr_noise = float(self.rng.uniform(-UACR_NOISE, UACR_NOISE))
            uacr = max(VALUE_FLOOR, previous.uacr * (1 + params.uacr_monthly_change + uacr_noise))
            uacr = round(uacr, 1)
        egfr = round(egfr, 1)
        return SyntheticCycle(
            cycle_number=previous.cycle_number + 1,
            egfr=egfr,
            uacr=uacr,
            classification=self.classifier.classify(egfr, uacr),
        )

    def generate(
        self,
        baseline_egfr: float,
        baseline_uacr: Optional[float] = None,
        cycles: int = 12,
        profile: Optional[ProgressionProfile] = None,
    ) -> SyntheticTrajectory:
        """
        Baseline (cycle 0) plus ``cycles`` generated months.

        Raises:
            ValidationError: cycles outside 1..max_cycles, or invalid baseline
        """
        if isinstance(cycles, bool) or not isinstance(cycles, int) or not 1 <= cycles <= self.max_cycles:
            raise ValidationError(
                f"cycles must be between 1 and {self.max_cycles}", field="cycles", value=cycles
            )
        egfr = validate_egfr(baseline_egfr)
        uacr = validate_uacr(baseline_uacr)

        params = self.draw_parameters(profile)
        current = SyntheticCycle(0, egfr, uacr, self.classifier.classify(egfr, uacr))
        trajectory = SyntheticTrajectory(parameters=params, cycles=[current])
        for _ in range(cycles):
            current = self.next_cycle(current, params)
            trajectory.cycles.append(current)

        logger.debug(
            f"SyntheticProgressionGenerator: {params.profile.value} × {cycles} cycles, "
            f"{trajectory.cycles[0].classification.health_state} → {trajectory.final_state}"
        )
        return trajectory

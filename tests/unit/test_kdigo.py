"""
Unit Tests for KDIGO Classification

Category boundaries, heat-map monotonicity, derived clinical flags and
input validation.
"""
import math

import pytest

from ckd_monitor.core.classification import KDIGOClassifier, classify
from ckd_monitor.models import AlbuminuriaCategory, GFRCategory, RiskLevel
from ckd_monitor.utils import ValidationError


@pytest.fixture
def classifier() -> KDIGOClassifier:
    return KDIGOClassifier()


class TestGFRCategories:
    @pytest.mark.parametrize("egfr,expected", [
        (120, GFRCategory.G1),
        (90, GFRCategory.G1),
        (89.9, GFRCategory.G2),
        (60, GFRCategory.G2),
        (59.9, GFRCategory.G3A),
        (45, GFRCategory.G3A),
        (44.9, GFRCategory.G3B),
        (30, GFRCategory.G3B),
        (29.9, GFRCategory.G4),
        (15, GFRCategory.G4),
        (14.9, GFRCategory.G5),
        (0, GFRCategory.G5),
    ])
    def test_boundaries(self, classifier, egfr, expected):
        assert classifier.classify(egfr).gfr_category == expected


class TestAlbuminuriaCategories:
    @pytest.mark.parametrize("uacr,expected", [
        (0, AlbuminuriaCategory.A1),
        (29.9, AlbuminuriaCategory.A1),
        (30, AlbuminuriaCategory.A2),
        (300, AlbuminuriaCategory.A2),
        (300.1, AlbuminuriaCategory.A3),
        (None, AlbuminuriaCategory.UNKNOWN),
    ])
    def test_boundaries(self, classifier, uacr, expected):
        assert classifier.classify(75, uacr).albuminuria_category == expected

    def test_missing_uacr_uses_a1_row(self, classifier):
        unknown = classifier.classify(50)
        measured = classifier.classify(50, 10)
        assert unknown.risk_level == measured.risk_level == RiskLevel.MODERATE
        assert unknown.health_state == "G3a-unknown"
        assert not unknown.albuminuria_measured


class TestRiskMonotonicity:
    EGFRS = [120, 95, 75, 55, 40, 20, 10]
    UACRS = [5, 50, 500]

    def test_lower_egfr_never_lowers_risk(self, classifier):
        for uacr in self.UACRS:
            severities = [classifier.classify(e, uacr).risk_level.severity for e in self.EGFRS]
            assert severities == sorted(severities)

    def test_higher_uacr_never_lowers_risk(self, classifier):
        for egfr in self.EGFRS:
            severities = [classifier.classify(egfr, u).risk_level.severity for u in self.UACRS]
            assert severities == sorted(severities)

    @pytest.mark.parametrize("egfr,uacr,expected", [
        (95, 10, RiskLevel.LOW),
        (95, 100, RiskLevel.MODERATE),
        (95, 400, RiskLevel.HIGH),
        (50, 10, RiskLevel.MODERATE),
        (50, 100, RiskLevel.HIGH),
        (40, 10, RiskLevel.HIGH),
        (40, 100, RiskLevel.VERY_HIGH),
        (20, 10, RiskLevel.VERY_HIGH),
    ])
    def test_heat_map_cells(self, classifier, egfr, uacr, expected):
        assert classifier.classify(egfr, uacr).risk_level == expected


class TestStageAndFlags:
    def test_scenario_a_final_classification(self, classifier):
        result = classifier.classify(42)
        assert result.gfr_category == GFRCategory.G3B
        assert result.risk_level == RiskLevel.HIGH
        assert result.ckd_stage_name == "CKD Stage 3b"
        assert result.requires_nephrology_referral

    def test_g1_without_albuminuria_is_not_ckd(self, classifier):
        result = classifier.classify(95, 10)
        assert not result.is_ckd
        assert result.ckd_stage_name == "No CKD"

    def test_g2_with_albuminuria_is_stage_2(self, classifier):
        result = classifier.classify(70, 45)
        assert result.ckd_stage == 2
        assert result.recommend_ras_inhibitor
        assert result.recommend_sglt2i
        assert result.target_bp == "<130/80 mmHg"

    def test_sglt2i_not_recommended_below_20(self, classifier):
        result = classifier.classify(18, 400)
        assert result.recommend_ras_inhibitor
        assert not result.recommend_sglt2i
        assert result.requires_dialysis_planning

    def test_stage_5_label(self, classifier):
        assert classifier.classify(10).ckd_stage_name == "CKD Stage 5 (kidney failure)"

    def test_to_dict(self):
        data = classify(52, 45).to_dict()
        assert data["health_state"] == "G3a-A2"
        assert data["risk_level"] == "high"
        assert data["risk_color"] == "orange"
        assert data["monitoring_frequency"] == "Every 3-6 months"


class TestValidation:
    @pytest.mark.parametrize("egfr", [None, "55", -1, math.nan, math.inf, True])
    def test_invalid_egfr_rejected(self, classifier, egfr):
        with pytest.raises(ValidationError) as exc_info:
            classifier.classify(egfr)
        assert exc_info.value.field == "egfr"

    @pytest.mark.parametrize("uacr", [-5, math.nan, "high"])
    def test_invalid_uacr_rejected(self, classifier, uacr):
        with pytest.raises(ValidationError) as exc_info:
            classifier.classify(55, uacr)
        assert exc_info.value.field == "uacr"

    def test_error_payload(self, classifier):
        with pytest.raises(ValidationError) as exc_info:
            classifier.classify(None)
        payload = exc_info.value.to_dict()
        assert payload["error"] == "VALIDATION_ERROR"
        assert payload["details"]["field"] == "egfr"

    def test_deterministic(self, classifier):
        assert classifier.classify(47.5, 120) == classifier.classify(47.5, 120)

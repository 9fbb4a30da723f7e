"""
Unit Tests for the Alert Engine
"""
import pytest

from ckd_monitor.core.alerts import AlertEngine
from ckd_monitor.core.progression import StateTransitionDetector
from ckd_monitor.models import AlertSeverity, Patient


@pytest.fixture
def engine() -> AlertEngine:
    return AlertEngine()


@pytest.fixture
def assess(record_pair):
    detector = StateTransitionDetector()

    def _assess(prev_egfr, prev_uacr, curr_egfr, curr_uacr):
        return detector.detect(*record_pair(prev_egfr, prev_uacr, curr_egfr, curr_uacr))

    return _assess


class TestAlertRules:
    def test_scenario_a_risk_increase_warning(self, engine, assess):
        alert = engine.evaluate(assess(48, None, 42, None))
        assert alert is not None
        assert alert.severity == AlertSeverity.WARNING
        assert alert.alert_type == "risk_increase"
        assert alert.priority == 2
        assert alert.title.startswith("WARNING:")

    def test_entering_stage_4_is_critical(self, engine, assess):
        alert = engine.evaluate(assess(32, None, 28, None))
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.alert_type == "stage_4_ckd"
        assert alert.priority == 1
        assert "Urgent Action Required" in alert.title

    def test_kidney_failure_type(self, engine, assess):
        alert = engine.evaluate(assess(20, None, 12, None))
        assert alert.alert_type == "kidney_failure"
        assert alert.severity == AlertSeverity.CRITICAL

    def test_new_a3_is_critical(self, engine, assess):
        alert = engine.evaluate(assess(70, 200, 70, 400))
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.alert_type == "severe_albuminuria"

    def test_rapid_progression_type(self, engine, assess):
        alert = engine.evaluate(assess(89, None, 65, None))
        assert alert.alert_type == "rapid_progression"
        assert alert.severity == AlertSeverity.WARNING

    def test_albuminuria_tier_crossing_type(self, engine, assess):
        alert = engine.evaluate(assess(95, 20, 95, 40))
        assert alert.alert_type == "threshold_crossed"

    def test_improvement_never_alerts(self, engine, assess):
        assert engine.evaluate(assess(40, 50, 50, 20)) is None

    def test_worsening_without_crossing_or_risk_increase(self, engine, assess):
        transition = assess(16, None, 14, None)
        assert not engine.should_alert(transition)
        assert engine.evaluate(transition) is None


class TestAlertContent:
    def test_patient_label_in_title_and_message(self, engine, assess):
        patient = Patient(
            id="patient-1", medical_record_number="MRN-42",
            first_name="Ada", last_name="Lovelace",
        )
        alert = engine.evaluate(assess(32, None, 28, None), patient)
        assert "Ada Lovelace (MRN-42)" in alert.title
        assert "Current eGFR: 28.0" in alert.message
        assert "Previous eGFR: 32.0" in alert.message

    def test_reasons_copied_into_message(self, engine, assess):
        alert = engine.evaluate(assess(48, None, 42, None))
        for reason in alert.reasons:
            assert reason in alert.message

    def test_to_dict(self, engine, assess):
        data = engine.evaluate(assess(32, None, 28, None)).to_dict()
        assert data["severity"] == "critical"
        assert isinstance(data["reasons"], list)

"""
Unit Tests for the CKD Diagnosis Detector

Confirmation window handling, lapse/reset and the safety property that a
diagnosis is never confirmed without two abnormal results 76-104 days apart.
"""
from datetime import timedelta

import pytest

from ckd_monitor.core.diagnosis import is_abnormal
from ckd_monitor.models import ActionPriority, ActionStatus, ActionType, DiagnosisState
from ckd_monitor.utils import StateConflictError


@pytest.fixture
def patient(make_patient):
    return make_patient(has_hypertension=True)


@pytest.fixture
def feed(store, diagnosis_detector, patient, t0):
    """feed(day, egfr, uacr=None) -> DiagnosisOutcome"""
    def _feed(day, egfr, uacr=None):
        with store.unit_of_work() as uow:
            return diagnosis_detector.process_result(
                uow, patient.id, t0 + timedelta(days=day), egfr, uacr
            )
    return _feed


def _events(store, patient_id):
    with store.unit_of_work() as uow:
        return uow.list_diagnosis_events(patient_id)


class TestAbnormalDefinition:
    @pytest.mark.parametrize("egfr,uacr,expected", [
        (59.9, None, True),
        (60, None, False),
        (75, 30, False),
        (75, 30.1, True),
        (55, 200, True),
    ])
    def test_is_abnormal(self, egfr, uacr, expected):
        assert is_abnormal(egfr, uacr) is expected


class TestScenarioC:
    def test_first_abnormal_opens_event(self, feed, t0):
        outcome = feed(0, 55)
        event = outcome.opened

        assert outcome.state == DiagnosisState.CONFIRMATION_DUE
        assert event.detection_trigger == "egfr_below_60"
        assert event.confirmation_due_at == t0 + timedelta(days=90)
        assert event.window_start_at == t0 + timedelta(days=76)
        assert event.window_end_at == t0 + timedelta(days=104)
        assert not event.diagnosis_confirmed

    def test_day_95_confirms_and_queues_action(self, feed, store, patient):
        feed(0, 55)
        outcome = feed(95, 52)

        assert outcome.state == DiagnosisState.CONFIRMED
        assert outcome.confirmed.ckd_stage_at_diagnosis == "CKD Stage 3a"
        assert outcome.confirmed.egfr_at_diagnosis == 52
        assert not outcome.confirmed.diagnosis_confirmed
        assert outcome.action.action_type == ActionType.CONFIRM_DIAGNOSIS
        assert outcome.action.priority == ActionPriority.HIGH
        assert outcome.action.reference_id == outcome.confirmed.id
        assert outcome.action.clinical_summary["days_apart"] == 95

        with store.unit_of_work() as uow:
            actions = uow.list_actions(patient_id=patient.id, status=ActionStatus.PENDING)
        assert [a.id for a in actions] == [outcome.action.id]

    def test_day_130_does_not_confirm(self, feed, store, patient):
        first = feed(0, 55).opened
        outcome = feed(130, 52)

        assert outcome.confirmed is None
        assert outcome.lapsed.id == first.id
        assert outcome.lapsed.protocol_state == DiagnosisState.LAPSED
        assert outcome.opened is not None
        assert outcome.opened.first_abnormal_egfr == 52

        with store.unit_of_work() as uow:
            assert uow.list_actions(patient_id=patient.id) == []

    def test_window_lapse_resets_to_normal(self, feed, store, diagnosis_detector, patient, t0):
        feed(0, 55)
        with store.unit_of_work() as uow:
            assert diagnosis_detector.sweep_lapsed(uow, t0 + timedelta(days=104)) == []
            lapsed = diagnosis_detector.sweep_lapsed(uow, t0 + timedelta(days=105))
            assert len(lapsed) == 1
            assert lapsed[0].lapse_reason == "confirmation window missed"
            assert uow.open_diagnosis_event(patient.id) is None


class TestWindowBounds:
    @pytest.mark.parametrize("day", [76, 90, 104])
    def test_inclusive_bounds_confirm(self, feed, day):
        feed(0, 55)
        assert feed(day, 50).state == DiagnosisState.CONFIRMED

    def test_result_before_window_is_ignored(self, feed):
        opened = feed(0, 55).opened
        outcome = feed(75, 40)
        assert not outcome.changed
        assert outcome.state == DiagnosisState.CONFIRMATION_DUE
        assert feed(80, 50).confirmed.id == opened.id

    def test_day_105_lapses(self, feed):
        feed(0, 55)
        outcome = feed(105, 65)
        assert outcome.lapsed is not None
        assert outcome.opened is None
        assert outcome.state == DiagnosisState.NORMAL

    def test_normal_result_in_window_lapses(self, feed):
        feed(0, 55)
        outcome = feed(90, 72, 10)
        assert outcome.state == DiagnosisState.NORMAL
        assert outcome.lapsed.lapse_reason == "normal confirmatory result"


class TestSafety:
    def test_normal_results_never_open_events(self, feed, store, patient):
        for day in (0, 90, 180, 270):
            assert feed(day, 75, 10).state == DiagnosisState.NORMAL
        assert _events(store, patient.id) == []

    def test_single_abnormal_never_confirms(self, feed, store, diagnosis_detector, patient, t0):
        feed(0, 45)
        feed(30, 44)
        with store.unit_of_work() as uow:
            diagnosis_detector.sweep_lapsed(uow, t0 + timedelta(days=200))

        events = _events(store, patient.id)
        assert len(events) == 1
        assert events[0].protocol_state == DiagnosisState.LAPSED
        assert not events[0].diagnosis_confirmed

    def test_diagnosed_patient_does_not_reopen(self, feed, store, patient):
        feed(0, 55)
        feed(95, 52)
        outcome = feed(200, 48)
        assert outcome.state == DiagnosisState.CONFIRMED
        assert not outcome.changed
        assert len(_events(store, patient.id)) == 1

    def test_uacr_trigger(self, feed):
        outcome = feed(0, 80, 45)
        assert outcome.opened.detection_trigger == "uacr_above_30"
        confirmed = feed(90, 78, 60).confirmed
        assert confirmed.ckd_stage_at_diagnosis == "CKD Stage 2"


class TestConfirmatoryResult:
    def test_without_open_event_raises(self, store, diagnosis_detector, patient, t0):
        with pytest.raises(StateConflictError) as exc_info:
            with store.unit_of_work() as uow:
                diagnosis_detector.record_confirmatory_result(uow, patient.id, t0, 50)
        assert exc_info.value.details["expected_state"] == "confirmation_due"
        assert exc_info.value.details["actual_state"] == "normal"

    def test_with_open_event_confirms(self, feed, store, diagnosis_detector, patient, t0):
        feed(0, 55)
        with store.unit_of_work() as uow:
            outcome = diagnosis_detector.record_confirmatory_result(
                uow, patient.id, t0 + timedelta(days=88), 50
            )
        assert outcome.state == DiagnosisState.CONFIRMED

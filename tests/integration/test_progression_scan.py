"""
Integration Tests for the Progression Scan

End-to-end runs of ProgressionMonitor against a file-backed SQLite store:
history, transitions, alerts, recommendations, diagnosis detection,
idempotence, failure isolation and cancellation.
"""
import threading
from datetime import timedelta

import pytest

from ckd_monitor.models import (
    ActionType,
    AlertSeverity,
    ChangeType,
    DiagnosisState,
    ObservationType,
    RecommendationType,
)
from ckd_monitor.utils import (
    DataIntegrityError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)


@pytest.fixture
def patient(make_patient):
    return make_patient()


def _scan(monitor, t0, day):
    return monitor.run_scan(as_of=t0 + timedelta(days=day))


class TestHealthStateHistory:
    def test_cycles_increment(self, monitor, patient, t0):
        first = monitor.record_lab_result(patient.id, t0, 55)
        second = monitor.record_lab_result(patient.id, t0 + timedelta(days=180), 48, 20)
        assert first.cycle_number == 0
        assert second.cycle_number == 1
        assert second.health_state == "G3a-A1"

    def test_observations_written(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 55, 45)
        with store.unit_of_work() as uow:
            assert uow.latest_observation(patient.id, ObservationType.EGFR).value == 55
            assert uow.latest_observation(patient.id, ObservationType.UACR).value == 45

    def test_unknown_patient(self, monitor, t0):
        with pytest.raises(NotFoundError):
            monitor.record_lab_result("missing", t0, 55)

    def test_missing_egfr(self, store, monitor, patient, t0):
        with pytest.raises(ValidationError):
            monitor.record_lab_result(patient.id, t0, None)
        with store.unit_of_work() as uow:
            assert uow.health_history(patient.id) == []

    @pytest.mark.parametrize("offset_days", [0, -10])
    def test_out_of_order_result_rejected(self, monitor, patient, t0, offset_days):
        monitor.record_lab_result(patient.id, t0, 55)
        with pytest.raises(DataIntegrityError):
            monitor.record_lab_result(patient.id, t0 + timedelta(days=offset_days), 50)


class TestInitializeBaseline:
    def test_baseline_from_latest_observations(self, store, monitor, patient, t0):
        with store.unit_of_work() as uow:
            uow.add_observation(patient.id, ObservationType.EGFR, 70, t0 - timedelta(days=30))
            uow.add_observation(patient.id, ObservationType.EGFR, 64, t0)
            uow.add_observation(patient.id, ObservationType.UACR, 40, t0)

        baseline = monitor.initialize_baseline(patient.id)
        assert baseline.cycle_number == 0
        assert baseline.egfr == 64
        assert baseline.health_state == "G2-A2"

    def test_idempotent(self, store, monitor, patient, t0):
        with store.unit_of_work() as uow:
            uow.add_observation(patient.id, ObservationType.EGFR, 64, t0)
        first = monitor.initialize_baseline(patient.id)
        second = monitor.initialize_baseline(patient.id)
        assert first.id == second.id
        with store.unit_of_work() as uow:
            assert len(uow.health_history(patient.id)) == 1

    def test_requires_egfr(self, monitor, patient):
        with pytest.raises(ValidationError):
            monitor.initialize_baseline(patient.id)


class TestScenarioA:
    def test_g3a_to_g3b_raises_warning(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 55)
        first = _scan(monitor, t0, 0)
        assert first.processed == 1
        assert first.transitions_created == 0

        monitor.record_lab_result(patient.id, t0 + timedelta(days=180), 48)
        second = _scan(monitor, t0, 180)
        assert second.transitions_created == 0

        monitor.record_lab_result(patient.id, t0 + timedelta(days=360), 42)
        third = _scan(monitor, t0, 360)
        assert third.transitions_created == 1
        assert third.alerts_created == 1
        assert third.recommendations_created >= 1

        with store.unit_of_work() as uow:
            transitions = uow.list_transitions(patient.id)
            alerts = uow.list_alerts(patient_id=patient.id)
            recs = uow.list_recommendations(patient_id=patient.id)

        assert len(transitions) == 1
        assert transitions[0].change_type == ChangeType.WORSENED
        assert transitions[0].from_health_state == "G3a-unknown"
        assert transitions[0].to_health_state == "G3b-unknown"

        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].alert_type == "risk_increase"
        assert alerts[0].transition_id == transitions[0].id

        assert RecommendationType.NEPHROLOGY_REFERRAL in {r.recommendation_type for r in recs}
        assert all(r.alert_id == alerts[0].id for r in recs)
        assert all(r.cycle_number == 2 for r in recs)

    def test_rescan_creates_nothing(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 48)
        monitor.record_lab_result(patient.id, t0 + timedelta(days=180), 42)
        first = _scan(monitor, t0, 180)
        second = _scan(monitor, t0, 180)

        assert first.transitions_created == 1
        assert second.patients_considered == 0
        assert second.transitions_created == 0
        assert second.alerts_created == 0
        assert second.recommendations_created == 0

        with store.unit_of_work() as uow:
            assert len(uow.list_transitions(patient.id)) == 1
            assert len(uow.list_alerts(patient_id=patient.id)) == 1

    def test_reprocessing_patient_is_idempotent(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 48)
        monitor.record_lab_result(patient.id, t0 + timedelta(days=180), 42)
        monitor.process_patient(patient.id)
        with store.unit_of_work() as uow:
            uow.set_cursor(patient.id, -1, "reset")
        again = monitor.process_patient(patient.id)

        assert again.transition is None
        assert not again.alert_created
        assert again.recommendations_created == 0

    def test_improvement_records_transition_without_alert(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 40, 50)
        monitor.record_lab_result(patient.id, t0 + timedelta(days=180), 50, 20)
        report = _scan(monitor, t0, 180)

        assert report.transitions_created == 1
        assert report.alerts_created == 0
        assert report.recommendations_created == 0


class TestScenarioC:
    def test_confirmation_through_scans(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 55)
        first = _scan(monitor, t0, 0)
        assert first.diagnosis_events_opened == 1

        monitor.record_lab_result(patient.id, t0 + timedelta(days=95), 52)
        second = _scan(monitor, t0, 95)
        assert second.diagnoses_detected == 1

        with store.unit_of_work() as uow:
            actions = uow.list_actions(patient_id=patient.id)
            events = uow.list_diagnosis_events(patient.id)
        assert [a.action_type for a in actions] == [ActionType.CONFIRM_DIAGNOSIS]
        assert events[0].protocol_state == DiagnosisState.CONFIRMED

    def test_missed_window_lapses_on_sweep(self, store, monitor, patient, t0):
        monitor.record_lab_result(patient.id, t0, 55)
        _scan(monitor, t0, 0)

        assert _scan(monitor, t0, 104).lapsed == 0
        report = _scan(monitor, t0, 105)
        assert report.patients_considered == 0
        assert report.lapsed == 1

        with store.unit_of_work() as uow:
            events = uow.list_diagnosis_events(patient.id)
        assert events[0].protocol_state == DiagnosisState.LAPSED
        assert events[0].lapse_reason == "confirmation window missed"


class TestScanResilience:
    @pytest.fixture
    def patients(self, make_patient, monitor, t0):
        created = [make_patient() for _ in range(3)]
        for p in created:
            monitor.record_lab_result(p.id, t0, 48)
            monitor.record_lab_result(p.id, t0 + timedelta(days=180), 42)
        return created

    def test_many_patients_in_parallel(self, store, make_patient, monitor, t0):
        created = [make_patient() for _ in range(12)]
        for p in created:
            monitor.record_lab_result(p.id, t0, 48)
            monitor.record_lab_result(p.id, t0 + timedelta(days=180), 42)

        report = _scan(monitor, t0, 180)
        assert report.patients_considered == 12
        assert report.processed == 12
        assert report.transitions_created == 12
        assert report.failed == []

    def test_failing_patient_is_isolated(self, monkeypatch, store, monitor, patients, t0):
        bad = patients[1]
        original = monitor.process_patient

        def _process(patient_id):
            if patient_id == bad.id:
                raise RuntimeError("corrupt row")
            return original(patient_id)

        monkeypatch.setattr(monitor, "process_patient", _process)
        report = _scan(monitor, t0, 180)

        assert report.processed == 2
        assert report.failed == [
            {"patient_id": bad.id, "error": "RuntimeError", "message": "corrupt row"}
        ]
        with store.unit_of_work() as uow:
            assert uow.patients_pending_scan() == [bad.id]

        monkeypatch.setattr(monitor, "process_patient", original)
        retry = _scan(monitor, t0, 180)
        assert retry.processed == 1
        assert retry.transitions_created == 1

    def test_transient_error_is_retried(self, monkeypatch, monitor, patients, t0):
        original = monitor.process_patient
        calls = {}

        def _flaky(patient_id):
            calls[patient_id] = calls.get(patient_id, 0) + 1
            if calls[patient_id] == 1:
                raise TransientStorageError("database is locked", operation="unit_of_work")
            return original(patient_id)

        monkeypatch.setattr(monitor, "process_patient", _flaky)
        report = _scan(monitor, t0, 180)

        assert report.processed == 3
        assert report.failed == []
        assert all(n == 2 for n in calls.values())

    def test_persistent_transient_error_is_reported(self, monkeypatch, monitor, patients, t0):
        calls = []

        def _locked(patient_id):
            calls.append(patient_id)
            raise TransientStorageError("database is locked", operation="unit_of_work")

        monkeypatch.setattr(monitor, "process_patient", _locked)
        report = _scan(monitor, t0, 180)

        assert report.processed == 0
        assert len(report.failed) == 3
        assert {f["error"] for f in report.failed} == {"TRANSIENT_STORAGE_ERROR"}
        assert len(calls) == 3 * (monitor.max_retries + 1)

    def test_cancelled_scan_skips_remaining(self, store, monitor, patients, t0):
        cancel = threading.Event()
        cancel.set()
        report = monitor.run_scan(as_of=t0 + timedelta(days=180), cancel_event=cancel)

        assert report.cancelled
        assert report.processed == 0
        assert report.skipped == 3
        assert report.to_dict()["cancelled"] is True
        with store.unit_of_work() as uow:
            assert len(uow.patients_pending_scan()) == 3

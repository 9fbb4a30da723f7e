"""
Unit Tests for the Doctor Action Queue and Treatment Protocol Builder

Covers the confirm → protocol → approve workflow, decline paths and
exactly-once completion under concurrent callers.
"""
import threading
from datetime import timedelta

import pytest

from ckd_monitor.core.diagnosis import CompletionResult, TreatmentProtocolBuilder
from ckd_monitor.models import (
    ActionPriority,
    ActionStatus,
    ActionType,
    DiagnosisState,
    ProtocolStatus,
)
from ckd_monitor.utils import NotFoundError, StateConflictError, ValidationError


@pytest.fixture
def patient(make_patient):
    return make_patient(has_diabetes=True, has_hypertension=True)


@pytest.fixture
def confirm_action(store, diagnosis_detector, patient, t0):
    """A pending confirm_diagnosis action for a Scenario C patient."""
    with store.unit_of_work() as uow:
        diagnosis_detector.process_result(uow, patient.id, t0, 55)
        outcome = diagnosis_detector.process_result(uow, patient.id, t0 + timedelta(days=95), 52)
    return outcome.action


class TestEnqueue:
    def test_enqueue_is_idempotent(self, action_queue, patient):
        first = action_queue.enqueue(patient.id, ActionType.CONFIRM_DIAGNOSIS, "event-1", "Confirm")
        second = action_queue.enqueue(patient.id, ActionType.CONFIRM_DIAGNOSIS, "event-1", "Confirm")
        assert first.id == second.id
        assert len(action_queue.list(patient_id=patient.id)) == 1

    def test_list_orders_by_priority(self, action_queue, patient):
        action_queue.enqueue(patient.id, ActionType.CONFIRM_DIAGNOSIS, "e-low", "Low",
                             priority=ActionPriority.LOW)
        action_queue.enqueue(patient.id, ActionType.CONFIRM_DIAGNOSIS, "e-crit", "Critical",
                             priority=ActionPriority.CRITICAL)
        action_queue.enqueue(patient.id, ActionType.CONFIRM_DIAGNOSIS, "e-high", "High",
                             priority=ActionPriority.HIGH)

        titles = [a.title for a in action_queue.list()]
        assert titles == ["Critical", "High", "Low"]

    def test_list_filters(self, action_queue, patient):
        action_queue.enqueue(patient.id, ActionType.CONFIRM_DIAGNOSIS, "e-1", "Confirm")
        action_queue.enqueue(patient.id, ActionType.APPROVE_TREATMENT, "p-1", "Approve",
                             priority=ActionPriority.MODERATE)
        assert [a.title for a in action_queue.list(action_type=ActionType.APPROVE_TREATMENT)] == ["Approve"]
        assert [a.title for a in action_queue.list(priority=ActionPriority.HIGH)] == ["Confirm"]

    def test_get_unknown_action(self, action_queue):
        with pytest.raises(NotFoundError):
            action_queue.get("missing")


class TestConfirmDiagnosis:
    def test_confirm_drafts_protocol_and_queues_approval(self, action_queue, confirm_action, patient):
        result = action_queue.complete(confirm_action.id, actor="dr.grey", notes="agreed")

        assert result.action.status == ActionStatus.COMPLETED
        assert result.action.completed_by == "dr.grey"
        assert result.diagnosis_event.diagnosis_confirmed
        assert result.diagnosis_event.confirmed_by == "dr.grey"

        protocol = result.protocol
        assert protocol.status == ProtocolStatus.PENDING
        assert protocol.protocol_name == "Early CKD Stage 3a Management Protocol"
        assert {m["drug_class"] for m in protocol.medication_orders} == {
            "RAS inhibitor", "SGLT2 inhibitor",
        }

        follow_up = result.follow_up_action
        assert follow_up.action_type == ActionType.APPROVE_TREATMENT
        assert follow_up.reference_id == protocol.id
        assert follow_up.status == ActionStatus.PENDING

    def test_second_completion_conflicts(self, action_queue, confirm_action):
        action_queue.complete(confirm_action.id, actor="dr.grey")
        with pytest.raises(StateConflictError) as exc_info:
            action_queue.complete(confirm_action.id, actor="dr.house")
        assert exc_info.value.details["expected_state"] == "pending"
        assert exc_info.value.details["actual_state"] == "completed"

    def test_decline_lapses_diagnosis(self, store, action_queue, confirm_action, patient):
        result = action_queue.complete(confirm_action.id, actor="dr.grey", approved=False)

        assert result.action.status == ActionStatus.DECLINED
        assert result.diagnosis_event.protocol_state == DiagnosisState.LAPSED
        assert result.protocol is None
        with store.unit_of_work() as uow:
            assert uow.list_protocols(patient.id) == []

    def test_actor_required(self, action_queue, confirm_action):
        with pytest.raises(ValidationError):
            action_queue.complete(confirm_action.id, actor=" ")

    def test_unknown_action(self, action_queue):
        with pytest.raises(NotFoundError):
            action_queue.complete("missing", actor="dr.grey")


class TestApproveTreatment:
    def test_approval_activates_protocol(self, store, action_queue, confirm_action, patient):
        approval = action_queue.complete(confirm_action.id, actor="dr.grey").follow_up_action
        result = action_queue.complete(approval.id, actor="dr.grey", notes="start now")

        assert result.protocol.status == ProtocolStatus.ACTIVE
        assert result.protocol.approved_by == "dr.grey"
        assert result.protocol.approval_notes == "start now"
        with store.unit_of_work() as uow:
            refreshed = uow.get_patient(patient.id)
        assert refreshed.on_ras_inhibitor
        assert refreshed.on_sglt2i

    def test_decline_marks_protocol_declined(self, action_queue, confirm_action):
        approval = action_queue.complete(confirm_action.id, actor="dr.grey").follow_up_action
        result = action_queue.complete(approval.id, actor="dr.grey", approved=False)
        assert result.protocol.status == ProtocolStatus.DECLINED
        assert result.action.status == ActionStatus.DECLINED

    def test_approval_requires_confirmed_diagnosis(self, store, action_queue, patient, t0):
        with store.unit_of_work() as uow:
            event = uow.add_diagnosis_event({
                "patient_id": patient.id,
                "protocol_state": DiagnosisState.CONFIRMED,
                "detection_trigger": "egfr_below_60",
                "first_abnormal_at": t0,
                "first_abnormal_egfr": 50,
                "confirmation_due_at": t0 + timedelta(days=90),
                "window_start_at": t0 + timedelta(days=76),
                "window_end_at": t0 + timedelta(days=104),
                "diagnosis_confirmed": False,
            })
            protocol = uow.add_protocol({
                "patient_id": patient.id,
                "diagnosis_event_id": event.id,
                "protocol_name": "Early CKD Stage 3a Management Protocol",
                "ckd_stage": "CKD Stage 3a",
                "medication_orders": [],
                "lab_monitoring_schedule": [],
                "referrals": [],
                "lifestyle_modifications": [],
            })
        action = action_queue.enqueue(patient.id, ActionType.APPROVE_TREATMENT, protocol.id, "Approve")

        with pytest.raises(StateConflictError) as exc_info:
            action_queue.complete(action.id, actor="dr.grey")
        assert exc_info.value.details["entity"] == "DiagnosisEvent"
        assert action_queue.get(action.id).status == ActionStatus.PENDING


class TestExactlyOnce:
    def test_concurrent_completion(self, store, action_queue, confirm_action, patient):
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def _complete(actor):
            barrier.wait()
            try:
                result = action_queue.complete(confirm_action.id, actor=actor)
            except StateConflictError as e:
                result = e
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=_complete, args=(f"dr.{n}",)) for n in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        successes = [o for o in outcomes if isinstance(o, CompletionResult)]
        conflicts = [o for o in outcomes if isinstance(o, StateConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1

        with store.unit_of_work() as uow:
            assert len(uow.list_protocols(patient.id)) == 1
            approvals = uow.list_actions(
                action_type=ActionType.APPROVE_TREATMENT, patient_id=patient.id
            )
        assert len(approvals) == 1


class TestProtocolBuilder:
    def test_requires_confirmed_diagnosis(self, store, diagnosis_detector, patient, t0):
        with store.unit_of_work() as uow:
            diagnosis_detector.process_result(uow, patient.id, t0, 55)
            confirmed = diagnosis_detector.process_result(
                uow, patient.id, t0 + timedelta(days=90), 50
            ).confirmed
        with pytest.raises(StateConflictError):
            TreatmentProtocolBuilder().build(confirmed, patient)

    def test_sections(self, store, action_queue, confirm_action):
        protocol = action_queue.complete(confirm_action.id, actor="dr.grey").protocol
        tests = [entry["test"] for entry in protocol.lab_monitoring_schedule]
        assert "serum potassium" in tests
        assert any("Blood pressure target" in item for item in protocol.lifestyle_modifications)
        assert any("HbA1c" in item for item in protocol.lifestyle_modifications)

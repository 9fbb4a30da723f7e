"""
Doctor Action Queue

Human-in-the-loop work items for the CKD diagnosis workflow:

    confirm_diagnosis  – queued when a confirmatory result lands in the window
    approve_treatment  – queued when the doctor confirms the diagnosis

Completion is exactly-once: the pending → completed/declined step is a
conditional UPDATE, and its side effects (diagnosis confirmation, protocol
drafting, protocol activation) commit in the same transaction.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ckd_monitor.models import (
    ActionPriority,
    ActionStatus,
    ActionType,
    DiagnosisEvent,
    DiagnosisState,
    DoctorAction,
    ProtocolStatus,
    TreatmentProtocol,
)
from ckd_monitor.storage import CKDStore, StoreSession
from ckd_monitor.utils import StateConflictError, ValidationError, get_logger, utcnow
from .protocols import TreatmentProtocolBuilder

logger = get_logger(__name__)


@dataclass
class CompletionResult:
    """Outcome of completing one doctor action."""
    action: DoctorAction
    diagnosis_event: Optional[DiagnosisEvent] = None
    protocol: Optional[TreatmentProtocol] = None
    follow_up_action: Optional[DoctorAction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_dict(),
            "diagnosis_event": self.diagnosis_event.to_dict() if self.diagnosis_event else None,
            "protocol": self.protocol.to_dict() if self.protocol else None,
            "follow_up_action": self.follow_up_action.to_dict() if self.follow_up_action else None,
        }


class DoctorActionQueue:
    """
    Queue of doctor actions backed by the durable store.

    Usage:
        queue = DoctorActionQueue(store)
        pending = queue.list(status=ActionStatus.PENDING)
        result = queue.complete(pending[0].id, actor="dr.smith", approved=True)
    """

    def __init__(self, store: CKDStore, protocol_builder: TreatmentProtocolBuilder = None):
        self.store = store
        self.protocol_builder = protocol_builder or TreatmentProtocolBuilder()

    # ── Enqueue / read ────────────────────────────────────────────────────────

    def enqueue(
        self,
        patient_id: str,
        action_type: ActionType,
        reference_id: str,
        title: str,
        description: str = "",
        priority: ActionPriority = ActionPriority.HIGH,
        clinical_summary: Optional[Dict[str, Any]] = None,
        diagnosis_event_id: Optional[str] = None,
        treatment_protocol_id: Optional[str] = None,
        due_at: Optional[datetime] = None,
        uow: Optional[StoreSession] = None,
    ) -> DoctorAction:
        """
        Queue an action, or return the pending one already queued for the same
        (patient, action type, reference). Pass ``uow`` to join an open
        transaction.
        """
        values = {
            "patient_id": patient_id,
            "action_type": action_type,
            "reference_id": reference_id,
            "title": title,
            "description": description,
            "priority": priority,
            "clinical_summary": clinical_summary or {},
            "diagnosis_event_id": diagnosis_event_id,
            "treatment_protocol_id": treatment_protocol_id,
            "due_at": due_at,
        }
        if uow is not None:
            return self._enqueue(uow, values)
        with self.store.unit_of_work() as own:
            return self._enqueue(own, values)

    @staticmethod
    def _enqueue(uow: StoreSession, values: Dict[str, Any]) -> DoctorAction:
        existing = uow.find_pending_action(
            values["patient_id"], values["action_type"], values["reference_id"]
        )
        if existing is not None:
            return existing
        action = uow.add_action(values)
        logger.info(
            f"DoctorActionQueue [{action.patient_id}]: queued {action.action_type.value} "
            f"({action.priority.value}) for {action.reference_id}"
        )
        return action

    def get(self, action_id: str) -> DoctorAction:
        with self.store.unit_of_work() as uow:
            return uow.get_action(action_id)

    def list(
        self,
        action_type: Optional[ActionType] = None,
        priority: Optional[ActionPriority] = None,
        status: Optional[ActionStatus] = None,
        patient_id: Optional[str] = None,
    ) -> List[DoctorAction]:
        """Actions ordered critical → low, then oldest first."""
        with self.store.unit_of_work() as uow:
            return uow.list_actions(
                action_type=action_type, priority=priority, status=status, patient_id=patient_id
            )

    # ── Completion ────────────────────────────────────────────────────────────

    def complete(
        self,
        action_id: str,
        actor: str,
        notes: Optional[str] = None,
        approved: bool = True,
    ) -> CompletionResult:
        """
        Complete (approved=True) or decline (approved=False) a pending action.

        Raises:
            ValidationError:    no actor given
            NotFoundError:      unknown action or referenced entity
            StateConflictError: action already completed/declined, or the
                                referenced diagnosis/protocol is not in a state
                                that allows this decision
        """
        if not actor or not str(actor).strip():
            raise ValidationError("actor is required to complete an action", field="actor", value=actor)

        with self.store.unit_of_work() as uow:
            action = uow.get_action(action_id)
            self._require_pending(action)

            if action.action_type == ActionType.CONFIRM_DIAGNOSIS:
                event = uow.get_diagnosis_event(action.reference_id)
                self._require_confirmable(event)
                self._claim(uow, action, approved, actor, notes)
                result = self._apply_diagnosis_decision(uow, action, event, approved, actor, notes)
            else:
                protocol = uow.get_protocol(action.reference_id)
                event = uow.get_diagnosis_event(protocol.diagnosis_event_id)
                self._require_approvable(protocol, event)
                self._claim(uow, action, approved, actor, notes)
                result = self._apply_treatment_decision(uow, action, protocol, event, approved, actor, notes)

        logger.info(
            f"DoctorActionQueue [{action.patient_id}]: {action.action_type.value} "
            f"{'completed' if approved else 'declined'} by {actor}"
        )
        return result

    @staticmethod
    def _require_pending(action: DoctorAction) -> None:
        if action.is_terminal:
            raise StateConflictError(
                f"Doctor action '{action.id}' is already {action.status.value}",
                entity="DoctorAction",
                entity_id=action.id,
                expected=ActionStatus.PENDING.value,
                actual=action.status.value,
            )

    @staticmethod
    def _require_confirmable(event: DiagnosisEvent) -> None:
        if event.protocol_state != DiagnosisState.CONFIRMED or event.diagnosis_confirmed:
            raise StateConflictError(
                f"Diagnosis event '{event.id}' cannot be confirmed",
                entity="DiagnosisEvent",
                entity_id=event.id,
                expected=DiagnosisState.CONFIRMED.value,
                actual=event.protocol_state.value,
                details={"diagnosis_confirmed": event.diagnosis_confirmed},
            )

    @staticmethod
    def _require_approvable(protocol: TreatmentProtocol, event: DiagnosisEvent) -> None:
        if not event.diagnosis_confirmed:
            raise StateConflictError(
                "Treatment approval requires a confirmed diagnosis",
                entity="DiagnosisEvent",
                entity_id=event.id,
                expected="diagnosis_confirmed",
                actual=event.protocol_state.value,
            )
        if protocol.status != ProtocolStatus.PENDING:
            raise StateConflictError(
                f"Treatment protocol '{protocol.id}' is already {protocol.status.value}",
                entity="TreatmentProtocol",
                entity_id=protocol.id,
                expected=ProtocolStatus.PENDING.value,
                actual=protocol.status.value,
            )

    @staticmethod
    def _claim(uow: StoreSession, action: DoctorAction, approved: bool,
               actor: str, notes: Optional[str]) -> None:
        new_status = ActionStatus.COMPLETED if approved else ActionStatus.DECLINED
        if not uow.complete_action(action.id, new_status, actor, notes):
            current = uow.get_action(action.id)
            raise StateConflictError(
                f"Doctor action '{action.id}' was completed concurrently",
                entity="DoctorAction",
                entity_id=action.id,
                expected=ActionStatus.PENDING.value,
                actual=current.status.value,
            )

    def _apply_diagnosis_decision(
        self,
        uow: StoreSession,
        action: DoctorAction,
        event: DiagnosisEvent,
        approved: bool,
        actor: str,
        notes: Optional[str],
    ) -> CompletionResult:
        now = utcnow()
        if not approved:
            uow.update_diagnosis_event(
                event.id,
                {"protocol_state": DiagnosisState.CONFIRMED},
                {
                    "protocol_state": DiagnosisState.LAPSED,
                    "lapse_reason": f"diagnosis declined by {actor}" + (f": {notes}" if notes else ""),
                },
            )
            return CompletionResult(
                action=uow.get_action(action.id),
                diagnosis_event=uow.get_diagnosis_event(event.id),
            )

        confirmed = uow.update_diagnosis_event(
            event.id,
            {"protocol_state": DiagnosisState.CONFIRMED, "diagnosis_confirmed": False},
            {"diagnosis_confirmed": True, "confirmed_by": actor, "confirmed_at": now},
        )
        if not confirmed:
            current = uow.get_diagnosis_event(event.id)
            raise StateConflictError(
                f"Diagnosis event '{event.id}' changed while being confirmed",
                entity="DiagnosisEvent",
                entity_id=event.id,
                expected=DiagnosisState.CONFIRMED.value,
                actual=current.protocol_state.value,
            )

        event = uow.get_diagnosis_event(event.id)
        patient = uow.get_patient(event.patient_id)
        draft = self.protocol_builder.build(event, patient)
        protocol = uow.add_protocol({
            "patient_id": patient.id,
            "diagnosis_event_id": event.id,
            "status": ProtocolStatus.PENDING,
            **draft.to_dict(),
        })
        follow_up = self._enqueue(uow, {
            "patient_id": patient.id,
            "action_type": ActionType.APPROVE_TREATMENT,
            "reference_id": protocol.id,
            "title": f"Approve {protocol.protocol_name}",
            "description": (
                f"Review and approve the early treatment protocol for "
                f"{patient.full_name or patient.id} ({protocol.ckd_stage})."
            ),
            "priority": ActionPriority.HIGH,
            "clinical_summary": {
                "ckd_stage": protocol.ckd_stage,
                "medication_orders": [m["drug_class"] for m in protocol.medication_orders],
                "referrals": [r["specialty"] for r in protocol.referrals],
                "confirmed_by": actor,
            },
            "diagnosis_event_id": event.id,
            "treatment_protocol_id": protocol.id,
            "due_at": None,
        })
        return CompletionResult(
            action=uow.get_action(action.id),
            diagnosis_event=event,
            protocol=protocol,
            follow_up_action=follow_up,
        )

    @staticmethod
    def _apply_treatment_decision(
        uow: StoreSession,
        action: DoctorAction,
        protocol: TreatmentProtocol,
        event: DiagnosisEvent,
        approved: bool,
        actor: str,
        notes: Optional[str],
    ) -> CompletionResult:
        new_status = ProtocolStatus.ACTIVE if approved else ProtocolStatus.DECLINED
        uow.update_protocol(
            protocol.id,
            {"status": ProtocolStatus.PENDING},
            {
                "status": new_status,
                "approved_by": actor,
                "approved_at": utcnow(),
                "approval_notes": notes or "",
            },
        )
        if approved:
            classes = {m["drug_class"] for m in protocol.medication_orders}
            uow.update_patient_therapy(
                protocol.patient_id,
                on_ras_inhibitor=True if "RAS inhibitor" in classes else None,
                on_sglt2i=True if "SGLT2 inhibitor" in classes else None,
            )
        return CompletionResult(
            action=uow.get_action(action.id),
            diagnosis_event=event,
            protocol=uow.get_protocol(protocol.id),
        )

"""
SQLAlchemy adapter over the durable store.

``CKDStore.unit_of_work()`` opens one transaction and yields a
``StoreSession``; everything written through that session commits or rolls
back together. Rows are validated into ``ckd_monitor.models`` records on
read, so callers never see raw database values.
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import Table, and_, case, create_engine, event, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from ckd_monitor.config import settings
from ckd_monitor.models import (
    ActionPriority,
    ActionRecommendation,
    ActionStatus,
    DiagnosisEvent,
    DiagnosisState,
    DoctorAction,
    HealthStateRecord,
    LabObservation,
    MonitoringAlert,
    ObservationStatus,
    ObservationType,
    Patient,
    StateTransition,
    TreatmentProtocol,
)
from ckd_monitor.utils import NotFoundError, TransientStorageError, get_logger, utcnow
from . import tables as t

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

OPEN_DIAGNOSIS_STATES = (
    DiagnosisState.ABNORMAL_PENDING.value,
    DiagnosisState.CONFIRMATION_DUE.value,
)


def new_id() -> str:
    return uuid.uuid4().hex


def _plain(values: Dict[str, Any]) -> Dict[str, Any]:
    """Enum members → their values; everything else untouched."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


def _enum_values(items: Iterable[Any]) -> List[Any]:
    return [i.value if isinstance(i, Enum) else i for i in items]


def _install_sqlite_locking(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up
    # front so concurrent units serialize instead of failing on upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        _install_sqlite_locking(engine)
        return engine
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class CKDStore:
    """
    Entry point to the durable store.

    Args:
        database_url: SQLAlchemy URL; defaults to ``settings.database_url``
        echo:         log emitted SQL
        create_schema: create missing tables on construction
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        create_schema: bool = True,
    ):
        self.database_url = database_url or settings.database_url
        self.engine = build_engine(self.database_url, echo=echo)
        if create_schema:
            self.create_schema()

    def create_schema(self) -> None:
        t.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def unit_of_work(self) -> Iterator["StoreSession"]:
        """
        One atomic transaction.

        Raises:
            TransientStorageError: the database reported an operational
                failure (lock timeout, lost connection); safe to retry.
        """
        try:
            with self.engine.begin() as conn:
                yield StoreSession(conn)
        except OperationalError as exc:
            logger.warning(f"CKDStore: transient storage failure: {exc.orig}")
            raise TransientStorageError(
                f"Storage operation failed: {exc.orig}",
                operation="unit_of_work",
            ) from exc


class StoreSession:
    """Typed queries and writes bound to one open transaction."""

    def __init__(self, conn: Connection):
        self.conn = conn

    # ── Generic helpers ────────────────────────────────────────────────────

    def _insert(self, table: Table, model: Type[M], values: Dict[str, Any]) -> M:
        row = _plain(values)
        row.setdefault("id", new_id())
        self.conn.execute(insert(table).values(**row))
        return model.model_validate(row)

    def _one(self, stmt, model: Type[M]) -> Optional[M]:
        row = self.conn.execute(stmt).first()
        if row is None:
            return None
        return model.model_validate(dict(row._mapping))

    def _all(self, stmt, model: Type[M]) -> List[M]:
        return [model.model_validate(dict(r._mapping)) for r in self.conn.execute(stmt)]

    def _get(self, table: Table, model: Type[M], entity: str, entity_id: str) -> M:
        found = self._one(select(table).where(table.c.id == entity_id), model)
        if found is None:
            raise NotFoundError(entity, entity_id)
        return found

    def _update_where(self, table: Table, entity_id: str, expected: Dict[str, Any],
                      values: Dict[str, Any]) -> bool:
        """Conditional update: applies only when every ``expected`` column matches."""
        conditions = [table.c.id == entity_id]
        for column, allowed in expected.items():
            if isinstance(allowed, (list, tuple, set, frozenset)):
                conditions.append(table.c[column].in_(_enum_values(allowed)))
            else:
                conditions.append(table.c[column] == _plain({"v": allowed})["v"])
        result = self.conn.execute(update(table).where(and_(*conditions)).values(**_plain(values)))
        return result.rowcount == 1

    # ── Patients ───────────────────────────────────────────────────────────

    def add_patient(
        self,
        medical_record_number: str,
        first_name: str = "",
        last_name: str = "",
        date_of_birth: Optional[date] = None,
        has_diabetes: bool = False,
        has_hypertension: bool = False,
        on_ras_inhibitor: bool = False,
        on_sglt2i: bool = False,
        patient_id: Optional[str] = None,
    ) -> Patient:
        return self._insert(t.patients, Patient, {
            "id": patient_id or new_id(),
            "medical_record_number": medical_record_number,
            "first_name": first_name,
            "last_name": last_name,
            "date_of_birth": date_of_birth,
            "has_diabetes": has_diabetes,
            "has_hypertension": has_hypertension,
            "on_ras_inhibitor": on_ras_inhibitor,
            "on_sglt2i": on_sglt2i,
            "created_at": utcnow(),
        })

    def get_patient(self, patient_id: str) -> Patient:
        return self._get(t.patients, Patient, "Patient", patient_id)

    def update_patient_therapy(
        self,
        patient_id: str,
        on_ras_inhibitor: Optional[bool] = None,
        on_sglt2i: Optional[bool] = None,
    ) -> None:
        values = {}
        if on_ras_inhibitor is not None:
            values["on_ras_inhibitor"] = on_ras_inhibitor
        if on_sglt2i is not None:
            values["on_sglt2i"] = on_sglt2i
        if values:
            self.conn.execute(
                update(t.patients).where(t.patients.c.id == patient_id).values(**values)
            )

    def list_patient_ids(self) -> List[str]:
        rows = self.conn.execute(select(t.patients.c.id).order_by(t.patients.c.id))
        return [r[0] for r in rows]

    # ── Lab observations ───────────────────────────────────────────────────

    def add_observation(
        self,
        patient_id: str,
        observation_type: ObservationType,
        value: float,
        observed_at: datetime,
        status: ObservationStatus = ObservationStatus.FINAL,
    ) -> LabObservation:
        return self._insert(t.observations, LabObservation, {
            "patient_id": patient_id,
            "observation_type": observation_type,
            "value": float(value),
            "observed_at": observed_at,
            "status": status,
        })

    def latest_observation(
        self,
        patient_id: str,
        observation_type: ObservationType,
        statuses: Optional[Iterable[ObservationStatus]] = None,
    ) -> Optional[LabObservation]:
        stmt = (
            select(t.observations)
            .where(t.observations.c.patient_id == patient_id)
            .where(t.observations.c.observation_type == observation_type.value)
        )
        if statuses is not None:
            stmt = stmt.where(t.observations.c.status.in_(_enum_values(statuses)))
        stmt = stmt.order_by(t.observations.c.observed_at.desc()).limit(1)
        return self._one(stmt, LabObservation)

    def list_observations(
        self,
        patient_id: str,
        observation_type: ObservationType,
        statuses: Optional[Iterable[ObservationStatus]] = None,
    ) -> List[LabObservation]:
        """Observations of one type, oldest first."""
        stmt = (
            select(t.observations)
            .where(t.observations.c.patient_id == patient_id)
            .where(t.observations.c.observation_type == observation_type.value)
        )
        if statuses is not None:
            stmt = stmt.where(t.observations.c.status.in_(_enum_values(statuses)))
        return self._all(stmt.order_by(t.observations.c.observed_at), LabObservation)

    def patients_with_observations(
        self,
        observation_type: ObservationType,
        min_count: int = 1,
        statuses: Optional[Iterable[ObservationStatus]] = None,
    ) -> List[str]:
        stmt = (
            select(t.observations.c.patient_id)
            .where(t.observations.c.observation_type == observation_type.value)
        )
        if statuses is not None:
            stmt = stmt.where(t.observations.c.status.in_(_enum_values(statuses)))
        stmt = (
            stmt.group_by(t.observations.c.patient_id)
            .having(func.count() >= min_count)
            .order_by(t.observations.c.patient_id)
        )
        return [r[0] for r in self.conn.execute(stmt)]

    # ── Health state history ───────────────────────────────────────────────

    def add_health_state(self, record: Dict[str, Any]) -> HealthStateRecord:
        values = dict(record)
        values.setdefault("created_at", utcnow())
        return self._insert(t.health_state_history, HealthStateRecord, values)

    def latest_health_states(self, patient_id: str, limit: int = 2) -> List[HealthStateRecord]:
        """Most recent records, newest first."""
        stmt = (
            select(t.health_state_history)
            .where(t.health_state_history.c.patient_id == patient_id)
            .order_by(t.health_state_history.c.cycle_number.desc())
            .limit(limit)
        )
        return self._all(stmt, HealthStateRecord)

    def health_history(
        self, patient_id: str, after_cycle: Optional[int] = None
    ) -> List[HealthStateRecord]:
        """Records oldest first, optionally only those beyond ``after_cycle``."""
        stmt = select(t.health_state_history).where(
            t.health_state_history.c.patient_id == patient_id
        )
        if after_cycle is not None:
            stmt = stmt.where(t.health_state_history.c.cycle_number > after_cycle)
        return self._all(stmt.order_by(t.health_state_history.c.cycle_number), HealthStateRecord)

    def get_health_state(self, patient_id: str, cycle_number: int) -> Optional[HealthStateRecord]:
        stmt = (
            select(t.health_state_history)
            .where(t.health_state_history.c.patient_id == patient_id)
            .where(t.health_state_history.c.cycle_number == cycle_number)
        )
        return self._one(stmt, HealthStateRecord)

    # ── Scan cursor ────────────────────────────────────────────────────────

    def get_cursor(self, patient_id: str) -> Optional[int]:
        row = self.conn.execute(
            select(t.monitoring_cursor.c.last_cycle_number)
            .where(t.monitoring_cursor.c.patient_id == patient_id)
        ).first()
        return None if row is None else int(row[0])

    def set_cursor(self, patient_id: str, cycle_number: int, record_id: str) -> None:
        values = {
            "last_cycle_number": cycle_number,
            "last_record_id": record_id,
            "processed_at": utcnow(),
        }
        result = self.conn.execute(
            update(t.monitoring_cursor)
            .where(t.monitoring_cursor.c.patient_id == patient_id)
            .values(**values)
        )
        if result.rowcount == 0:
            self.conn.execute(insert(t.monitoring_cursor).values(patient_id=patient_id, **values))

    def patients_pending_scan(self) -> List[str]:
        """Patients whose newest record is beyond their last processed cycle."""
        latest = (
            select(
                t.health_state_history.c.patient_id.label("patient_id"),
                func.max(t.health_state_history.c.cycle_number).label("max_cycle"),
            )
            .group_by(t.health_state_history.c.patient_id)
            .subquery()
        )
        stmt = (
            select(latest.c.patient_id)
            .select_from(
                latest.outerjoin(
                    t.monitoring_cursor,
                    t.monitoring_cursor.c.patient_id == latest.c.patient_id,
                )
            )
            .where(latest.c.max_cycle > func.coalesce(t.monitoring_cursor.c.last_cycle_number, -1))
            .order_by(latest.c.patient_id)
        )
        return [r[0] for r in self.conn.execute(stmt)]

    # ── State transitions ──────────────────────────────────────────────────

    def find_transition(self, from_record_id: str, to_record_id: str) -> Optional[StateTransition]:
        stmt = (
            select(t.state_transitions)
            .where(t.state_transitions.c.from_record_id == from_record_id)
            .where(t.state_transitions.c.to_record_id == to_record_id)
        )
        return self._one(stmt, StateTransition)

    def add_transition(self, values: Dict[str, Any]) -> StateTransition:
        return self._insert(t.state_transitions, StateTransition, values)

    def list_transitions(self, patient_id: str) -> List[StateTransition]:
        stmt = (
            select(t.state_transitions)
            .where(t.state_transitions.c.patient_id == patient_id)
            .order_by(t.state_transitions.c.cycle_number)
        )
        return self._all(stmt, StateTransition)

    # ── Monitoring alerts ──────────────────────────────────────────────────

    def find_alert_by_key(self, dedupe_key: str) -> Optional[MonitoringAlert]:
        stmt = select(t.monitoring_alerts).where(t.monitoring_alerts.c.dedupe_key == dedupe_key)
        return self._one(stmt, MonitoringAlert)

    def add_alert(self, values: Dict[str, Any]) -> MonitoringAlert:
        values = dict(values)
        values.setdefault("generated_at", utcnow())
        values.setdefault("status", "active")
        return self._insert(t.monitoring_alerts, MonitoringAlert, values)

    def get_alert(self, alert_id: str) -> MonitoringAlert:
        return self._get(t.monitoring_alerts, MonitoringAlert, "MonitoringAlert", alert_id)

    def list_alerts(
        self,
        patient_id: Optional[str] = None,
        status: Optional[Any] = None,
        severity: Optional[Any] = None,
        source: Optional[Any] = None,
    ) -> List[MonitoringAlert]:
        c = t.monitoring_alerts.c
        stmt = select(t.monitoring_alerts)
        for column, value in ((c.patient_id, patient_id), (c.status, status),
                              (c.severity, severity), (c.source, source)):
            if value is not None:
                stmt = stmt.where(column == _plain({"v": value})["v"])
        return self._all(stmt.order_by(c.priority, c.generated_at.desc()), MonitoringAlert)

    def update_alert_status(self, alert_id: str, allowed_from: Iterable[Any],
                            new_status: Any, actor: Optional[str]) -> bool:
        return self._update_where(
            t.monitoring_alerts, alert_id,
            {"status": tuple(allowed_from)},
            {"status": new_status, "status_changed_at": utcnow(), "status_changed_by": actor},
        )

    # ── Action recommendations ─────────────────────────────────────────────

    def find_recommendation(self, patient_id: str, recommendation_type: Any,
                            cycle_number: int) -> Optional[ActionRecommendation]:
        c = t.action_recommendations.c
        stmt = (
            select(t.action_recommendations)
            .where(c.patient_id == patient_id)
            .where(c.recommendation_type == _plain({"v": recommendation_type})["v"])
            .where(c.cycle_number == cycle_number)
        )
        return self._one(stmt, ActionRecommendation)

    def add_recommendation(self, values: Dict[str, Any]) -> ActionRecommendation:
        values = dict(values)
        values.setdefault("generated_at", utcnow())
        values.setdefault("status", "pending")
        return self._insert(t.action_recommendations, ActionRecommendation, values)

    def get_recommendation(self, recommendation_id: str) -> ActionRecommendation:
        return self._get(
            t.action_recommendations, ActionRecommendation,
            "ActionRecommendation", recommendation_id,
        )

    def list_recommendations(
        self,
        patient_id: Optional[str] = None,
        status: Optional[Any] = None,
        urgency: Optional[Any] = None,
    ) -> List[ActionRecommendation]:
        c = t.action_recommendations.c
        stmt = select(t.action_recommendations)
        for column, value in ((c.patient_id, patient_id), (c.status, status), (c.urgency, urgency)):
            if value is not None:
                stmt = stmt.where(column == _plain({"v": value})["v"])
        return self._all(stmt.order_by(c.priority, c.generated_at.desc()), ActionRecommendation)

    def update_recommendation_status(self, recommendation_id: str, allowed_from: Iterable[Any],
                                     new_status: Any, actor: Optional[str]) -> bool:
        return self._update_where(
            t.action_recommendations, recommendation_id,
            {"status": tuple(allowed_from)},
            {"status": new_status, "status_changed_at": utcnow(), "status_changed_by": actor},
        )

    # ── Diagnosis events ───────────────────────────────────────────────────

    def open_diagnosis_event(self, patient_id: str) -> Optional[DiagnosisEvent]:
        c = t.ckd_diagnosis_events.c
        stmt = (
            select(t.ckd_diagnosis_events)
            .where(c.patient_id == patient_id)
            .where(c.protocol_state.in_(OPEN_DIAGNOSIS_STATES))
            .order_by(c.first_abnormal_at.desc())
            .limit(1)
        )
        return self._one(stmt, DiagnosisEvent)

    def confirmed_diagnosis_event(self, patient_id: str) -> Optional[DiagnosisEvent]:
        c = t.ckd_diagnosis_events.c
        stmt = (
            select(t.ckd_diagnosis_events)
            .where(c.patient_id == patient_id)
            .where(c.protocol_state == DiagnosisState.CONFIRMED.value)
            .order_by(c.first_abnormal_at.desc())
            .limit(1)
        )
        return self._one(stmt, DiagnosisEvent)

    def add_diagnosis_event(self, values: Dict[str, Any]) -> DiagnosisEvent:
        values = dict(values)
        values.setdefault("created_at", utcnow())
        return self._insert(t.ckd_diagnosis_events, DiagnosisEvent, values)

    def get_diagnosis_event(self, event_id: str) -> DiagnosisEvent:
        return self._get(t.ckd_diagnosis_events, DiagnosisEvent, "DiagnosisEvent", event_id)

    def update_diagnosis_event(self, event_id: str, expected: Dict[str, Any],
                               values: Dict[str, Any]) -> bool:
        values = dict(values)
        values["updated_at"] = utcnow()
        return self._update_where(t.ckd_diagnosis_events, event_id, expected, values)

    def list_diagnosis_events(self, patient_id: str) -> List[DiagnosisEvent]:
        c = t.ckd_diagnosis_events.c
        stmt = (
            select(t.ckd_diagnosis_events)
            .where(c.patient_id == patient_id)
            .order_by(c.first_abnormal_at.desc())
        )
        return self._all(stmt, DiagnosisEvent)

    def expired_diagnosis_events(self, as_of: datetime) -> List[DiagnosisEvent]:
        """Open events whose confirmation window ended before ``as_of``."""
        c = t.ckd_diagnosis_events.c
        stmt = (
            select(t.ckd_diagnosis_events)
            .where(c.protocol_state.in_(OPEN_DIAGNOSIS_STATES))
            .where(c.window_end_at < as_of)
            .order_by(c.window_end_at)
        )
        return self._all(stmt, DiagnosisEvent)

    # ── Treatment protocols ────────────────────────────────────────────────

    def add_protocol(self, values: Dict[str, Any]) -> TreatmentProtocol:
        values = dict(values)
        values.setdefault("created_at", utcnow())
        values.setdefault("status", "pending")
        return self._insert(t.ckd_treatment_protocols, TreatmentProtocol, values)

    def get_protocol(self, protocol_id: str) -> TreatmentProtocol:
        return self._get(
            t.ckd_treatment_protocols, TreatmentProtocol, "TreatmentProtocol", protocol_id
        )

    def update_protocol(self, protocol_id: str, expected: Dict[str, Any],
                        values: Dict[str, Any]) -> bool:
        return self._update_where(t.ckd_treatment_protocols, protocol_id, expected, values)

    def list_protocols(self, patient_id: str) -> List[TreatmentProtocol]:
        c = t.ckd_treatment_protocols.c
        stmt = (
            select(t.ckd_treatment_protocols)
            .where(c.patient_id == patient_id)
            .order_by(c.created_at.desc())
        )
        return self._all(stmt, TreatmentProtocol)

    # ── Doctor action queue ────────────────────────────────────────────────

    def find_pending_action(self, patient_id: str, action_type: Any,
                            reference_id: str) -> Optional[DoctorAction]:
        c = t.doctor_action_queue.c
        stmt = (
            select(t.doctor_action_queue)
            .where(c.patient_id == patient_id)
            .where(c.action_type == _plain({"v": action_type})["v"])
            .where(c.reference_id == reference_id)
            .where(c.status == ActionStatus.PENDING.value)
        )
        return self._one(stmt, DoctorAction)

    def add_action(self, values: Dict[str, Any]) -> DoctorAction:
        values = dict(values)
        values.setdefault("created_at", utcnow())
        values.setdefault("status", ActionStatus.PENDING.value)
        return self._insert(t.doctor_action_queue, DoctorAction, values)

    def get_action(self, action_id: str) -> DoctorAction:
        return self._get(t.doctor_action_queue, DoctorAction, "DoctorAction", action_id)

    def list_actions(
        self,
        action_type: Optional[Any] = None,
        priority: Optional[Any] = None,
        status: Optional[Any] = None,
        patient_id: Optional[str] = None,
    ) -> List[DoctorAction]:
        c = t.doctor_action_queue.c
        stmt = select(t.doctor_action_queue)
        for column, value in ((c.action_type, action_type), (c.priority, priority),
                              (c.status, status), (c.patient_id, patient_id)):
            if value is not None:
                stmt = stmt.where(column == _plain({"v": value})["v"])
        rank = case(
            {p.value: p.rank for p in ActionPriority},
            value=c.priority,
            else_=len(ActionPriority) + 1,
        )
        return self._all(stmt.order_by(rank, c.created_at), DoctorAction)

    def complete_action(self, action_id: str, new_status: ActionStatus,
                        actor: str, notes: Optional[str]) -> bool:
        """Check-and-set: pending → completed/declined, exactly once."""
        return self._update_where(
            t.doctor_action_queue, action_id,
            {"status": ActionStatus.PENDING},
            {
                "status": new_status,
                "completed_at": utcnow(),
                "completed_by": actor,
                "completion_notes": notes or "",
            },
        )

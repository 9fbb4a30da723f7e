"""
Table definitions for the durable store.

Every table is keyed by patient id and carries a measurement or generation
timestamp for ordering.
"""
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

patients = Table(
    "patients", metadata,
    Column("id", String(64), primary_key=True),
    Column("medical_record_number", String(64), nullable=False, unique=True),
    Column("first_name", String(120), nullable=False, default=""),
    Column("last_name", String(120), nullable=False, default=""),
    Column("date_of_birth", Date, nullable=True),
    Column("has_diabetes", Boolean, nullable=False, default=False),
    Column("has_hypertension", Boolean, nullable=False, default=False),
    Column("on_ras_inhibitor", Boolean, nullable=False, default=False),
    Column("on_sglt2i", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
)

observations = Table(
    "observations", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("observation_type", String(16), nullable=False),
    Column("value", Float, nullable=False),
    Column("observed_at", DateTime, nullable=False),
    Column("status", String(16), nullable=False, default="final"),
    Index("ix_observations_patient_type_time", "patient_id", "observation_type", "observed_at"),
)

health_state_history = Table(
    "health_state_history", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("cycle_number", Integer, nullable=False),
    Column("measured_at", DateTime, nullable=False),
    Column("egfr", Float, nullable=False),
    Column("uacr", Float, nullable=True),
    Column("gfr_category", String(8), nullable=False),
    Column("albuminuria_category", String(16), nullable=False),
    Column("health_state", String(32), nullable=False),
    Column("risk_level", String(16), nullable=False),
    Column("ckd_stage_name", String(64), nullable=False),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("patient_id", "cycle_number", name="uq_health_state_cycle"),
)

monitoring_cursor = Table(
    "monitoring_cursor", metadata,
    Column("patient_id", String(64), primary_key=True),
    Column("last_cycle_number", Integer, nullable=False),
    Column("last_record_id", String(64), nullable=False),
    Column("processed_at", DateTime, nullable=False),
)

state_transitions = Table(
    "state_transitions", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("from_record_id", String(64), nullable=False),
    Column("to_record_id", String(64), nullable=False),
    Column("cycle_number", Integer, nullable=False),
    Column("from_health_state", String(32), nullable=False),
    Column("to_health_state", String(32), nullable=False),
    Column("from_egfr", Float, nullable=False),
    Column("to_egfr", Float, nullable=False),
    Column("from_uacr", Float, nullable=True),
    Column("to_uacr", Float, nullable=True),
    Column("from_risk_level", String(16), nullable=False),
    Column("to_risk_level", String(16), nullable=False),
    Column("change_type", String(16), nullable=False),
    Column("crossed_critical_threshold", Boolean, nullable=False),
    Column("rapid_progression", Boolean, nullable=False, default=False),
    Column("risk_increased", Boolean, nullable=False, default=False),
    Column("egfr_percent_change", Float, nullable=False, default=0.0),
    Column("transition_date", DateTime, nullable=False),
    UniqueConstraint("from_record_id", "to_record_id", name="uq_transition_pair"),
)

monitoring_alerts = Table(
    "monitoring_alerts", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("transition_id", String(64), nullable=True),
    Column("source", String(16), nullable=False),
    Column("alert_type", String(64), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("reasons", JSON, nullable=False),
    Column("status", String(16), nullable=False),
    Column("dedupe_key", String(160), nullable=False, unique=True),
    Column("generated_at", DateTime, nullable=False),
    Column("status_changed_at", DateTime, nullable=True),
    Column("status_changed_by", String(120), nullable=True),
)

action_recommendations = Table(
    "action_recommendations", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("transition_id", String(64), nullable=True),
    Column("alert_id", String(64), nullable=True),
    Column("recommendation_type", String(64), nullable=False),
    Column("category", String(64), nullable=False),
    Column("title", String(255), nullable=False),
    Column("rationale", Text, nullable=False),
    Column("urgency", String(16), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("cycle_number", Integer, nullable=False),
    Column("based_on_health_state", String(32), nullable=False),
    Column("based_on_risk_level", String(16), nullable=False),
    Column("action_items", JSON, nullable=False),
    Column("status", String(16), nullable=False),
    Column("generated_at", DateTime, nullable=False),
    Column("status_changed_at", DateTime, nullable=True),
    Column("status_changed_by", String(120), nullable=True),
    UniqueConstraint(
        "patient_id", "recommendation_type", "cycle_number", name="uq_recommendation_cycle"
    ),
)

ckd_diagnosis_events = Table(
    "ckd_diagnosis_events", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("protocol_state", String(24), nullable=False),
    Column("detection_trigger", String(64), nullable=False),
    Column("first_abnormal_at", DateTime, nullable=False),
    Column("first_abnormal_egfr", Float, nullable=False),
    Column("first_abnormal_uacr", Float, nullable=True),
    Column("confirmation_due_at", DateTime, nullable=False),
    Column("window_start_at", DateTime, nullable=False),
    Column("window_end_at", DateTime, nullable=False),
    Column("confirmatory_at", DateTime, nullable=True),
    Column("egfr_at_diagnosis", Float, nullable=True),
    Column("uacr_at_diagnosis", Float, nullable=True),
    Column("ckd_stage_at_diagnosis", String(64), nullable=True),
    Column("gfr_category_at_diagnosis", String(8), nullable=True),
    Column("albuminuria_category_at_diagnosis", String(16), nullable=True),
    Column("diagnosis_confirmed", Boolean, nullable=False, default=False),
    Column("confirmed_by", String(120), nullable=True),
    Column("confirmed_at", DateTime, nullable=True),
    Column("lapse_reason", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=True),
)

ckd_treatment_protocols = Table(
    "ckd_treatment_protocols", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("diagnosis_event_id", String(64), nullable=False, unique=True),
    Column("protocol_name", String(255), nullable=False),
    Column("ckd_stage", String(64), nullable=False),
    Column("medication_orders", JSON, nullable=False),
    Column("lab_monitoring_schedule", JSON, nullable=False),
    Column("referrals", JSON, nullable=False),
    Column("lifestyle_modifications", JSON, nullable=False),
    Column("status", String(16), nullable=False),
    Column("approved_by", String(120), nullable=True),
    Column("approved_at", DateTime, nullable=True),
    Column("approval_notes", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
)

doctor_action_queue = Table(
    "doctor_action_queue", metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(64), nullable=False, index=True),
    Column("action_type", String(32), nullable=False),
    Column("priority", String(16), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("reference_id", String(64), nullable=False),
    Column("diagnosis_event_id", String(64), nullable=True),
    Column("treatment_protocol_id", String(64), nullable=True),
    Column("clinical_summary", JSON, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("due_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("completed_by", String(120), nullable=True),
    Column("completion_notes", Text, nullable=True),
)

# At most one pending action per (patient, action type, referenced event/protocol)
Index(
    "uq_doctor_action_pending",
    doctor_action_queue.c.patient_id,
    doctor_action_queue.c.action_type,
    doctor_action_queue.c.reference_id,
    unique=True,
    sqlite_where=doctor_action_queue.c.status == "pending",
    postgresql_where=doctor_action_queue.c.status == "pending",
)

"""
Pytest Configuration and Fixtures

Shared fixtures for the CKD monitoring core tests. Every test that touches
storage gets its own file-backed SQLite database under ``tmp_path``.
"""
import uuid
from datetime import datetime, timedelta
from pathlib import Path
import sys

import pytest

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ckd_monitor.core.classification import classify
from ckd_monitor.core.diagnosis import CKDDiagnosisDetector, DoctorActionQueue
from ckd_monitor.core.progression.monitor import ProgressionMonitor
from ckd_monitor.models import HealthStateRecord
from ckd_monitor.services import CKDMonitoringService
from ckd_monitor.storage import CKDStore


@pytest.fixture
def t0() -> datetime:
    """Reference timestamp for day 0 of a scenario."""
    return datetime(2025, 1, 6, 9, 30)


@pytest.fixture
def store(tmp_path) -> CKDStore:
    store = CKDStore(f"sqlite:///{tmp_path / 'ckd_monitor.db'}")
    yield store
    store.dispose()


@pytest.fixture
def make_patient(store):
    """Factory: make_patient(**flags) -> Patient"""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        values = {
            "medical_record_number": f"MRN-{counter['n']:04d}",
            "first_name": "Test",
            "last_name": f"Patient{counter['n']}",
        }
        values.update(overrides)
        with store.unit_of_work() as uow:
            return uow.add_patient(**values)

    return _make


@pytest.fixture
def action_queue(store) -> DoctorActionQueue:
    return DoctorActionQueue(store)


@pytest.fixture
def diagnosis_detector(action_queue) -> CKDDiagnosisDetector:
    return CKDDiagnosisDetector(action_queue, target_days=90, tolerance_days=14)


@pytest.fixture
def monitor(store, diagnosis_detector) -> ProgressionMonitor:
    return ProgressionMonitor(
        store,
        diagnosis_detector=diagnosis_detector,
        max_workers=4,
        max_retries=2,
        backoff=(0.0,),
    )


@pytest.fixture
def service(store, monitor) -> CKDMonitoringService:
    service = CKDMonitoringService(store, seed=7)
    service.monitor.backoff = (0.0,)
    service.uacr_service.backoff = (0.0,)
    return service


def build_record(patient_id, cycle_number, measured_at, egfr, uacr=None) -> HealthStateRecord:
    """In-memory HealthStateRecord classified the same way the monitor does."""
    c = classify(egfr, uacr)
    return HealthStateRecord(
        id=uuid.uuid4().hex,
        patient_id=patient_id,
        cycle_number=cycle_number,
        measured_at=measured_at,
        egfr=c.egfr,
        uacr=c.uacr,
        gfr_category=c.gfr_category,
        albuminuria_category=c.albuminuria_category,
        health_state=c.health_state,
        risk_level=c.risk_level,
        ckd_stage_name=c.ckd_stage_name,
    )


@pytest.fixture
def make_record():
    return build_record


@pytest.fixture
def record_pair(t0):
    """Factory: record_pair(prev_egfr, prev_uacr, curr_egfr, curr_uacr) -> (prev, curr)"""
    def _pair(prev_egfr, prev_uacr, curr_egfr, curr_uacr, patient_id="patient-1"):
        previous = build_record(patient_id, 0, t0, prev_egfr, prev_uacr)
        current = build_record(patient_id, 1, t0 + timedelta(days=180), curr_egfr, curr_uacr)
        return previous, current

    return _pair

"""
Storage Package - SQLAlchemy adapter over the durable store.

Usage:
    from ckd_monitor.storage import CKDStore

    store = CKDStore("sqlite:///ckd.db")
    with store.unit_of_work() as uow:
        patient = uow.get_patient(patient_id)
"""
from .store import CKDStore, StoreSession, new_id

__all__ = [
    "CKDStore",
    "StoreSession",
    "new_id",
]

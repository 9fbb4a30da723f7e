"""
Custom Exception Hierarchy

Provides specific exception types for the failure categories of the
monitoring core, each carrying structured context (entity ids, expected
vs. actual state) so callers can act without re-deriving state.
"""
from typing import Optional, Dict, Any


class CKDMonitorError(Exception):
    """Base exception for all CKD monitoring errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(CKDMonitorError):
    """Missing or invalid clinical input (e.g. eGFR)."""

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        value: Any = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field": field, "value": value, **(details or {})}
        )
        self.field = field
        self.value = value


class NotFoundError(CKDMonitorError):
    """Unknown patient, alert, recommendation, action or event id."""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"{entity} '{entity_id}' not found",
            code="NOT_FOUND",
            details={"entity": entity, "entity_id": entity_id, **(details or {})}
        )
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(CKDMonitorError):
    """Operation is not valid for the entity's current state."""

    def __init__(
        self,
        message: str,
        entity: str,
        entity_id: str,
        expected: Any = None,
        actual: Any = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="STATE_CONFLICT",
            details={
                "entity": entity,
                "entity_id": entity_id,
                "expected_state": expected,
                "actual_state": actual,
                **(details or {})
            }
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class DataIntegrityError(CKDMonitorError):
    """Stored data violates an ordering or ownership invariant."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="DATA_INTEGRITY_ERROR",
            details=details
        )


class TransientStorageError(CKDMonitorError):
    """Storage failure that may succeed on retry (lock timeout, dropped connection)."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="TRANSIENT_STORAGE_ERROR",
            details={"operation": operation, **(details or {})}
        )
        self.operation = operation

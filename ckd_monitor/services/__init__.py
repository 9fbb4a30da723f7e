"""
Services Package - request-layer facade.
"""
from .monitoring import CKDMonitoringService

__all__ = ["CKDMonitoringService"]

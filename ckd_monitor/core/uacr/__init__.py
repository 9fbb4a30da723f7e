"""
uACR Monitoring Layer
"""
from .monitoring import (
    SGLT2iEligibility,
    TreatmentContext,
    TreatmentRecommendation,
    UACRAlert,
    UACRAnalysis,
    UACRMonitoringService,
    UACRScanResults,
    UACRSeverity,
    classify_increase,
)

__all__ = [
    "SGLT2iEligibility",
    "TreatmentContext",
    "TreatmentRecommendation",
    "UACRAlert",
    "UACRAnalysis",
    "UACRMonitoringService",
    "UACRScanResults",
    "UACRSeverity",
    "classify_increase",
]

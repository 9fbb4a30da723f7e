"""
KDIGO Classification Layer

Usage:
    from ckd_monitor.core.classification import KDIGOClassifier

    result = KDIGOClassifier().classify(egfr=42, uacr=None)
    result.gfr_category, result.risk_level   # G3b, high
"""
from .kdigo import KDIGOClassifier, KDIGOClassification, classify

__all__ = [
    "KDIGOClassifier",
    "KDIGOClassification",
    "classify",
]

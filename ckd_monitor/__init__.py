"""
CKD Progression Monitoring Core

Classifies kidney-function state from eGFR/uACR, detects longitudinal
transitions, raises alerts and recommendations, and gates diagnosis and
treatment decisions behind doctor confirmation.
"""
from .config import settings
from .utils import setup_logging

__version__ = "1.0.0"

# Initialize logging on package import
setup_logging(settings.log_level, settings.log_file or None)

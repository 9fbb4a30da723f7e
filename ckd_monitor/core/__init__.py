"""
Core clinical engines: classification, progression, alerts, diagnosis, uACR.
"""

"""
CKD Monitor: Configuration
===========================
Centralised settings for the store, the batch scan and the clinical
windows. Values come from ``CKD_*`` environment variables, with a
project-level .env file read underneath them.
"""
from pathlib import Path
from typing import Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ── Paths ───────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """
    Runtime settings for the monitoring core.

    Attributes:
        database_url:               SQLAlchemy URL of the durable store.
        log_level / log_file:       Passed to setup_logging().
        scan_max_workers:           Size of the per-patient worker pool.
        scan_max_retries:           Retries of a patient unit on transient storage errors.
        retry_backoff_seconds:      Sleep before each retry (last value reused).
                                    Set as JSON in the environment, e.g. ``[0.2, 0.5]``.
        confirmation_target_days:   Day the confirmatory test falls due.
        confirmation_tolerance_days: Half-width of the acceptance window.
        uacr_lookback_days:         Trailing window for the uACR baseline.
        synthetic_max_cycles:       Upper bound of the demo cycle range.
    """
    model_config = SettingsConfigDict(
        env_prefix="CKD_",
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///ckd_monitor.db"
    log_level: str = "INFO"
    log_file: str = ""
    scan_max_workers: int = Field(default=4, ge=1)
    scan_max_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: Tuple[float, ...] = (0.2, 0.5, 1.0)
    confirmation_target_days: int = 90
    confirmation_tolerance_days: int = Field(default=14, ge=0)
    uacr_lookback_days: int = Field(default=365, ge=1)
    synthetic_max_cycles: int = Field(default=24, ge=1)

    @property
    def confirmation_window_days(self) -> Tuple[int, int]:
        """Inclusive (earliest, latest) day offsets for a confirmatory result."""
        return (
            self.confirmation_target_days - self.confirmation_tolerance_days,
            self.confirmation_target_days + self.confirmation_tolerance_days,
        )


settings = Settings()

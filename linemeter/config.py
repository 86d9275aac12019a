"""
linemeter Application Configuration
====================================

PURPOSE:
    Pydantic-Settings based configuration for the metering engine.
    All settings can be overridden via environment variables (LINEMETER_ prefix).

NOTES:
    Trial allowances and durations live here rather than in the plan table:
    a trial is not a plan tier, it is a fixed evaluation window on top of the
    free plan.
"""

import logging
import os
from typing import List, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    app_name: str = "linemeter"
    debug: bool = False

    # Persistence. Empty means SQLite under data_directory.
    database_url: Optional[str] = None
    data_directory: str = "./data"

    # Logging
    log_dir: str = "logs"
    log_file: str = "linemeter.jsonl"
    log_level: str = "INFO"

    # Free trial (fixed allowances, not plan-driven)
    trial_minutes: int = 50
    trial_sms: int = 50
    trial_days: int = 7
    trial_period_days: int = 30
    free_plan_id: str = "free"

    # Billing
    default_currency: str = "usd"
    usage_history_limit: int = 100

    # Stripe. When the secret key is unset the no-op gateway is used.
    stripe_secret_key: Optional[str] = None
    stripe_api_version: Optional[str] = None

    # In-process job loop (deployments with an external scheduler leave this off)
    jobs_enabled: bool = False
    jobs_interval_s: int = 3600

    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        env_prefix = "LINEMETER_"

    def get_database_url(self) -> str:
        """Resolve the SQLAlchemy URL, honouring a bare DATABASE_URL for container deploys."""
        url = self.database_url or os.environ.get("DATABASE_URL")
        if url:
            return url
        return f"sqlite:///{os.path.join(self.data_directory, 'linemeter.db')}"


settings = Settings()

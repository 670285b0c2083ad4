"""
Engine configuration
rosca/config.py

Everything is read from environment variables so the same image can run the
HTTP adapter, the scheduler task, or both.
"""

import os
from decimal import Decimal


def _bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ── Database ──
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./rosca.db")
DB_ECHO = _bool(os.getenv("DB_ECHO", "false"))
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))

# ── Retries for transient ledger errors (lock contention, serialization) ──
ENGINE_MAX_RETRIES = int(os.getenv("ENGINE_MAX_RETRIES", "5"))
ENGINE_RETRY_WAIT_MIN = float(os.getenv("ENGINE_RETRY_WAIT_MIN", "0.05"))
ENGINE_RETRY_WAIT_MAX = float(os.getenv("ENGINE_RETRY_WAIT_MAX", "2.0"))

# ── Scheduler ticks ──
ENGINE_TICK_WORKERS = int(os.getenv("ENGINE_TICK_WORKERS", "4"))
ENGINE_CRON_SECRET = os.getenv("ENGINE_CRON_SECRET", "development-secret-change-in-production")
ENGINE_REMINDER_DAYS = int(os.getenv("ENGINE_REMINDER_DAYS", "3"))      # due-soon window

# ── Outbound events ──
ENGINE_EVENT_WEBHOOK_URL = os.getenv("ENGINE_EVENT_WEBHOOK_URL")
ENGINE_EVENT_TIMEOUT = float(os.getenv("ENGINE_EVENT_TIMEOUT", "10.0"))
ENGINE_EVENT_BATCH = int(os.getenv("ENGINE_EVENT_BATCH", "100"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── Default group policy (each group stores its own copy on creation) ──
DEFAULT_POLICY = {
    "penalty_rate_per_day": Decimal(os.getenv("PENALTY_RATE_PER_DAY", "5.00")),   # % per day overdue
    "penalty_max_rate": Decimal(os.getenv("PENALTY_MAX_RATE", "50.00")),          # cap, % of contribution
    "penalty_grace_days": int(os.getenv("PENALTY_GRACE_DAYS", "0")),
    "auto_add_creator": _bool(os.getenv("AUTO_ADD_CREATOR", "true")),
    "service_fee_percentage": Decimal(os.getenv("SERVICE_FEE_PERCENTAGE", "10")),
    "security_deposit_percentage": Decimal(os.getenv("SECURITY_DEPOSIT_PERCENTAGE", "20")),
}

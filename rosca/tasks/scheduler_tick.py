"""
Scheduled task: engine tick
rosca/tasks/scheduler_tick.py

Run hourly by whatever cron the deployment has:
1. Activate full forming groups, then penalty sweep, reminders and
   settle/advance for every active group
2. Relay queued outbound events

Can be called directly, decorated as a Celery task, or triggered over HTTP
through POST /api/engine/cron/tick.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from rosca.exceptions import SchedulerTickError, TransientLedgerError

logger = logging.getLogger(__name__)


def run_scheduler_tick(now: Optional[datetime] = None, session_factory=None, relay: bool = True) -> dict:
    """
    Returns the tick report. Per-group failures are logged and reported;
    they are retried by the next tick.
    """
    from rosca.database import SessionLocal
    from rosca.services.event_relay import EventRelay
    from rosca.services.orchestrator import Orchestrator

    session_factory = session_factory or SessionLocal
    now = now or datetime.now(timezone.utc)
    engine = Orchestrator(session_factory)

    try:
        report = engine.on_scheduler_tick(now)
    except SchedulerTickError as e:
        logger.error(f"Tick {now.isoformat()} finished with failures: {e}")
        report = e.report
    except TransientLedgerError as e:
        logger.error(f"Tick {now.isoformat()} aborted, ledger unavailable: {e}")
        return {"now": now.isoformat(), "error": str(e)}

    if relay:
        report["events"] = EventRelay(session_factory).dispatch_pending()

    return report


if __name__ == "__main__":
    from rosca.main import configure_logging

    configure_logging()
    print(run_scheduler_tick())

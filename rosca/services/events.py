"""
Outbound events & audit trail
rosca/services/events.py

Events are not sent from here. They are written to ``outbox_events`` inside
the caller's transaction, so an event exists if and only if the mutation that
produced it committed. services/event_relay.py delivers them afterwards.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rosca.models import AuditLog, OutboxEvent

logger = logging.getLogger(__name__)


def emit(db: Session, event) -> Optional[OutboxEvent]:
    """
    Queue ``event`` in the outbox. Returns None when an event with the same
    dedupe key was already queued (a re-run of the same step).
    """
    key = event.dedupe_key()
    if db.query(OutboxEvent.id).filter(OutboxEvent.dedupe_key == key).first():
        logger.warning(f"Event {key} already queued, skipping")
        return None

    row = OutboxEvent(
        kind=event.kind,
        group_id=event.group_id,
        dedupe_key=key,
        payload=event.model_dump(mode="json"),
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        logger.warning(f"Event {key} queued concurrently, skipping")
        return None

    logger.info(f"Event queued: {key}")
    return row


def audit(
    db: Session,
    action: str,
    resource_type: str,
    resource_id=None,
    group_id=None,
    details: Optional[dict] = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        group_id=group_id,
        details=details or {},
    )
    db.add(entry)
    return entry

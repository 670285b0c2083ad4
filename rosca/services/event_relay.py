"""
Outbox relay
rosca/services/event_relay.py

Posts queued outbound events (payout-ready, penalty-applied, cycle-advanced,
group-completed, contribution-reminder) to the notification / disbursement
webhook and marks them dispatched. Delivery is at-least-once: receivers dedupe
on X-Event-Key. The POST runs outside any ledger transaction; the row is read
before it and updated after it, each in its own short session.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import httpx
from sqlalchemy.orm import sessionmaker

from rosca.config import ENGINE_EVENT_BATCH, ENGINE_EVENT_TIMEOUT, ENGINE_EVENT_WEBHOOK_URL
from rosca.models import OutboxEvent
from rosca.schemas import parse_event

logger = logging.getLogger(__name__)


class EventRelay:

    def __init__(
        self,
        session_factory: sessionmaker,
        url: Optional[str] = ENGINE_EVENT_WEBHOOK_URL,
        timeout: float = ENGINE_EVENT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self.session_factory = session_factory
        self.url = url
        self.timeout = timeout
        self._client = client

    def pending_count(self) -> int:
        with self.session_factory() as db:
            return db.query(OutboxEvent).filter(OutboxEvent.dispatched_at.is_(None)).count()

    def dispatch_pending(self, limit: int = ENGINE_EVENT_BATCH) -> Dict:
        stats = {"sent": 0, "failed": 0}
        if not self.url:
            logger.debug("No ENGINE_EVENT_WEBHOOK_URL configured; events stay in the outbox")
            return stats

        with self.session_factory() as db:
            ids = [
                r.id for r in db.query(OutboxEvent.id)
                .filter(OutboxEvent.dispatched_at.is_(None))
                .order_by(OutboxEvent.id.asc())
                .limit(limit)
            ]

        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            for event_id in ids:
                if self._dispatch_one(client, event_id):
                    stats["sent"] += 1
                else:
                    stats["failed"] += 1
        finally:
            if self._client is None:
                client.close()

        if ids:
            logger.info(f"Outbox relay: {stats}")
        return stats

    def _dispatch_one(self, client: httpx.Client, event_id: int) -> bool:
        # No transaction stays open across the POST; the webhook can be slow.
        with self.session_factory() as db:
            row = db.query(OutboxEvent).filter(OutboxEvent.id == event_id).one_or_none()
            if row is None or row.dispatched_at is not None:
                return True
            kind, key = row.kind, row.dedupe_key
            body = parse_event(row.payload).model_dump(mode="json")

        error = None
        try:
            response = client.post(
                self.url,
                json=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Event-Kind": kind,
                    "X-Event-Key": key,
                },
            )
        except httpx.TimeoutException:
            error = "timeout"
            logger.warning(f"Event {key}: timeout posting to {self.url}")
        except httpx.RequestError as e:
            error = f"connection error: {e}"
            logger.warning(f"Event {key}: connection error {e}")
        else:
            if not 200 <= response.status_code < 300:
                error = f"HTTP {response.status_code}: {response.text[:500]}"
                logger.error(f"Event {key} rejected: {error}")

        with self.session_factory.begin() as db:
            row = db.query(OutboxEvent).filter(OutboxEvent.id == event_id).one()
            row.attempts += 1
            row.last_error = error
            if error is None and row.dispatched_at is None:
                row.dispatched_at = datetime.now(timezone.utc)
        return error is None

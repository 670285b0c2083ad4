"""
Router: ROSCA engine
rosca/routers/engine.py

Machine-to-machine endpoints (payment gateway webhook, cron, operator tools).
Every route except /health requires ``Authorization: Bearer <ENGINE_CRON_SECRET>``.

Endpoints:
  EVENTS:
    POST /payments/confirmed         → Payment confirmation (idempotent)
    POST /cron/tick                  → Scheduler tick (activation, penalties, reminders, settlement)

  GROUPS:
    POST /groups/{id}/activate       → FORMING → ACTIVE, opens cycle 1
    POST /groups/{id}/cancel         → FORMING/ACTIVE → CANCELLED
    GET  /groups/{id}/cycle          → Current cycle + rotation schedule

  GET  /health                       → Liveness + outbox backlog
"""

import hmac
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from rosca import config
from rosca.database import SessionLocal, get_db
from rosca.exceptions import (
    ContributionNotFoundError, DataIntegrityError, EngineError, GroupNotFoundError,
    PolicyViolationError, SchedulerTickError, TransientLedgerError,
)
from rosca.models import OutboxEvent
from rosca.schemas import ActivateGroupRequest, CancelGroupRequest, PaymentConfirmed, SchedulerTick
from rosca.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/engine", tags=["engine"])

_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator(SessionLocal)
    return _orchestrator


def verify_secret(authorization: Optional[str] = Header(None)):
    expected = f"Bearer {config.ENGINE_CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(401, detail="Invalid or missing engine secret")


def _http_error(exc: EngineError) -> HTTPException:
    """EngineError → HTTPException (404 / 409 / 422 / 503)."""
    if isinstance(exc, (GroupNotFoundError, ContributionNotFoundError)):
        return HTTPException(404, detail=str(exc))
    if isinstance(exc, DataIntegrityError):
        return HTTPException(409, detail=str(exc))
    if isinstance(exc, PolicyViolationError):
        return HTTPException(422, detail=str(exc))
    if isinstance(exc, TransientLedgerError):
        return HTTPException(503, detail=str(exc))
    return HTTPException(500, detail=str(exc))


# ══════════════════════════════════════════════════════════
# EVENTS
# ══════════════════════════════════════════════════════════

@router.post("/payments/confirmed", dependencies=[Depends(verify_secret)])
def payment_confirmed(
    event: PaymentConfirmed,
    engine: Orchestrator = Depends(get_orchestrator),
):
    try:
        return engine.on_payment_confirmed(event)
    except EngineError as e:
        logger.error(f"Payment {event.reference} rejected: {e}")
        raise _http_error(e)


@router.post("/cron/tick", dependencies=[Depends(verify_secret)])
def cron_tick(
    tick: Optional[SchedulerTick] = None,
    engine: Orchestrator = Depends(get_orchestrator),
):
    """
    Failed groups do not fail the call: the report comes back with
    "success": False and the failures listed, and the next tick retries them.
    """
    now = tick.now if tick else None
    try:
        report = engine.on_scheduler_tick(now)
    except SchedulerTickError as e:
        return {"success": False, **e.report}
    except TransientLedgerError as e:
        raise _http_error(e)
    return {"success": True, **report}


# ══════════════════════════════════════════════════════════
# GROUPS
# ══════════════════════════════════════════════════════════

@router.post("/groups/{group_id}/activate", dependencies=[Depends(verify_secret)])
def activate_group(
    group_id: UUID,
    body: Optional[ActivateGroupRequest] = None,
    engine: Orchestrator = Depends(get_orchestrator),
):
    body = body or ActivateGroupRequest()
    try:
        return engine.activate_group(group_id, now=body.now, start_date=body.start_date)
    except EngineError as e:
        raise _http_error(e)


@router.post("/groups/{group_id}/cancel", dependencies=[Depends(verify_secret)])
def cancel_group(
    group_id: UUID,
    body: Optional[CancelGroupRequest] = None,
    engine: Orchestrator = Depends(get_orchestrator),
):
    body = body or CancelGroupRequest()
    try:
        return engine.cancel_group(group_id, now=body.now, reason=body.reason)
    except EngineError as e:
        raise _http_error(e)


@router.get("/groups/{group_id}/cycle", dependencies=[Depends(verify_secret)])
def cycle_status(group_id: UUID, engine: Orchestrator = Depends(get_orchestrator)):
    try:
        return engine.cycle_status(group_id)
    except EngineError as e:
        raise _http_error(e)


@router.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    pending = db.query(OutboxEvent).filter(OutboxEvent.dispatched_at.is_(None)).count()
    return {"status": "ok", "pending_events": pending}

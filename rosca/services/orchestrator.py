"""
Orchestrator
rosca/services/orchestrator.py

Entry points of the engine:
  1. on_payment_confirmed  ← payment-confirmation events (at-least-once, any order)
  2. on_scheduler_tick     ← periodic tick from the scheduler (activation of
                             full groups, penalties, reminders, settlement)
  3. activate_group / cancel_group / cycle_status  ← operator & membership side

Each call is one decide-and-write per group inside Ledger.group_transaction,
so concurrent calls for the same group serialize on the group lock and the
later ones re-read state and find nothing left to do. Groups are independent
and a tick processes them in parallel.

Results are dicts with "success" plus flags for the logical duplicates
("already_paid", "duplicate_reference"). Integrity and policy errors are
raised; nothing is written when they are.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from rosca.config import (
    ENGINE_MAX_RETRIES, ENGINE_REMINDER_DAYS, ENGINE_RETRY_WAIT_MAX, ENGINE_RETRY_WAIT_MIN,
    ENGINE_TICK_WORKERS,
)
from rosca.exceptions import (
    ContributionNotFoundError, GroupNotFoundError, PaymentReferenceConflictError,
    SchedulerTickError,
)
from rosca.models import (
    ContributionStatus, Group, GroupStatus, PaymentReceipt, Penalty, PenaltyStatus,
    PenaltyType,
)
from rosca.schemas import ContributionReminder, PaymentConfirmed, PenaltyApplied
from rosca.services import cycle_state, ledger
from rosca.services.events import audit, emit
from rosca.services.ledger import Ledger
from rosca.services.penalties import PenaltyPolicy, days_overdue, penalty_for
from rosca.services.rotation import rotation_schedule

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _target(event: PaymentConfirmed) -> str:
    return f"group {event.group_id} user {event.user_id} cycle {event.cycle_number}"


# ══════════════════════════════════════════════════════════
# PENALTY SWEEP
# ══════════════════════════════════════════════════════════

def sweep_late_penalties(db: Session, group: Group, now: datetime) -> List[Dict]:
    """
    One late_payment penalty per pending, past-due contribution. Contributions
    whose penalty would be zero (still inside the grace window) are left for
    a later tick.
    """
    policy = PenaltyPolicy.from_group(group)
    applied = []

    for contribution in ledger.overdue_unpenalized(db, group.id, now):
        amount = penalty_for(contribution, now, policy)
        if amount <= 0:
            continue

        days = days_overdue(contribution.due_date, now)
        penalty = Penalty(
            user_id=contribution.user_id,
            group_id=group.id,
            contribution_id=contribution.id,
            amount=amount,
            type=PenaltyType.LATE_PAYMENT,
            reason=f"Late payment - {days} days overdue (cycle {contribution.cycle_number})",
            status=PenaltyStatus.APPLIED,
        )
        try:
            with db.begin_nested():
                db.add(penalty)
                db.flush()
        except IntegrityError:
            logger.warning(f"Contribution {contribution.id} already penalized, skipping")
            continue

        emit(db, PenaltyApplied(
            user_id=contribution.user_id,
            group_id=group.id,
            contribution_id=contribution.id,
            amount=amount,
        ))
        audit(db, "penalty_applied", "penalty", penalty.id, group.id, {
            "contribution_id": str(contribution.id),
            "user_id": str(contribution.user_id),
            "days_overdue": days,
            "amount": str(amount),
        })
        logger.info(
            f"Penalty {amount} applied to user {contribution.user_id} "
            f"(group {group.id}, cycle {contribution.cycle_number}, {days} days late)"
        )
        applied.append({
            "penalty_id": str(penalty.id),
            "contribution_id": str(contribution.id),
            "user_id": str(contribution.user_id),
            "amount": str(amount),
        })

    return applied


# ══════════════════════════════════════════════════════════
# REMINDERS
# ══════════════════════════════════════════════════════════

def send_contribution_reminders(
    db: Session, group: Group, now: datetime, days_ahead: int = ENGINE_REMINDER_DAYS,
) -> List[Dict]:
    """
    Queue a contribution-reminder for every pending contribution due within
    ``days_ahead`` days ("due-soon") or already past due ("overdue"). The
    dedupe key carries the calendar day, so each contribution gets at most
    one reminder per day however often the tick runs.
    """
    today = now.date()
    due = ledger.pending_due_by(db, group.id, now + timedelta(days=days_ahead))
    reminders = [
        ContributionReminder(
            reminder="overdue" if c.due_date < now else "due-soon",
            user_id=c.user_id,
            group_id=group.id,
            contribution_id=c.id,
            cycle_number=c.cycle_number,
            amount=c.amount,
            due_date=c.due_date,
            sent_on=today,
        )
        for c in due
    ]
    already = ledger.queued_keys(db, {r.dedupe_key() for r in reminders})

    sent = []
    for reminder in reminders:
        if reminder.dedupe_key() in already or emit(db, reminder) is None:
            continue
        sent.append({
            "contribution_id": str(reminder.contribution_id),
            "user_id": str(reminder.user_id),
            "reminder": reminder.reminder,
        })

    if sent:
        logger.info(f"Group {group.id}: {len(sent)} contribution reminders queued")
    return sent


# ══════════════════════════════════════════════════════════
# ORCHESTRATOR
# ══════════════════════════════════════════════════════════

class Orchestrator:
    """
    Usage:
        engine = Orchestrator(SessionLocal)
        engine.on_payment_confirmed(PaymentConfirmed(...))
        engine.on_scheduler_tick(now)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        max_retries: int = ENGINE_MAX_RETRIES,
        wait_min: float = ENGINE_RETRY_WAIT_MIN,
        wait_max: float = ENGINE_RETRY_WAIT_MAX,
        tick_workers: int = ENGINE_TICK_WORKERS,
    ):
        self.ledger = Ledger(session_factory, max_retries, wait_min, wait_max)
        self.tick_workers = max(1, tick_workers)

    # ── Payment confirmations ────────────────────────────────────────────────

    def on_payment_confirmed(self, event: PaymentConfirmed, now: Optional[datetime] = None) -> Dict:
        """
        Mark the contribution paid, then settle/advance the cycle if that
        payment completed it. Redelivered events are successful no-ops.
        """
        if isinstance(event, dict):
            event = PaymentConfirmed(**event)
        now = now or event.paid_at

        def work(db: Session, group: Optional[Group]) -> Dict:
            if group is None:
                raise ContributionNotFoundError(event.group_id, event.user_id, event.cycle_number)
            return self._apply_payment(db, group, event, now)

        return self.ledger.group_transaction(event.group_id, work)

    def _apply_payment(self, db: Session, group: Group, event: PaymentConfirmed, now: datetime) -> Dict:
        result = {
            "success": True,
            "reference": event.reference,
            "group_id": str(group.id),
            "cycle_number": event.cycle_number,
            "already_paid": False,
            "duplicate_reference": False,
            "already_settled": False,
            "actions": [],
        }

        if self._is_redelivery(db, event):
            result.update(already_paid=True, duplicate_reference=True)
            return result

        contribution = ledger.find_contribution(db, group.id, event.user_id, event.cycle_number)
        if contribution is None or contribution.status == ContributionStatus.WAIVED:
            logger.error(
                f"Payment {event.reference}: no pending contribution for user {event.user_id}, "
                f"group {group.id}, cycle {event.cycle_number}"
            )
            raise ContributionNotFoundError(group.id, event.user_id, event.cycle_number)

        if contribution.status == ContributionStatus.PAID:
            logger.warning(
                f"Contribution {contribution.id} already paid "
                f"(ref {contribution.payment_reference}); payment {event.reference} is a no-op"
            )
            if not self._record_receipt(db, event, "already_paid"):
                self._is_redelivery(db, event)
            result["already_paid"] = True
            result["already_settled"] = ledger.get_payout(db, group.id, event.cycle_number) is not None
            return result

        if event.amount != contribution.amount:
            logger.warning(
                f"Payment {event.reference}: amount {event.amount} differs from "
                f"contribution amount {contribution.amount}"
            )

        if not self._record_receipt(db, event, "applied"):
            # same reference committed through another group id in the meantime
            if not self._is_redelivery(db, event):
                raise PaymentReferenceConflictError(event.reference, "another contribution", _target(event))
            result.update(already_paid=True, duplicate_reference=True)
            return result

        contribution.status = ContributionStatus.PAID
        contribution.paid_date = event.paid_at
        contribution.payment_reference = event.reference
        db.flush()

        audit(db, "contribution_paid", "contribution", contribution.id, group.id, {
            "reference": event.reference,
            "user_id": str(event.user_id),
            "cycle_number": event.cycle_number,
            "amount": str(event.amount),
            "expected_amount": str(contribution.amount),
            "paid_at": event.paid_at.isoformat(),
        })
        logger.info(f"Contribution {contribution.id} paid (ref {event.reference})")

        if group.status == GroupStatus.ACTIVE and contribution.cycle_number == group.current_cycle:
            result["actions"] = cycle_state.advance_group(db, group, now)
        result["current_cycle"] = group.current_cycle
        result["group_status"] = group.status
        return result

    def _is_redelivery(self, db: Session, event: PaymentConfirmed) -> bool:
        """
        True when the reference was already recorded for this same
        contribution. A reference recorded for a different one is a conflict:
        banks do not reuse references, so one of the two is wrong.
        """
        seen = db.query(PaymentReceipt).filter(PaymentReceipt.reference == event.reference).one_or_none()
        if seen is None:
            return False
        recorded = (seen.group_id, seen.user_id, seen.cycle_number)
        if recorded != (event.group_id, event.user_id, event.cycle_number):
            logger.error(
                f"Payment {event.reference} already recorded for group {seen.group_id}, "
                f"user {seen.user_id}, cycle {seen.cycle_number}; rejecting it for {_target(event)}"
            )
            raise PaymentReferenceConflictError(
                event.reference,
                f"group {seen.group_id} user {seen.user_id} cycle {seen.cycle_number}",
                _target(event),
            )
        logger.warning(f"Payment {event.reference} already processed ({seen.outcome}), ignoring redelivery")
        return True

    def _record_receipt(self, db: Session, event: PaymentConfirmed, outcome: str) -> bool:
        receipt = PaymentReceipt(
            reference=event.reference,
            group_id=event.group_id,
            user_id=event.user_id,
            cycle_number=event.cycle_number,
            amount=event.amount,
            paid_at=event.paid_at,
            outcome=outcome,
        )
        try:
            with db.begin_nested():
                db.add(receipt)
                db.flush()
        except IntegrityError:
            logger.warning(f"Receipt for {event.reference} written concurrently")
            return False
        return True

    # ── Scheduler ticks ──────────────────────────────────────────────────────

    def on_scheduler_tick(self, now: Optional[datetime] = None) -> Dict:
        """
        1. Activate forming groups that are full and fully deposited.
        2. Penalty sweep, reminders and settle/advance for every active group.
        Groups run in parallel. A failing group does not stop the others;
        failures are raised together at the end as SchedulerTickError.
        """
        now = now or _utcnow()
        report = {
            "now": now.isoformat(),
            "groups": 0,
            "activated": [],
            "processed": [],
            "failures": [],
        }

        forming = self.ledger.read(ledger.forming_group_ids)
        for result in self._run_groups(forming, self.activate_if_ready, now, report):
            if result["activated"]:
                report["activated"].append(result["group_id"])

        group_ids = self.ledger.read(ledger.active_group_ids)
        report["groups"] = len(group_ids)
        report["processed"] = self._run_groups(group_ids, self.tick_group, now, report)

        penalties = sum(len(p["penalties"]) for p in report["processed"])
        reminders = sum(len(p["reminders"]) for p in report["processed"])
        settled = sum(len(p["actions"]) for p in report["processed"])
        logger.info(
            f"Tick {report['now']}: {len(report['activated'])} activated, {len(group_ids)} groups, "
            f"{penalties} penalties, {reminders} reminders, {settled} cycles settled, "
            f"{len(report['failures'])} failures"
        )
        if report["failures"]:
            raise SchedulerTickError(report)
        return report

    def _run_groups(self, group_ids: List, step, now: datetime, report: Dict) -> List[Dict]:
        results = []
        if not group_ids:
            return results

        with ThreadPoolExecutor(max_workers=min(self.tick_workers, len(group_ids))) as pool:
            futures = {pool.submit(step, gid, now): gid for gid in group_ids}
            for future in as_completed(futures):
                group_id = futures[future]
                try:
                    results.append(future.result())
                except Exception as exc:
                    logger.error(f"Tick {step.__name__} failed for group {group_id}: {exc}", exc_info=True)
                    report["failures"].append({
                        "group_id": str(group_id),
                        "step": step.__name__,
                        "error": type(exc).__name__,
                        "detail": str(exc),
                    })
        return results

    def activate_if_ready(self, group_id, now: datetime) -> Dict:
        """Activate a forming group once every seat is taken and every deposit paid."""
        def work(db: Session, group: Optional[Group]) -> Dict:
            result = {"group_id": str(group_id), "activated": False}
            if group is None or group.status != GroupStatus.FORMING:
                return result
            problems = cycle_state.activation_problems(db, group)
            if problems:
                logger.debug(f"Group {group_id} not ready: {'; '.join(problems)}")
                result["problems"] = problems
                return result
            result["contributions_created"] = cycle_state.activate_group(db, group, now)
            result["activated"] = True
            logger.info(f"Group {group_id} full, activated by the scheduler")
            return result

        return self.ledger.group_transaction(group_id, work)

    def tick_group(self, group_id, now: datetime) -> Dict:
        def work(db: Session, group: Optional[Group]) -> Dict:
            if group is None or group.status != GroupStatus.ACTIVE:
                # Completed or cancelled since the group list was read.
                return {
                    "group_id": str(group_id), "skipped": True,
                    "penalties": [], "reminders": [], "actions": [],
                }
            penalties = sweep_late_penalties(db, group, now)
            reminders = send_contribution_reminders(db, group, now)
            actions = cycle_state.advance_group(db, group, now)
            return {
                "group_id": str(group_id),
                "skipped": False,
                "penalties": penalties,
                "reminders": reminders,
                "actions": actions,
                "current_cycle": group.current_cycle,
                "group_status": group.status,
            }

        return self.ledger.group_transaction(group_id, work)

    # ── Group lifecycle ──────────────────────────────────────────────────────

    def activate_group(self, group_id, now: Optional[datetime] = None, start_date: Optional[datetime] = None) -> Dict:
        now = now or _utcnow()

        def work(db: Session, group: Optional[Group]) -> Dict:
            if group is None:
                raise GroupNotFoundError(group_id)
            created = cycle_state.activate_group(db, group, now, start_date)
            return {
                "success": True,
                "group_id": str(group.id),
                "status": group.status,
                "current_cycle": group.current_cycle,
                "contributions_created": created,
            }

        return self.ledger.group_transaction(group_id, work)

    def cancel_group(self, group_id, now: Optional[datetime] = None, reason: str = "cancelled") -> Dict:
        now = now or _utcnow()

        def work(db: Session, group: Optional[Group]) -> Dict:
            if group is None:
                raise GroupNotFoundError(group_id)
            cycle_state.cancel_group(db, group, now, reason)
            return {"success": True, "group_id": str(group.id), "status": group.status}

        return self.ledger.group_transaction(group_id, work)

    def cycle_status(self, group_id) -> Dict:
        """Read-only snapshot of a group's rotation and current cycle."""
        def work(db: Session) -> Dict:
            group = db.query(Group).filter(Group.id == group_id).one_or_none()
            if group is None:
                raise GroupNotFoundError(group_id)
            cycle = group.current_cycle
            state = cycle_state.get_cycle_state(db, group, cycle)
            payout = ledger.get_payout(db, group.id, cycle)
            return {
                "group_id": str(group.id),
                "status": group.status,
                "current_cycle": cycle,
                "total_cycles": group.total_cycles,
                "cycle_state": state.value if state else None,
                "paid": ledger.paid_count(db, group.id, cycle),
                "required": group.total_members,
                "payout": None if payout is None else {
                    "id": str(payout.id),
                    "recipient_id": str(payout.recipient_id),
                    "amount": str(payout.amount),
                    "status": payout.status,
                },
                "schedule": [
                    {"cycle_number": n, "recipient_id": str(uid) if uid else None}
                    for n, uid in rotation_schedule(db, group)
                ],
            }

        return self.ledger.read(work)

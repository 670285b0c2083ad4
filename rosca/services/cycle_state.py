"""
Cycle State Machine
rosca/services/cycle_state.py

Group lifecycle:
    FORMING → ACTIVE        (membership full, deposits paid; cycle 1 opens)
    FORMING → CANCELLED
    ACTIVE  → COMPLETED     (last cycle closed)
    ACTIVE  → CANCELLED
    COMPLETED, CANCELLED    terminal

Cycle lifecycle inside an active group (derived from the ledger, not stored):
    OPEN      contributions exist, no payout yet
    SETTLING  payout row exists, group not yet advanced past the cycle
    CLOSED    group moved past the cycle (or completed)

Every function here expects to run inside Ledger.group_transaction with the
group row locked, and takes ``now`` explicitly. None of them commit.
"""

import enum
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rosca.exceptions import (
    CycleNotCompleteError, CycleOutOfRangeError, GroupNotReadyError,
    InvalidGroupTransitionError, PolicyViolationError, TransientLedgerError,
)
from rosca.models import (
    Contribution, ContributionStatus, Frequency, Group, GroupStatus, Member,
    MemberStatus, Payout, PayoutStatus,
)
from rosca.schemas import CycleAdvanced, GroupCompleted, PayoutReady
from rosca.services import ledger
from rosca.services.events import audit, emit
from rosca.services.membership import get_active_members
from rosca.services.payouts import calculate_service_fee, payout_for_group
from rosca.services.rotation import resolve_recipient

logger = logging.getLogger(__name__)

OPEN_CYCLE_ATTEMPTS = 3


class CycleState(str, enum.Enum):
    OPEN = "open"
    SETTLING = "settling"
    CLOSED = "closed"


# Valid transitions: {from_status: {allowed_to_statuses}}
_TRANSITIONS = {
    GroupStatus.FORMING: {GroupStatus.ACTIVE, GroupStatus.CANCELLED},
    GroupStatus.ACTIVE: {GroupStatus.COMPLETED, GroupStatus.CANCELLED},
    GroupStatus.COMPLETED: set(),
    GroupStatus.CANCELLED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, set())


def _transition(group: Group, target: str) -> None:
    if not can_transition(group.status, target):
        raise InvalidGroupTransitionError(group.id, group.status, target)
    logger.info(f"Group {group.id}: {group.status} → {target}")
    group.status = target


def compute_due_date(start_date: datetime, frequency: str, cycle_number: int) -> datetime:
    offset = cycle_number - 1
    if frequency == Frequency.DAILY:
        return start_date + timedelta(days=offset)
    if frequency == Frequency.WEEKLY:
        return start_date + timedelta(weeks=offset)
    return start_date + relativedelta(months=offset)


# ══════════════════════════════════════════════════════════
# CYCLE ACTIONS
# ══════════════════════════════════════════════════════════

def open_cycle(db: Session, group: Group, cycle_number: int, now: datetime) -> int:
    """
    Batch-create the pending contributions of ``cycle_number``, one per active
    member. Safe to re-run: rows that already exist are left alone and only the
    missing ones are inserted. Returns how many rows were created.
    """
    if cycle_number > group.total_cycles:
        raise CycleOutOfRangeError(group.id, cycle_number, group.total_cycles)
    if group.status != GroupStatus.ACTIVE:
        raise PolicyViolationError(f"Group {group.id} is {group.status}; cannot open cycle {cycle_number}")

    due_date = compute_due_date(group.start_date, group.frequency, cycle_number)
    service_fee = calculate_service_fee(group.contribution_amount, group.service_fee_percentage)

    for attempt in range(1, OPEN_CYCLE_ATTEMPTS + 1):
        existing = ledger.contribution_user_ids(db, group.id, cycle_number)
        missing = [m for m in get_active_members(db, group.id) if m["user_id"] not in existing]
        if not missing:
            return 0

        rows = [
            Contribution(
                group_id=group.id,
                user_id=m["user_id"],
                cycle_number=cycle_number,
                amount=group.contribution_amount,
                service_fee=service_fee,
                due_date=due_date,
                status=ContributionStatus.PENDING,
            )
            for m in missing
        ]
        try:
            with db.begin_nested():
                db.add_all(rows)
                db.flush()
        except IntegrityError:
            logger.warning(
                f"Group {group.id} cycle {cycle_number}: contribution batch collided "
                f"(attempt {attempt}), re-running"
            )
            continue

        audit(db, "cycle_opened", "group", group.id, group.id, {
            "cycle_number": cycle_number,
            "contributions_created": len(rows),
            "due_date": due_date.isoformat(),
        })
        logger.info(f"Group {group.id}: cycle {cycle_number} opened, {len(rows)} contributions due {due_date:%Y-%m-%d}")
        return len(rows)

    raise TransientLedgerError(
        f"Group {group.id}: could not open cycle {cycle_number} after {OPEN_CYCLE_ATTEMPTS} attempts"
    )


def is_cycle_complete(db: Session, group: Group, cycle_number: int) -> bool:
    """Side-effect free; cheap enough to call speculatively."""
    return ledger.paid_count(db, group.id, cycle_number) == group.total_members


def get_cycle_state(db: Session, group: Group, cycle_number: int) -> Optional[CycleState]:
    """None for cycles that have not opened yet (or a group still forming)."""
    if not 1 <= cycle_number <= group.total_cycles:
        raise CycleOutOfRangeError(group.id, cycle_number, group.total_cycles)
    if group.status == GroupStatus.FORMING:
        return None
    if group.status == GroupStatus.COMPLETED or cycle_number < group.current_cycle:
        return CycleState.CLOSED
    if cycle_number > group.current_cycle:
        return None
    if ledger.get_payout(db, group.id, cycle_number) is not None:
        return CycleState.SETTLING
    return CycleState.OPEN


def settle_cycle(db: Session, group: Group, cycle_number: int, now: datetime) -> Tuple[Payout, bool]:
    """
    Create the single payout of a complete cycle and queue ``payout-ready``.
    Returns (payout, created). An existing payout is returned untouched.
    """
    if cycle_number > group.total_cycles:
        raise CycleOutOfRangeError(group.id, cycle_number, group.total_cycles)

    existing = ledger.get_payout(db, group.id, cycle_number)
    if existing is not None:
        logger.info(f"Group {group.id}: cycle {cycle_number} already settled (payout {existing.id})")
        return existing, False

    paid = ledger.paid_count(db, group.id, cycle_number)
    if paid != group.total_members:
        raise CycleNotCompleteError(group.id, cycle_number, paid, group.total_members)

    recipient = resolve_recipient(db, group, cycle_number)
    amount = payout_for_group(group)

    payout = Payout(
        group_id=group.id,
        cycle_number=cycle_number,
        recipient_id=recipient.user_id,
        amount=amount,
        status=PayoutStatus.PENDING,
    )
    try:
        with db.begin_nested():
            db.add(payout)
            db.flush()
    except IntegrityError:
        logger.warning(f"Group {group.id}: payout for cycle {cycle_number} inserted concurrently")
        return ledger.get_payout(db, group.id, cycle_number), False

    emit(db, PayoutReady(
        group_id=group.id,
        cycle_number=cycle_number,
        recipient_id=recipient.user_id,
        amount=amount,
    ))
    audit(db, "payout_created", "payout", payout.id, group.id, {
        "cycle_number": cycle_number,
        "recipient_id": str(recipient.user_id),
        "amount": str(amount),
    })
    logger.info(f"Group {group.id}: cycle {cycle_number} settled, {amount} → {recipient.user_id}")
    return payout, True


def close_cycle(db: Session, group: Group, cycle_number: int, now: datetime) -> Optional[str]:
    """
    Close a settled cycle: complete the group after the last cycle, otherwise
    advance ``current_cycle`` and open the next one. Returns "completed",
    "advanced", or None when the cycle was already closed.
    """
    if cycle_number < group.current_cycle or group.status == GroupStatus.COMPLETED:
        return None
    if cycle_number > group.current_cycle:
        raise CycleOutOfRangeError(group.id, cycle_number, group.current_cycle)
    if ledger.get_payout(db, group.id, cycle_number) is None:
        paid = ledger.paid_count(db, group.id, cycle_number)
        raise CycleNotCompleteError(group.id, cycle_number, paid, group.total_members)

    if cycle_number >= group.total_cycles:
        _transition(group, GroupStatus.COMPLETED)
        group.end_date = now
        db.flush()
        emit(db, GroupCompleted(group_id=group.id))
        audit(db, "group_completed", "group", group.id, group.id, {"cycles": group.total_cycles})
        return "completed"

    next_cycle = cycle_number + 1
    group.current_cycle = next_cycle
    db.flush()
    open_cycle(db, group, next_cycle, now)
    emit(db, CycleAdvanced(group_id=group.id, new_cycle_number=next_cycle))
    return "advanced"


def advance_group(db: Session, group: Group, now: datetime) -> List[Dict]:
    """
    Settle and close the current cycle for as long as it is complete. This is
    the step both entry points re-run; it does nothing when no cycle is ready.
    """
    actions = []
    while group.status == GroupStatus.ACTIVE and is_cycle_complete(db, group, group.current_cycle):
        cycle_number = group.current_cycle
        payout, created = settle_cycle(db, group, cycle_number, now)
        outcome = close_cycle(db, group, cycle_number, now)
        actions.append({
            "cycle_number": cycle_number,
            "payout_id": str(payout.id),
            "payout_created": created,
            "recipient_id": str(payout.recipient_id),
            "amount": str(payout.amount),
            "outcome": outcome,
        })
    return actions


# ══════════════════════════════════════════════════════════
# GROUP ACTIONS
# ══════════════════════════════════════════════════════════

def activation_problems(db: Session, group: Group) -> List[str]:
    members = (
        db.query(Member)
        .filter(Member.group_id == group.id, Member.status == MemberStatus.ACTIVE)
        .order_by(Member.position.asc())
        .all()
    )
    problems = []
    if len(members) != group.total_members:
        problems.append(f"{len(members)}/{group.total_members} active members")
    positions = [m.position for m in members]
    if positions != list(range(1, len(members) + 1)):
        problems.append(f"positions {positions} are not contiguous from 1")
    unpaid = [str(m.user_id) for m in members if not m.has_paid_security_deposit]
    if unpaid:
        problems.append(f"security deposit unpaid by {len(unpaid)} member(s)")
    return problems


def activate_group(db: Session, group: Group, now: datetime, start_date: Optional[datetime] = None) -> int:
    """FORMING → ACTIVE and open cycle 1. Returns contributions created."""
    if not can_transition(group.status, GroupStatus.ACTIVE):
        raise InvalidGroupTransitionError(group.id, group.status, GroupStatus.ACTIVE)
    problems = activation_problems(db, group)
    if problems:
        raise GroupNotReadyError(group.id, problems)

    _transition(group, GroupStatus.ACTIVE)
    group.start_date = start_date or now
    group.current_cycle = 1
    db.flush()
    created = open_cycle(db, group, 1, now)
    audit(db, "group_activated", "group", group.id, group.id, {
        "start_date": group.start_date.isoformat(),
        "total_cycles": group.total_cycles,
    })
    return created


def cancel_group(db: Session, group: Group, now: datetime, reason: str) -> None:
    _transition(group, GroupStatus.CANCELLED)
    group.end_date = now
    db.flush()
    audit(db, "group_cancelled", "group", group.id, group.id, {
        "reason": reason,
        "cycle": group.current_cycle,
    })

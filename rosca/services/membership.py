"""
Membership snapshot
rosca/services/membership.py

Groups and members are owned by the membership-management side of the
product. The engine only reads them through ``get_active_members``; the
registration helpers here are what that side calls to seed the ledger, and
they apply the same rules the storage layer enforces (position unique per
group, capacity never exceeded).
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rosca.config import DEFAULT_POLICY
from rosca.exceptions import GroupNotFoundError, MembershipError
from rosca.models import Frequency, Group, GroupStatus, Member, MemberStatus

logger = logging.getLogger(__name__)

FREQUENCIES = (Frequency.DAILY, Frequency.WEEKLY, Frequency.MONTHLY)


def get_active_members(db: Session, group_id) -> List[Dict]:
    """[{user_id, position}] of active members, ordered by position."""
    rows = (
        db.query(Member.user_id, Member.position)
        .filter(Member.group_id == group_id, Member.status == MemberStatus.ACTIVE)
        .order_by(Member.position.asc())
        .all()
    )
    return [{"user_id": r.user_id, "position": r.position} for r in rows]


def create_group(
    db: Session,
    name: str,
    contribution_amount,
    frequency: str,
    total_members: int,
    created_by=None,
    service_fee_percentage=None,
    security_deposit_percentage=None,
    penalty_rate_per_day=None,
    penalty_max_rate=None,
    penalty_grace_days: Optional[int] = None,
    auto_add_creator: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Group:
    """
    Register a forming group. Policy values not given fall back to
    config.DEFAULT_POLICY and are stored on the group.

    If ``auto_add_creator`` is on and ``created_by`` is given, the creator
    joins at position 1 as an active member.
    """
    amount = Decimal(contribution_amount)
    if amount <= 0:
        raise MembershipError("contribution_amount must be positive")
    if frequency not in FREQUENCIES:
        raise MembershipError(f"Unknown frequency '{frequency}'")
    if not 2 <= int(total_members) <= 50:
        raise MembershipError("total_members must be between 2 and 50")

    def _policy(value, key):
        return DEFAULT_POLICY[key] if value is None else value

    group = Group(
        name=name,
        created_by=created_by,
        contribution_amount=amount,
        frequency=frequency,
        total_members=int(total_members),
        total_cycles=int(total_members),   # one payout slot per member
        current_members=0,
        current_cycle=1,
        status=GroupStatus.FORMING,
        service_fee_percentage=Decimal(_policy(service_fee_percentage, "service_fee_percentage")),
        security_deposit_percentage=Decimal(
            _policy(security_deposit_percentage, "security_deposit_percentage")
        ),
        penalty_rate_per_day=Decimal(_policy(penalty_rate_per_day, "penalty_rate_per_day")),
        penalty_max_rate=Decimal(_policy(penalty_max_rate, "penalty_max_rate")),
        penalty_grace_days=int(_policy(penalty_grace_days, "penalty_grace_days")),
        auto_add_creator=bool(_policy(auto_add_creator, "auto_add_creator")),
    )
    if now is not None:
        group.created_at = now
    db.add(group)
    db.flush()

    if group.auto_add_creator and created_by is not None:
        add_member(db, group.id, created_by, position=1, status=MemberStatus.ACTIVE, is_creator=True)

    logger.info(f"Group {group.id} registered ({total_members} members, {frequency})")
    return group


def add_member(
    db: Session,
    group_id,
    user_id,
    position: Optional[int] = None,
    has_paid_security_deposit: bool = False,
    status: str = MemberStatus.ACTIVE,
    is_creator: bool = False,
) -> Member:
    """Add a member at ``position`` (or the lowest free one)."""
    group = db.query(Group).filter(Group.id == group_id).with_for_update().one_or_none()
    if group is None:
        raise GroupNotFoundError(group_id)
    if group.status != GroupStatus.FORMING:
        raise MembershipError(f"Group {group_id} is {group.status}; members can only join while forming")
    if group.current_members >= group.total_members:
        raise MembershipError(f"Group {group_id} is full")

    taken = {
        p for (p,) in db.query(Member.position).filter(Member.group_id == group_id)
    }
    if position is None:
        position = next((p for p in range(1, group.total_members + 1) if p not in taken), None)
        if position is None:
            raise MembershipError(f"Group {group_id} has no free position")
    if not 1 <= position <= group.total_members:
        raise MembershipError(f"Position {position} outside 1..{group.total_members}")
    if position in taken:
        raise MembershipError(f"Position {position} already taken in group {group_id}")

    member = Member(
        group_id=group_id,
        user_id=user_id,
        position=position,
        has_paid_security_deposit=has_paid_security_deposit,
        status=status,
        is_creator=is_creator,
    )
    try:
        with db.begin_nested():
            db.add(member)
            db.flush()
    except IntegrityError:
        raise MembershipError(f"User {user_id} or position {position} already in group {group_id}")

    group.current_members += 1
    db.flush()
    return member


def mark_deposit_paid(db: Session, group_id, user_id) -> Member:
    member = (
        db.query(Member)
        .filter(Member.group_id == group_id, Member.user_id == user_id)
        .one_or_none()
    )
    if member is None:
        raise MembershipError(f"User {user_id} is not a member of group {group_id}")
    member.has_paid_security_deposit = True
    db.flush()
    return member

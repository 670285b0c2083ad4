"""
Rotation Resolver
rosca/services/rotation.py

The recipient of cycle N is the member whose position == N. Nothing else
(join order, who already got paid, deposits) is consulted.
"""

import logging
from typing import List, Tuple

from sqlalchemy.orm import Session

from rosca.exceptions import RotationGapError
from rosca.models import Group, Member, MemberStatus

logger = logging.getLogger(__name__)


def resolve_recipient(db: Session, group: Group, cycle_number: int) -> Member:
    member = (
        db.query(Member)
        .filter(
            Member.group_id == group.id,
            Member.position == cycle_number,
            Member.status != MemberStatus.REMOVED,
        )
        .one_or_none()
    )
    if member is None:
        logger.error(f"Rotation gap: group {group.id} has no member at position {cycle_number}")
        raise RotationGapError(group.id, cycle_number)
    return member


def rotation_schedule(db: Session, group: Group) -> List[Tuple[int, object]]:
    """[(cycle_number, user_id or None)] for cycles 1..total_cycles."""
    by_position = {
        m.position: m.user_id
        for m in db.query(Member).filter(
            Member.group_id == group.id,
            Member.status != MemberStatus.REMOVED,
        )
    }
    return [(n, by_position.get(n)) for n in range(1, group.total_cycles + 1)]

"""
Ledger Store: transactional access
rosca/services/ledger.py

Unit of atomicity = one group: open a transaction, lock the group row, read,
decide, write, commit. Everything that mutates a group goes through
``Ledger.group_transaction``.

Locking:
    PostgreSQL  SELECT ... FOR UPDATE on groups.id (a per-group mutex that
                works across engine instances)
    SQLite      BEGIN IMMEDIATE (see database.py), one writer at a time

Lock timeouts, deadlocks, serialization failures and dropped connections
surface as OperationalError; they are retried with exponential backoff and,
once retries run out, re-raised as TransientLedgerError.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy import exists
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    Retrying, before_sleep_log, retry_if_exception, stop_after_attempt,
    wait_random_exponential,
)

from rosca.config import ENGINE_MAX_RETRIES, ENGINE_RETRY_WAIT_MAX, ENGINE_RETRY_WAIT_MIN
from rosca.exceptions import TransientLedgerError
from rosca.models import (
    Contribution, ContributionStatus, Group, GroupStatus, OutboxEvent, Payout, Penalty,
    PenaltyType,
)

logger = logging.getLogger(__name__)


# Lock timeouts, deadlocks, serialization failures, exhausted pool.
TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class Ledger:
    """Opens sessions and runs units of work with retry-on-conflict."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_retries: int = ENGINE_MAX_RETRIES,
        wait_min: float = ENGINE_RETRY_WAIT_MIN,
        wait_max: float = ENGINE_RETRY_WAIT_MAX,
    ):
        self.session_factory = session_factory
        self.max_retries = max(1, max_retries)
        self.wait_min = wait_min
        self.wait_max = wait_max

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_random_exponential(multiplier=self.wait_min, max=self.wait_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _run(self, unit: Callable, *args):
        try:
            return self._retrying()(unit, *args)
        except TRANSIENT_ERRORS as exc:
            raise self._unavailable(exc) from exc
        except DBAPIError as exc:
            if not exc.connection_invalidated:
                raise
            raise self._unavailable(exc) from exc

    def _unavailable(self, exc: Exception) -> TransientLedgerError:
        logger.error(f"Ledger unavailable after {self.max_retries} attempts: {exc}", exc_info=True)
        return TransientLedgerError(str(exc))

    def group_transaction(self, group_id, fn: Callable[[Session, Optional[Group]], object]):
        """
        Run ``fn(db, group)`` in one transaction holding the group's lock.
        ``group`` is None when the id is unknown; ``fn`` decides what that means.
        Any exception rolls the whole unit back.
        """
        def unit():
            with self.session_factory.begin() as db:
                return fn(db, lock_group(db, group_id))

        return self._run(unit)

    def transaction(self, fn: Callable[[Session], object]):
        def unit():
            with self.session_factory.begin() as db:
                return fn(db)

        return self._run(unit)

    def read(self, fn: Callable[[Session], object]):
        def unit():
            with self.session_factory() as db:
                return fn(db)

        return self._run(unit)


# ══════════════════════════════════════════════════════════
# QUERIES
# ══════════════════════════════════════════════════════════

def lock_group(db: Session, group_id) -> Optional[Group]:
    return (
        db.query(Group)
        .filter(Group.id == group_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )


def active_group_ids(db: Session) -> List:
    rows = (
        db.query(Group.id)
        .filter(Group.status == GroupStatus.ACTIVE)
        .order_by(Group.created_at.asc())
        .all()
    )
    return [r.id for r in rows]


def forming_group_ids(db: Session) -> List:
    rows = (
        db.query(Group.id)
        .filter(Group.status == GroupStatus.FORMING, Group.current_members >= Group.total_members)
        .order_by(Group.created_at.asc())
        .all()
    )
    return [r.id for r in rows]


def paid_count(db: Session, group_id, cycle_number: int) -> int:
    return (
        db.query(Contribution)
        .filter(
            Contribution.group_id == group_id,
            Contribution.cycle_number == cycle_number,
            Contribution.status == ContributionStatus.PAID,
        )
        .count()
    )


def get_payout(db: Session, group_id, cycle_number: int) -> Optional[Payout]:
    return (
        db.query(Payout)
        .filter(Payout.group_id == group_id, Payout.cycle_number == cycle_number)
        .one_or_none()
    )


def find_contribution(db: Session, group_id, user_id, cycle_number: int) -> Optional[Contribution]:
    return (
        db.query(Contribution)
        .filter(
            Contribution.group_id == group_id,
            Contribution.user_id == user_id,
            Contribution.cycle_number == cycle_number,
        )
        .one_or_none()
    )


def contribution_user_ids(db: Session, group_id, cycle_number: int) -> set:
    rows = db.query(Contribution.user_id).filter(
        Contribution.group_id == group_id,
        Contribution.cycle_number == cycle_number,
    )
    return {r.user_id for r in rows}


def overdue_unpenalized(db: Session, group_id, now) -> List[Contribution]:
    """Pending contributions past due that have no late_payment penalty yet."""
    penalized = exists().where(
        Penalty.contribution_id == Contribution.id,
        Penalty.type == PenaltyType.LATE_PAYMENT,
    )
    return (
        db.query(Contribution)
        .filter(
            Contribution.group_id == group_id,
            Contribution.status == ContributionStatus.PENDING,
            Contribution.due_date < now,
            ~penalized,
        )
        .order_by(Contribution.due_date.asc(), Contribution.cycle_number.asc())
        .all()
    )


def pending_due_by(db: Session, group_id, until) -> List[Contribution]:
    """Pending contributions of the group due on or before ``until``."""
    return (
        db.query(Contribution)
        .filter(
            Contribution.group_id == group_id,
            Contribution.status == ContributionStatus.PENDING,
            Contribution.due_date <= until,
        )
        .order_by(Contribution.due_date.asc(), Contribution.user_id.asc())
        .all()
    )


def queued_keys(db: Session, keys) -> set:
    """The subset of ``keys`` already present in the outbox."""
    if not keys:
        return set()
    rows = db.query(OutboxEvent.dedupe_key).filter(OutboxEvent.dedupe_key.in_(list(keys)))
    return {r.dedupe_key for r in rows}

"""Tests for the cycle / group state machine."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from rosca.exceptions import (
    CycleNotCompleteError, CycleOutOfRangeError, GroupNotReadyError,
    InvalidGroupTransitionError, PolicyViolationError,
)
from rosca.models import Contribution, ContributionStatus, GroupStatus, Member, MemberStatus, Payout
from rosca.services import cycle_state
from rosca.services.cycle_state import CycleState, compute_due_date

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _mark_paid(db, group_id, cycle_number):
    db.query(Contribution).filter(
        Contribution.group_id == group_id,
        Contribution.cycle_number == cycle_number,
    ).update({"status": ContributionStatus.PAID}, synchronize_session=False)


class TestComputeDueDate:
    def test_daily(self) -> None:
        assert compute_due_date(START, "daily", 4) == START + timedelta(days=3)

    def test_weekly(self) -> None:
        assert compute_due_date(START, "weekly", 3) == START + timedelta(weeks=2)

    def test_monthly_clamps_to_month_end(self) -> None:
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert compute_due_date(start, "monthly", 2) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_first_cycle_is_start(self) -> None:
        assert compute_due_date(START, "monthly", 1) == START


class TestTransitions:
    @pytest.mark.parametrize("current,target,allowed", [
        ("forming", "active", True),
        ("forming", "cancelled", True),
        ("active", "completed", True),
        ("active", "cancelled", True),
        ("forming", "completed", False),
        ("completed", "active", False),
        ("cancelled", "active", False),
    ])
    def test_table(self, current, target, allowed) -> None:
        assert cycle_state.can_transition(current, target) is allowed


class TestActivation:
    def test_opens_first_cycle(self, session_factory, active_group) -> None:
        group_id, user_ids = active_group(members=3)
        with session_factory() as db:
            rows = db.query(Contribution).filter(Contribution.group_id == group_id).all()
        assert len(rows) == 3
        assert {r.user_id for r in rows} == set(user_ids)
        assert all(r.cycle_number == 1 and r.status == ContributionStatus.PENDING for r in rows)
        assert all(r.due_date == START for r in rows)
        assert all(r.service_fee == Decimal("100.00") for r in rows)

    def test_requires_full_membership(self, orchestrator, session_factory, forming_group) -> None:
        group_id, _ = forming_group(members=3)
        with session_factory.begin() as db:
            member = db.query(Member).filter(Member.group_id == group_id, Member.position == 3).one()
            member.status = MemberStatus.PENDING

        with pytest.raises(GroupNotReadyError):
            orchestrator.activate_group(group_id, now=START)

    def test_requires_deposits(self, orchestrator, forming_group) -> None:
        group_id, _ = forming_group(members=3, deposits_paid=False)
        with pytest.raises(GroupNotReadyError) as exc:
            orchestrator.activate_group(group_id, now=START)
        assert any("deposit" in r for r in exc.value.reasons)

    def test_twice_is_rejected(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=2)
        with pytest.raises(InvalidGroupTransitionError):
            orchestrator.activate_group(group_id, now=START)


class TestCycleActions:
    def test_open_cycle_is_rerunnable(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=3)
        created = orchestrator.ledger.group_transaction(
            group_id, lambda db, group: cycle_state.open_cycle(db, group, 1, START),
        )
        assert created == 0

    def test_open_cycle_out_of_range(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=3)
        with pytest.raises(CycleOutOfRangeError):
            orchestrator.ledger.group_transaction(
                group_id, lambda db, group: cycle_state.open_cycle(db, group, 4, START),
            )

    def test_open_cycle_requires_active_group(self, orchestrator, forming_group) -> None:
        group_id, _ = forming_group(members=3)
        with pytest.raises(PolicyViolationError):
            orchestrator.ledger.group_transaction(
                group_id, lambda db, group: cycle_state.open_cycle(db, group, 1, START),
            )

    def test_settle_incomplete_cycle(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=3)
        with pytest.raises(CycleNotCompleteError) as exc:
            orchestrator.ledger.group_transaction(
                group_id, lambda db, group: cycle_state.settle_cycle(db, group, 1, START),
            )
        assert (exc.value.paid, exc.value.required) == (0, 3)

    def test_settle_close_walkthrough(self, orchestrator, session_factory, active_group) -> None:
        group_id, user_ids = active_group(members=3)

        def work(db, group):
            _mark_paid(db, group_id, 1)
            assert cycle_state.is_cycle_complete(db, group, 1)
            assert cycle_state.get_cycle_state(db, group, 1) == CycleState.OPEN

            payout, created = cycle_state.settle_cycle(db, group, 1, START)
            again, created_again = cycle_state.settle_cycle(db, group, 1, START)
            assert created and not created_again
            assert again.id == payout.id
            assert cycle_state.get_cycle_state(db, group, 1) == CycleState.SETTLING

            assert cycle_state.close_cycle(db, group, 1, START) == "advanced"
            assert cycle_state.close_cycle(db, group, 1, START) is None
            assert cycle_state.get_cycle_state(db, group, 1) == CycleState.CLOSED
            assert cycle_state.get_cycle_state(db, group, 2) == CycleState.OPEN
            assert cycle_state.get_cycle_state(db, group, 3) is None
            return payout.recipient_id, payout.amount

        recipient, amount = orchestrator.ledger.group_transaction(group_id, work)
        assert recipient == user_ids[0]
        assert amount == Decimal("2700.00")

        with session_factory() as db:
            assert db.query(Payout).filter(Payout.group_id == group_id).count() == 1
            cycle_two = db.query(Contribution).filter(
                Contribution.group_id == group_id, Contribution.cycle_number == 2,
            ).all()
        assert len(cycle_two) == 3
        assert all(c.due_date == datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc) for c in cycle_two)

    def test_close_requires_payout(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=2)
        with pytest.raises(CycleNotCompleteError):
            orchestrator.ledger.group_transaction(
                group_id, lambda db, group: cycle_state.close_cycle(db, group, 1, START),
            )

    def test_advance_is_noop_when_nothing_ready(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=2)
        actions = orchestrator.ledger.group_transaction(
            group_id, lambda db, group: cycle_state.advance_group(db, group, START),
        )
        assert actions == []

    def test_last_cycle_completes_group(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=2)

        def work(db, group):
            outcomes = []
            for cycle_number in (1, 2):
                _mark_paid(db, group_id, cycle_number)
                outcomes.extend(a["outcome"] for a in cycle_state.advance_group(db, group, START))
            return outcomes, group.status, group.end_date

        outcomes, status, end_date = orchestrator.ledger.group_transaction(group_id, work)
        assert outcomes == ["advanced", "completed"]
        assert status == GroupStatus.COMPLETED
        assert end_date == START


class TestCancel:
    def test_cancel_active_group(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=3)
        result = orchestrator.cancel_group(group_id, now=START, reason="members left")
        assert result["status"] == GroupStatus.CANCELLED

    def test_cancel_is_terminal(self, orchestrator, active_group) -> None:
        group_id, _ = active_group(members=3)
        orchestrator.cancel_group(group_id, now=START)
        with pytest.raises(InvalidGroupTransitionError):
            orchestrator.cancel_group(group_id, now=START)

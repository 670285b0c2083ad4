"""Tests for the scheduled tick task."""

from datetime import datetime, timedelta, timezone

from rosca.models import Contribution, ContributionStatus, Member, MemberStatus
from rosca.tasks.scheduler_tick import run_scheduler_tick

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_runs_tick(session_factory, active_group) -> None:
    active_group(members=3)
    report = run_scheduler_tick(START + timedelta(days=3), session_factory=session_factory, relay=False)
    assert report["groups"] == 1
    assert len(report["processed"][0]["penalties"]) == 3


def test_failures_are_reported_not_raised(session_factory, active_group) -> None:
    group_id, _ = active_group(members=2)
    with session_factory.begin() as db:
        db.query(Contribution).filter(Contribution.group_id == group_id).update(
            {"status": ContributionStatus.PAID}, synchronize_session=False,
        )
        db.query(Member).filter(Member.group_id == group_id, Member.position == 1).update(
            {"status": MemberStatus.REMOVED}, synchronize_session=False,
        )

    report = run_scheduler_tick(START, session_factory=session_factory, relay=False)
    assert [f["group_id"] for f in report["failures"]] == [str(group_id)]


def test_activates_ready_groups(session_factory, forming_group) -> None:
    group_id, _ = forming_group(members=2)
    report = run_scheduler_tick(START, session_factory=session_factory, relay=False)
    assert report["activated"] == [str(group_id)]
    assert report["processed"][0]["group_id"] == str(group_id)

"""Shared fixtures: a throwaway SQLite ledger per test and group builders."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from rosca.database import build_engine, build_session_factory, init_db
from rosca.schemas import PaymentConfirmed
from rosca.services.membership import add_member, create_group, mark_deposit_paid
from rosca.services.orchestrator import Orchestrator

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def orchestrator(session_factory):
    return Orchestrator(session_factory, max_retries=5, wait_min=0.01, wait_max=0.1, tick_workers=4)


@pytest.fixture
def forming_group(session_factory):
    """Register a forming group; the creator takes position 1."""

    def _make(members=3, amount="1000.00", frequency="monthly", deposits_paid=True, **policy):
        user_ids = [uuid.uuid4() for _ in range(members)]
        with session_factory.begin() as db:
            group = create_group(
                db, "Junta familiar", Decimal(amount), frequency, members,
                created_by=user_ids[0], service_fee_percentage=policy.pop("service_fee_percentage", 10),
                **policy,
            )
            for user_id in user_ids[1:]:
                add_member(db, group.id, user_id)
            if deposits_paid:
                for user_id in user_ids:
                    mark_deposit_paid(db, group.id, user_id)
            group_id = group.id
        return group_id, user_ids

    return _make


@pytest.fixture
def active_group(forming_group, orchestrator):
    """Forming group activated at START; cycle 1 is open."""

    def _make(members=3, amount="1000.00", frequency="monthly", start=START, **policy):
        group_id, user_ids = forming_group(members=members, amount=amount, frequency=frequency, **policy)
        orchestrator.activate_group(group_id, now=start, start_date=start)
        return group_id, user_ids

    return _make


def payment(group_id, user_id, cycle_number, amount="1000.00", reference=None, paid_at=None):
    return PaymentConfirmed(
        reference=reference or f"PAY-{uuid.uuid4().hex[:12]}",
        group_id=group_id,
        user_id=user_id,
        cycle_number=cycle_number,
        amount=Decimal(amount),
        paid_at=paid_at or START + timedelta(hours=1),
    )


@pytest.fixture
def pay(orchestrator):
    """Confirm a payment through the orchestrator and return its result."""

    def _pay(group_id, user_id, cycle_number, **kwargs):
        return orchestrator.on_payment_confirmed(payment(group_id, user_id, cycle_number, **kwargs))

    return _pay


@pytest.fixture
def pay_cycle(pay):
    """Every member pays ``cycle_number``; returns the last result."""

    def _pay_cycle(group_id, user_ids, cycle_number, amount="1000.00"):
        result = None
        for user_id in user_ids:
            result = pay(group_id, user_id, cycle_number, amount=amount)
        return result

    return _pay_cycle


@pytest.fixture
def make_payment():
    return payment

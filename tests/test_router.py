"""Tests for the HTTP adapter."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from rosca import config
from rosca.database import get_db
from rosca.models import AuditLog, Contribution, ContributionStatus, Member, MemberStatus
from rosca.routers.engine import get_orchestrator, router

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(session_factory, orchestrator):
    app = FastAPI()
    app.include_router(router)

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_db] = _db
    return TestClient(app)


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {config.ENGINE_CRON_SECRET}"}


def _payment_body(group_id, user_id, cycle_number=1, reference="WEB-1"):
    return {
        "reference": reference,
        "group_id": str(group_id),
        "user_id": str(user_id),
        "cycle_number": cycle_number,
        "amount": "1000.00",
        "paid_at": (START + timedelta(hours=3)).isoformat(),
    }


class TestAuth:
    def test_missing_secret(self, client) -> None:
        assert client.post("/api/engine/cron/tick").status_code == 401

    def test_wrong_secret(self, client) -> None:
        response = client.post("/api/engine/cron/tick", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_health_is_open(self, client) -> None:
        response = client.get("/api/engine/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "pending_events": 0}


class TestPayments:
    def test_confirmed(self, client, auth, active_group) -> None:
        group_id, user_ids = active_group(members=2)
        response = client.post("/api/engine/payments/confirmed", json=_payment_body(group_id, user_ids[0]), headers=auth)
        assert response.status_code == 200
        assert response.json()["success"] is True

        again = client.post("/api/engine/payments/confirmed", json=_payment_body(group_id, user_ids[0]), headers=auth)
        assert again.json()["duplicate_reference"] is True

    def test_unknown_contribution_is_404(self, client, auth, active_group) -> None:
        group_id, user_ids = active_group(members=2)
        response = client.post(
            "/api/engine/payments/confirmed",
            json=_payment_body(group_id, user_ids[0], cycle_number=2),
            headers=auth,
        )
        assert response.status_code == 404

    def test_reused_reference_is_409(self, client, auth, active_group) -> None:
        group_id, user_ids = active_group(members=2)
        client.post("/api/engine/payments/confirmed", json=_payment_body(group_id, user_ids[0]), headers=auth)

        response = client.post(
            "/api/engine/payments/confirmed", json=_payment_body(group_id, user_ids[1]), headers=auth,
        )
        assert response.status_code == 409
        assert "WEB-1" in response.json()["detail"]

    def test_invalid_body_is_422(self, client, auth) -> None:
        body = _payment_body(uuid.uuid4(), uuid.uuid4())
        body["amount"] = "-5"
        response = client.post("/api/engine/payments/confirmed", json=body, headers=auth)
        assert response.status_code == 422


class TestTick:
    def test_tick_with_clock(self, client, auth, active_group) -> None:
        active_group(members=2)
        response = client.post(
            "/api/engine/cron/tick",
            json={"now": (START + timedelta(days=3)).isoformat()},
            headers=auth,
        )
        data = response.json()
        assert response.status_code == 200
        assert data["success"] is True
        assert len(data["processed"][0]["penalties"]) == 2

    def test_tick_reports_failures(self, client, auth, session_factory, active_group) -> None:
        group_id, _ = active_group(members=2)
        with session_factory.begin() as db:
            db.query(Contribution).filter(Contribution.group_id == group_id).update(
                {"status": ContributionStatus.PAID}, synchronize_session=False,
            )
            db.query(Member).filter(Member.group_id == group_id, Member.position == 1).update(
                {"status": MemberStatus.REMOVED}, synchronize_session=False,
            )

        response = client.post("/api/engine/cron/tick", headers=auth)
        data = response.json()
        assert response.status_code == 200
        assert data["success"] is False
        assert data["failures"][0]["group_id"] == str(group_id)
        assert data["failures"][0]["error"] == "RotationGapError"


class TestGroups:
    def test_activate_and_status(self, client, auth, forming_group) -> None:
        group_id, user_ids = forming_group(members=3)
        response = client.post(
            f"/api/engine/groups/{group_id}/activate",
            json={"now": START.isoformat()},
            headers=auth,
        )
        assert response.status_code == 200
        assert response.json()["contributions_created"] == 3

        status = client.get(f"/api/engine/groups/{group_id}/cycle", headers=auth).json()
        assert status["status"] == "active"
        assert status["cycle_state"] == "open"

    def test_activate_twice_is_422(self, client, auth, active_group) -> None:
        group_id, _ = active_group(members=2)
        response = client.post(f"/api/engine/groups/{group_id}/activate", headers=auth)
        assert response.status_code == 422

    def test_cancel(self, client, auth, session_factory, active_group) -> None:
        group_id, _ = active_group(members=2)
        response = client.post(f"/api/engine/groups/{group_id}/cancel", json={"reason": "disbanded"}, headers=auth)
        assert response.json()["status"] == "cancelled"

        with session_factory() as db:
            entry = db.query(AuditLog).filter(AuditLog.action == "group_cancelled").one()
        assert entry.details["reason"] == "disbanded"

    def test_unknown_group_is_404(self, client, auth) -> None:
        response = client.get(f"/api/engine/groups/{uuid.uuid4()}/cycle", headers=auth)
        assert response.status_code == 404

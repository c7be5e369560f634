from __future__ import annotations

import importlib
import sys
from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from database import Base, Employee, Shift  # noqa: E402
from notifications import QueueDispatcher  # noqa: E402


@pytest.fixture()
def api_client(monkeypatch):
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    # Patch database module to point everything at the in-memory engine.
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "SessionLocal", Session)
    Base.metadata.create_all(engine)

    # Reload API after patching database bindings.
    import api  # type: ignore

    api = importlib.reload(api)

    with Session() as seed:
        for index, role in enumerate(["NURSE", "NURSE", "DOCTOR", "STAFF"], start=1):
            seed.add(Employee(full_name=f"Employee {index}", role=role))
        seed.commit()

    shared_session = Session()
    dispatcher = QueueDispatcher()

    def _get_db():
        try:
            yield shared_session
        finally:
            pass

    api.app.dependency_overrides[api.get_db] = _get_db
    api.app.dependency_overrides[api.get_dispatcher] = lambda: dispatcher

    client = TestClient(api.app)
    try:
        yield client, Session, dispatcher
    finally:
        shared_session.close()
        engine.dispose()


def test_health_endpoint(api_client) -> None:
    client, _, _ = api_client
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_validate_endpoint_reports_score_and_flags(api_client) -> None:
    client, _, _ = api_client

    resp = client.post(
        "/api/v1/shifts/validate",
        json={"employee_id": 1, "date": "2099-03-02", "shift_type": "PAGI", "location": "ICU"},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["is_valid"] is True
    assert data["violations"] == []
    assert data["can_proceed_with_warnings"] is True
    assert data["score"] > 30


def test_validate_endpoint_rejects_unknown_shift_type(api_client) -> None:
    client, _, _ = api_client

    resp = client.post(
        "/api/v1/shifts/validate",
        json={"employee_id": 1, "date": "2099-03-02", "shift_type": "SORE", "location": "ICU"},
    )

    assert resp.status_code == 422


def test_create_shift_endpoint_persists_and_blocks_duplicates(api_client) -> None:
    client, Session, dispatcher = api_client
    body = {"employeeId": 2, "date": "2099-03-02", "shiftType": "MALAM", "location": "RAWAT_INAP"}

    created = client.post("/api/v1/shifts", json=body)
    duplicate = client.post("/api/v1/shifts", json=body)

    assert created.status_code == 201
    assert created.json()["assignments"][0]["shift_type"] == "NIGHT"
    assert duplicate.status_code == 409
    assert duplicate.json()["conflicts"][0]["kind"] == "DOUBLE_BOOKING"
    assert len(dispatcher.events) == 1
    with Session() as session:
        assert len(session.scalars(select(Shift)).all()) == 1


def test_bulk_endpoint_runs_preview_and_lists_shifts(api_client) -> None:
    client, _, _ = api_client
    payload = {
        "period": "day",
        "startDate": "2099-03-02",
        "locations": ["ICU"],
        "shiftPattern": {"ICU": {"MORNING": 2, "NIGHT": 1}},
    }

    preview = client.post("/api/v1/schedules/bulk", json={**payload, "commit": False})
    committed = client.post("/api/v1/schedules/bulk", json=payload)
    listed = client.get("/api/v1/shifts", params={"start": "2099-03-02"})

    assert preview.status_code == 200
    assert preview.json()["persisted"] is False
    data = committed.json()
    assert data["success"] is True
    assert data["fulfillment_rate"] == pytest.approx(100.0)
    assert {a["employee_id"] for a in data["assignments"]} <= {1, 2, 3}
    assert len(listed.json()["shifts"]) == 3


def test_bulk_endpoint_rejects_unrequested_pattern_location(api_client) -> None:
    client, _, _ = api_client

    resp = client.post(
        "/api/v1/schedules/bulk",
        json={
            "period": "week",
            "startDate": "2099-03-02",
            "locations": ["ICU"],
            "shiftPattern": {"ICU": {"MORNING": 1}, "NICU": {"MORNING": 1}},
        },
    )

    assert resp.status_code == 422
    assert "NICU" in resp.json()["detail"]


def test_bulk_endpoint_reports_structural_shortage(api_client) -> None:
    client, Session, _ = api_client

    resp = client.post(
        "/api/v1/schedules/bulk",
        json={
            "period": "month",
            "year": 2099,
            "month": 3,
            "locations": ["RAWAT_INAP"],
            "shiftPattern": {"RAWAT_INAP": {"MORNING": 20}},
        },
    )

    assert resp.status_code == 422
    data = resp.json()
    assert data["success"] is False
    assert data["error_kind"] == "INSUFFICIENT_STAFF"
    with Session() as session:
        assert session.scalars(select(Shift)).all() == []

from __future__ import annotations

import datetime as dt

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from loipentrack import models
from loipentrack.errors import StoreError
from loipentrack.main import app
from loipentrack.store import TimeEntryStore
from loipentrack.timer import TimerRegistry, TimerSession


def test_start_pause_resume_stop_flow(client: TestClient, clock):
    start_resp = client.post("/timer/anna/start", json={"activity_type": "SetUp"})
    assert start_resp.status_code == 201
    data_start = start_resp.json()
    assert data_start["date"] == "2025-01-10"
    assert data_start["start_time"] == "08:00:00"
    assert data_start["stop_time"] is None
    assert data_start["total_hours"] is None

    clock.set("08:20:00")
    pause_resp = client.post("/timer/anna/pause")
    assert pause_resp.status_code == 200
    assert pause_resp.json()["state"] == "paused"

    clock.set("08:30:00")
    status_resp = client.get("/timer/anna")
    assert status_resp.json()["elapsed_seconds"] == 1200
    assert status_resp.json()["elapsed_display"] == "00:20:00"

    clock.set("08:35:00")
    resume_resp = client.post("/timer/anna/resume")
    assert resume_resp.status_code == 200
    assert resume_resp.json()["state"] == "running"
    assert resume_resp.json()["paused_seconds"] == 900

    clock.set("09:00:00")
    stop_resp = client.post("/timer/anna/stop")
    assert stop_resp.status_code == 200
    data = stop_resp.json()
    assert data["id"] == data_start["id"]
    assert data["stop_time"] == "09:00:00"
    assert data["total_hours"] == 0.75

    assert client.get("/timer/anna").json()["state"] == "idle"


def test_double_start_is_conflict(client: TestClient, session: Session):
    assert client.post("/timer/anna/start", json={"activity_type": "TrailGrooming"}).status_code == 201
    second = client.post("/timer/anna/start", json={"activity_type": "TrailGrooming"})
    assert second.status_code == 409
    assert "already running" in second.json()["detail"]
    assert session.query(models.TimeEntry).filter(models.TimeEntry.user_id == "anna").count() == 1


def test_actions_without_timer_are_conflicts(client: TestClient):
    for action in ("pause", "resume", "stop"):
        response = client.post(f"/timer/anna/{action}")
        assert response.status_code == 409
        assert response.json()["detail"] == "No timer is running"


def test_unknown_activity_is_bad_request(client: TestClient):
    response = client.post("/timer/anna/start", json={"activity_type": "Skiing"})
    assert response.status_code == 400
    assert client.get("/timer/anna").json()["state"] == "idle"


def test_failed_stop_can_be_retried(client: TestClient, clock, monkeypatch):
    clock.set("10:00:00")
    client.post("/timer/anna/start", json={"activity_type": "TrailGrooming"})

    original_complete = TimeEntryStore.complete
    calls = []

    def flaky_complete(self, entry_id, stop_time, total_hours):
        calls.append(stop_time)
        if len(calls) == 1:
            raise StoreError("Time entry could not be saved")
        return original_complete(self, entry_id, stop_time, total_hours)

    monkeypatch.setattr(TimeEntryStore, "complete", flaky_complete)

    clock.set("12:00:00")
    failed = client.post("/timer/anna/stop")
    assert failed.status_code == 503
    assert client.get("/timer/anna").json()["state"] == "running"

    clock.set("12:00:05")
    retried = client.post("/timer/anna/stop")
    assert retried.status_code == 200
    assert retried.json()["total_hours"] == 2.0


def test_paused_timer_survives_restart(client: TestClient, clock):
    client.post("/timer/anna/start", json={"activity_type": "TearDown"})
    clock.set("09:00:00")
    client.post("/timer/anna/pause")

    app.state.runtime_state.timers = TimerRegistry(checkpoint_pauses=True)

    clock.set("09:30:00")
    status_resp = client.get("/timer/anna")
    assert status_resp.json()["state"] == "paused"
    assert status_resp.json()["elapsed_seconds"] == 3600
    clock.set("10:00:00")
    client.post("/timer/anna/resume")
    clock.set("11:00:00")
    assert client.post("/timer/anna/stop").json()["total_hours"] == 2.0


def test_manual_entry_and_reports(client: TestClient, clock):
    client.post("/employees", json={"user_id": "anna", "first_name": "Anna", "last_name": "Muster"})
    payload = {
        "user_id": "anna",
        "date": "2025-01-09",
        "activity_type": "Abbau",
        "start_time": "07:00",
        "end_time": "15:15",
    }
    created = client.post("/entries/manual", json=payload)
    assert created.status_code == 201
    assert created.json()["total_hours"] == 8.25
    assert created.json()["activity_type"] == "TearDown"

    rejected = client.post("/entries/manual", json={**payload, "start_time": "14:00", "end_time": "13:00"})
    assert rejected.status_code == 400
    assert rejected.json()["detail"] == "end time must be after start time"

    listed = client.get("/entries", params={"from_date": "2025-01-01", "to_date": "2025-01-31"})
    assert [entry["total_hours"] for entry in listed.json()] == [8.25]

    hours = client.get("/users/anna/hours").json()
    assert hours["week_start"] == "2025-01-06"
    assert hours["week_hours"] == 8.25
    assert hours["month_hours"] == 8.25

    report = client.get("/reports/hours", params={"season": "Saison 2024-25"}).json()
    assert report == [{"user_id": "anna", "name": "Anna Muster", "total_hours": 8.25, "entry_count": 1}]

    export = client.get(
        "/exports/time-entries", params={"from_date": "2025-01-01", "to_date": "2025-01-31", "format": "csv"}
    )
    assert export.status_code == 200
    assert 'filename="Arbeitszeit_2025-01-01_2025-01-31.csv"' in export.headers["content-disposition"]
    assert "09.01.2025;Anna Muster;Abbau;07:00;15:15;8.25" in export.content.decode("utf-8-sig")

    empty = client.get(
        "/exports/time-entries", params={"from_date": "2026-01-01", "to_date": "2026-01-31", "format": "csv"}
    )
    assert empty.status_code == 404


def test_recent_entries_endpoint(client: TestClient, clock):
    client.post("/timer/anna/start", json={"activity_type": "SetUp"})
    clock.set("08:30:00")
    client.post("/timer/anna/stop")
    recent = client.get("/users/anna/entries/recent", params={"limit": 5})
    assert recent.status_code == 200
    assert [entry["total_hours"] for entry in recent.json()] == [0.5]


def test_seasons_endpoints(client: TestClient):
    current = client.get("/seasons/current").json()
    assert current == {"label": "Saison 2024-25", "start": "2024-08-01", "end": "2025-07-31"}
    labels = [season["label"] for season in client.get("/seasons").json()]
    assert labels[0] == "Saison 2024-25"
    assert labels[-1] == "Saison 2020-21"
    assert client.get("/seasons/Saison 2022-23").json()["start"] == "2022-08-01"


def test_reference_data_endpoints(client: TestClient):
    assert client.get("/activity-types").status_code == 200

    task = client.post("/tasks", json={"name": "Spur legen"}).json()
    assert client.post("/tasks", json={"name": "Spur legen"}).status_code == 409
    assert client.patch(f"/tasks/{task['id']}", json={"name": "Loipe spuren"}).json()["name"] == "Loipe spuren"
    assert client.delete(f"/tasks/{task['id']}").status_code == 204

    trail = client.post("/trails", json={"name": "Rundloipe"}).json()
    assert trail["grooming_options"] == ["classic", "skating"]
    updated = client.patch(f"/trails/{trail['id']}", json={"has_skating": False}).json()
    assert updated["grooming_options"] == ["classic"]
    assert client.delete(f"/trails/{trail['id']}").status_code == 204
    assert client.delete(f"/trails/{trail['id']}").status_code == 404

    assert client.get("/employees/nobody").status_code == 404


@pytest.fixture()
def restore_settings():
    runtime_state = app.state.runtime_state
    previous = runtime_state.snapshot()
    yield
    runtime_state.apply(previous)


def test_settings_roundtrip(client: TestClient, session: Session, restore_settings):
    response = client.put("/settings", json={"block_ips": [" 203.0.113.0/24 ", ""], "pause_checkpoints": False})
    assert response.status_code == 200
    assert response.json()["block_ips"] == ["203.0.113.0/24"]
    assert response.json()["pause_checkpoints"] is False
    stored = session.get(models.AppSetting, "pause_checkpoints")
    assert stored.value == "false"
    assert client.get("/settings").json()["block_ips"] == ["203.0.113.0/24"]


def test_failed_settings_save_leaves_runtime_unchanged(
    client: TestClient, session: Session, monkeypatch, restore_settings
):
    before = client.get("/settings").json()

    def failing_commit():
        raise OperationalError("UPDATE app_settings", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "commit", failing_commit)
    response = client.put("/settings", json={"block_ips": ["198.51.100.7"], "pause_checkpoints": not before["pause_checkpoints"]})
    assert response.status_code == 503
    assert response.json()["detail"] == "Settings could not be saved"
    monkeypatch.undo()
    assert client.get("/settings").json() == before


def test_timer_started_on_another_device_can_be_stopped(client: TestClient, session: Session, clock):
    assert client.get("/timer/anna").json()["state"] == "idle"
    clock.set("08:10:00")
    TimerSession("anna", TimeEntryStore(session)).start("TrailGrooming", clock())

    clock.set("08:20:00")
    rejected = client.post("/timer/anna/start", json={"activity_type": "SetUp"})
    assert rejected.status_code == 409
    assert client.get("/timer/anna").json()["state"] == "running"

    clock.set("09:10:00")
    stopped = client.post("/timer/anna/stop")
    assert stopped.status_code == 200
    assert stopped.json()["total_hours"] == 1.0
    assert stopped.json()["activity_type"] == "TrailGrooming"


def test_logbook_endpoints(client: TestClient, clock):
    client.post("/employees", json={"user_id": "anna", "first_name": "Anna", "last_name": "Muster"})

    diesel = client.post("/diesel", json={"user_id": "anna", "date": "2025-01-10", "tank": "Tank Nidfurn", "liters": "120,5"})
    assert diesel.status_code == 201
    assert diesel.json()["liters"] == 120.5
    patched = client.patch(f"/diesel/{diesel.json()['id']}", json={"liters": 100})
    assert patched.json()["liters"] == 100.0
    listed = client.get("/diesel", params={"from_date": "2025-01-01", "to_date": "2025-01-31", "tank": "Tank Nidfurn"})
    assert [entry["liters"] for entry in listed.json()] == [100.0]

    cash = client.post("/cash", json={"user_id": "anna", "date": "2025-01-10", "amount": 45.5})
    assert cash.status_code == 201
    assert client.patch(f"/cash/{cash.json()['id']}", json={"description": "Samstag"}).json()["description"] == "Samstag"

    expense = client.post("/expenses", json={"user_id": "anna", "date": "2025-01-10", "description": "Znüni", "amount": "8.40"})
    assert expense.status_code == 201
    assert expense.json()["amount"] == 8.4

    trail = client.post("/trails", json={"name": "Rundloipe"}).json()
    protocol = client.put(
        "/grooming-protocols/anna/2025-01-10",
        json={"selections": [{"trail_id": trail["id"], "style": "skating"}]},
    )
    assert protocol.status_code == 200
    assert protocol.json()["run_count"] == 1
    assert protocol.json()["selections"] == [{"trail_id": trail["id"], "trail_name": "Rundloipe", "style": "skating"}]
    assert client.get("/grooming-protocols/anna/2025-01-10").json()["id"] == protocol.json()["id"]
    assert client.get("/grooming-protocols/beat/2025-01-10").status_code == 404
    assert client.delete(f"/trails/{trail['id']}").status_code == 409

    summary = client.get("/reports/season", params={"season": "Saison 2024-25"}).json()
    assert summary["diesel_liters"] == 100.0
    assert summary["cash_total"] == 45.5
    assert summary["expense_total"] == 8.4
    assert summary["grooming_runs"] == 1

    export = client.get("/exports/cash", params={"from_date": "2025-01-01", "to_date": "2025-01-31"})
    assert export.status_code == 200
    assert 'filename="Kasse_2025-01-01_2025-01-31.csv"' in export.headers["content-disposition"]
    assert client.get("/exports/fuel", params={"from_date": "2025-01-01", "to_date": "2025-01-31"}).status_code == 404

    assert client.delete(f"/grooming-protocols/{protocol.json()['id']}").status_code == 204
    assert client.delete(f"/diesel/{diesel.json()['id']}").status_code == 204
    assert client.delete(f"/cash/{cash.json()['id']}").status_code == 204
    assert client.delete(f"/expenses/{expense.json()['id']}").status_code == 204
    assert client.get("/cash", params={"from_date": "2025-01-01", "to_date": "2025-01-31"}).json() == []


@pytest.mark.parametrize("amount", ["abc", 0, -12.5, "0,00"])
def test_logbook_amounts_are_validated(client: TestClient, amount):
    for path, payload in (
        ("/diesel", {"tank": "Tank Nidfurn", "liters": amount}),
        ("/cash", {"amount": amount}),
        ("/expenses", {"description": "Benzin", "amount": amount}),
    ):
        response = client.post(path, json={"user_id": "anna", "date": "2025-01-10", **payload})
        assert response.status_code == 400, path


def test_grooming_protocol_rejects_unknown_style(client: TestClient):
    trail = client.post("/trails", json={"name": "Rundloipe", "has_skating": False}).json()
    response = client.put(
        "/grooming-protocols/anna/2025-01-10",
        json={"selections": [{"trail_id": trail["id"], "style": "skating"}]},
    )
    assert response.status_code == 400

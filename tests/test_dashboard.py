from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from stocksync.dashboard import create_app
from stocksync.errors import ConfigError, SyncAlreadyRunning
from stocksync.records import LineItemData, ListedRecord, RecordDetail, RecordKind
from stocksync.storage import repo
from stocksync.storage.models_sql import SyncLog


class StubContext:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[dict] = []

    def submit_run_now(self, **options):
        if self.error is not None:
            raise self.error
        self.calls.append(options)

    def status(self) -> dict:
        return {"scheduled": True, "running": False, "cron": "0 3 * * *", "skipped_fires": 0}


@pytest.fixture()
def seeded(session_factory):
    now = datetime.now(timezone.utc)
    with session_factory() as session:
        session.add_all(
            [
                SyncLog(source="customerconnect", status="SUCCESS", started_at=now - timedelta(hours=2), ended_at=now - timedelta(hours=1)),
                SyncLog(source="routestar", status="FAILED", started_at=now - timedelta(hours=3), ended_at=now - timedelta(hours=3)),
                SyncLog(source="routestar", status="RUNNING", started_at=now - timedelta(minutes=5)),
            ]
        )
        record, _ = repo.upsert_record(session, "routestar", RecordKind.INVOICE, ListedRecord(number="INV-1"))
        repo.apply_record_detail(session, record, RecordDetail(items=[LineItemData("ICE", "Ice", 3)]))
        repo.adjust_inventory(session, "ICE", 7, name="Ice")
        session.commit()
    return session_factory


def test_healthz(session_factory) -> None:
    client = TestClient(create_app(session_factory))
    assert client.get("/healthz").json() == {"status": "ok"}


def test_runs_listing_and_filters(seeded) -> None:
    client = TestClient(create_app(seeded))

    payload = client.get("/api/runs").json()
    assert payload["total"] == 3
    assert payload["runs"][0]["status"] == "RUNNING"
    assert payload["runs"][0]["elapsed_seconds"] >= 300

    filtered = client.get("/api/runs", params={"source": "routestar", "status": "failed"}).json()
    assert [run["status"] for run in filtered["runs"]] == ["FAILED"]

    paged = client.get("/api/runs", params={"per_page": 2, "page": 2}).json()
    assert len(paged["runs"]) == 1

    assert client.get("/api/runs", params={"status": "exploded"}).status_code == 400


def test_single_run_and_active(seeded) -> None:
    client = TestClient(create_app(seeded))

    active = client.get("/api/runs/active").json()
    assert active["count"] == 1
    run_id = active["runs"][0]["id"]
    assert client.get(f"/api/runs/{run_id}").json()["source"] == "routestar"
    assert client.get("/api/runs/999").status_code == 404


def test_cancel_run(seeded) -> None:
    client = TestClient(create_app(seeded))
    run_id = client.get("/api/runs/active").json()["runs"][0]["id"]

    response = client.post(f"/api/runs/{run_id}/cancel")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "RUNNING"
    assert body["cancel_requested"] is True
    assert body["ended_at"] is None

    still_active = client.get("/api/runs/active").json()
    assert [run["id"] for run in still_active["runs"]] == [run_id]
    assert client.post(f"/api/runs/{run_id}/cancel").status_code == 409
    assert client.post("/api/runs/999/cancel").status_code == 404


def test_stats(seeded) -> None:
    stats = TestClient(create_app(seeded)).get("/api/stats", params={"days": 7}).json()
    assert stats["total"] == 3
    assert stats["by_status"]["RUNNING"] == 1
    assert stats["success_rate"] == 0.5


def test_run_now_without_scheduler(session_factory) -> None:
    client = TestClient(create_app(session_factory))
    assert client.post("/api/run-now", json={}).status_code == 503
    assert client.get("/api/scheduler").json() == {"scheduled": False, "running": False}


def test_run_now_submits_to_scheduler(session_factory) -> None:
    context = StubContext()
    client = TestClient(create_app(session_factory, context))

    response = client.post("/api/run-now", json={"portal": "routestar", "limit": 5})

    assert response.status_code == 202
    assert response.json()["accepted"] is True
    assert context.calls == [{"limit": 5, "process_stock": True, "portal": "routestar"}]
    assert client.get("/api/scheduler").json()["scheduled"] is True


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (SyncAlreadyRunning("A sync cycle is already running."), 409),
        (ConfigError("Unknown or disabled portal 'x'"), 400),
    ],
)
def test_run_now_errors(session_factory, error, status_code) -> None:
    client = TestClient(create_app(session_factory, StubContext(error)))
    assert client.post("/api/run-now", json={"portal": "x"}).status_code == status_code


def test_inventory_records_and_aliases(seeded) -> None:
    client = TestClient(create_app(seeded))

    inventory = client.get("/api/inventory").json()
    assert inventory["items"][0]["sku"] == "ICE"
    assert inventory["items"][0]["quantity"] == 7

    records = client.get("/api/records", params={"processed": "false"}).json()
    assert records["total"] == 1
    assert records["records"][0]["items"] == 1

    created = client.post("/api/sku-aliases", json={"alias": "ice bag", "sku": "ice"})
    assert created.status_code == 201
    assert created.json() == {"alias": "ICE BAG", "sku": "ICE"}
    assert client.post("/api/sku-aliases", json={"alias": "ICE", "sku": "ice"}).status_code == 400

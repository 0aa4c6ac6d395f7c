"""Tests for the control daemon job registry and HTTP surface."""

from __future__ import annotations

import threading
from unittest import mock

import pytest

from backfill.scheduler import BackfillCancelled
from daemon.jobs import STATUS_CANCELLED, STATUS_DONE, STATUS_ERROR, JobRegistry
from daemon.server import create_app
from storage import migrations


@pytest.fixture
def registry():
    jobs = JobRegistry()
    yield jobs
    jobs.cancel_all()
    jobs.join_all(timeout=5)


@pytest.fixture
def fake_service():
    service = mock.MagicMock()
    service.__enter__.return_value = service
    service.__exit__.return_value = False
    service.fetch.return_value = {"inserted": 3}
    service.sync_products.return_value = 7
    return service


@pytest.fixture
def client(registry, fake_service, db_path):
    migrations.upgrade(db_path)
    app = create_app(registry, lambda: fake_service, db_path)
    app.config["TESTING"] = True
    return app.test_client()


def _wait_for_cancel(cancel_event: threading.Event):
    cancel_event.wait(5)
    raise BackfillCancelled("stopped")


def test_registry_records_outcomes(registry) -> None:
    done = registry.submit("ok", lambda cancel: {"value": 1})
    failed = registry.submit("bad", lambda cancel: 1 / 0)
    registry.join_all(timeout=5)

    assert done.status == STATUS_DONE
    assert done.result == {"value": 1}
    assert failed.status == STATUS_ERROR
    assert "division" in failed.error
    assert registry.active_count() == 0


def test_registry_cancel_sets_event(registry) -> None:
    job = registry.submit("slow", _wait_for_cancel)

    assert registry.cancel(job.id) is job
    job.thread.join(5)

    assert job.cancel_event.is_set()
    assert job.status == STATUS_CANCELLED
    assert registry.cancel("missing") is None


def test_registry_keeps_only_recent_finished_jobs() -> None:
    jobs = JobRegistry(max_finished=2)
    submitted = []
    for number in range(4):
        job = jobs.submit(f"job-{number}", lambda cancel: {})
        job.thread.join(5)
        submitted.append(job.id)

    running = jobs.submit("slow", _wait_for_cancel)
    jobs.cancel(running.id)
    running.thread.join(5)

    assert jobs.get(submitted[0]) is None
    assert [job.id for job in jobs.list()] == [submitted[3], running.id]


def test_health_reports_database(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json()["checks"]["database"] == "ok"


def test_health_degraded_when_database_unreachable(registry, fake_service, tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x")
    app = create_app(registry, lambda: fake_service, blocker / "candles.db")

    response = app.test_client().get("/health")

    assert response.status_code == 503
    assert response.get_json()["status"] == "degraded"


def test_kill_endpoint(client, registry) -> None:
    job = registry.submit("slow", _wait_for_cancel)

    assert client.get("/jobs/kill").status_code == 400
    assert client.get("/jobs/kill?id=unknown").status_code == 404

    response = client.get(f"/jobs/kill?id={job.id}")
    job.thread.join(5)

    assert response.status_code == 200
    assert response.get_json() == {"status": "stopping", "id": job.id}
    assert job.status == STATUS_CANCELLED

    statuses = {item["id"]: item["status"] for item in client.get("/status").get_json()["jobs"]}
    assert statuses[job.id] == STATUS_CANCELLED


def test_fetch_command_starts_job(client, registry, fake_service) -> None:
    response = client.post("/commands", json={
        "id": "cmd-1",
        "command": "coinbase:fetch",
        "data": {"product": "BTC-USD", "granularity": "1h", "start": "2024-01-01", "end": "1704153600"},
    })

    assert response.status_code == 202
    body = response.get_json()
    assert body["id"] == "cmd-1"
    assert body["success"] is True
    job = registry.get(body["data"]["job_id"])
    job.thread.join(5)

    assert job.status == STATUS_DONE
    assert job.result == {"inserted": 3}
    fake_service.fetch.assert_called_once_with("BTC-USD", "1h", 1704067200, 1704153600, cancel_event=job.cancel_event)


def test_fetch_command_validates_arguments(client) -> None:
    missing = client.post("/commands", json={"id": "a", "command": "coinbase:fetch", "data": {}})
    bad_gran = client.post("/commands", json={"command": "coinbase:fetch",
                                              "data": {"product": "BTC-USD", "granularity": "3h"}})
    bad_time = client.post("/commands", json={"command": "coinbase:fetch",
                                              "data": {"product": "BTC-USD", "start": "someday"}})

    assert missing.status_code == 400
    assert missing.get_json()["error"] == "product is required"
    assert bad_gran.status_code == 400
    assert bad_time.status_code == 400


def test_sync_products_command(client, registry, fake_service) -> None:
    response = client.post("/commands", json={"command": "coinbase:sync-products"})
    job = registry.get(response.get_json()["data"]["job_id"])
    job.thread.join(5)

    assert job.result == {"upserted": 7}
    fake_service.__exit__.assert_called_once()


def test_simple_commands(client) -> None:
    health = client.post("/commands", json={"id": "h", "command": "health"}).get_json()
    status = client.post("/commands", json={"command": "server:status"}).get_json()
    migrate = client.post("/commands", json={"command": "migrate:status"}).get_json()
    kill = client.post("/commands", json={"command": "jobs:kill", "data": {"id": "nope"}})

    assert health["success"] is True and health["id"] == "h"
    assert status["data"]["active"] == 0
    assert [row["version"] for row in migrate["data"]["migrations"]] == [1, 2, 3]
    assert kill.status_code == 404


def test_command_envelope_errors(client) -> None:
    not_json = client.post("/commands", data="{", content_type="application/json")
    unknown = client.post("/commands", json={"id": "x", "command": "coinbase:stop"})
    bad_data = client.post("/commands", json={"command": "health", "data": [1]})

    assert not_json.status_code == 400
    assert not_json.get_json()["error"] == "Invalid JSON"
    assert unknown.status_code == 400
    assert unknown.get_json()["error"] == "Unknown command: coinbase:stop"
    assert bad_data.status_code == 400
